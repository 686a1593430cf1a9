#!/usr/bin/env python3
"""
Document Scanner API Server (Step-by-Step)
Upload → corners → rectify → filters → export, one endpoint per step.
"""

import os
import logging
import uuid
import base64
import threading
from io import BytesIO
from typing import Dict, Optional
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

from flask import Flask, request, jsonify, send_file
from flask_cors import CORS
from werkzeug.utils import secure_filename

# --- Centralized Logging Configuration ---
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s - %(name)-25s - %(levelname)-8s - %(message)s',
    datefmt='%H:%M:%S'
)

from .errors import FilterStageError, InvalidGeometry, UnsupportedInput
from .models.filter_parameters import FilterParameters, preset
from .models.geometry import CornerSet
from .models.raster import Raster
from .models.vision_engine import VisionEngine
from .pipeline.document_scanner import detect_document
from .services.corner_detection_service import CornerDetectionService, DetectionResult
from .services.enhancement_service import EnhancementService
from .services.filter_service import FilterService
from .services.image_service import ImageService
from .services.rectification_service import RectificationService
from .utils.debounce import Debouncer

app = Flask(__name__)
CORS(app)  # Enable CORS for frontend communication

# Configuration
MAX_CONTENT_LENGTH = int(float(os.getenv("MAX_UPLOAD_SIZE_MB", "10")) * 1024 * 1024)
CORNER_PICK_RADIUS = float(os.getenv("CORNER_PICK_RADIUS", "20"))
FILTER_DEBOUNCE_SECONDS = float(os.getenv("FILTER_DEBOUNCE_SECONDS", "0.3"))

# Multipart overhead on top of the image itself
app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH + 1024 * 1024

# Initialize services
image_service = ImageService()
detection_service = CornerDetectionService()
rectification_service = RectificationService()
filter_service = FilterService()
enhancement_service = EnhancementService(filter_service=filter_service)

logger = logging.getLogger(__name__)

# Session storage for scan state
sessions: Dict[str, "ScanSession"] = {}

# Steps
EMPTY, UPLOADED, RECTIFIED = 0, 1, 2


class SessionError(Exception):
    """Unknown session or an endpoint called out of order."""


class ScanSession:
    """
    Manages state for a single user's scan.

    Filter edits land in `pending` and bump `generation`; the debouncer
    renders the last edit after a quiet period. A render whose generation was
    superseded while it ran is dropped instead of committed.
    """

    def __init__(self, session_id: str, debounce_seconds: float = FILTER_DEBOUNCE_SECONDS):
        self.session_id = session_id
        self.lock = threading.RLock()
        self.source: Optional[Raster] = None
        self.detection: Optional[DetectionResult] = None
        self.corners: Optional[CornerSet] = None
        self.rectified: Optional[Raster] = None
        self.rendered: Optional[Raster] = None
        self.committed = FilterParameters()
        self.pending: Optional[FilterParameters] = None
        self.generation = 0
        self.last_error: Optional[str] = None
        self.step = EMPTY
        self.debouncer = Debouncer(self._render_in_background, debounce_seconds)

    def clear(self):
        """Clear all images from memory."""
        self.debouncer.cancel()
        with self.lock:
            self.source = None
            self.detection = None
            self.corners = None
            self.rectified = None
            self.rendered = None
            self.committed = FilterParameters()
            self.pending = None
            self.generation += 1
            self.last_error = None
            self.step = EMPTY

    # ─── Steps ───────────────────────────────────────────────────────
    def require(self, step: int):
        if self.step < step:
            raise SessionError(f"Invalid step. Expected step {step}, got {self.step}")

    def load(self, raster: Raster, detection: DetectionResult):
        self.clear()
        with self.lock:
            self.source = raster
            self.detection = detection
            self.corners = detection.corners
            self.step = UPLOADED

    def set_corners(self, corners: CornerSet, detection: Optional[DetectionResult] = None):
        """New corners invalidate the rectified image. `detection` records a fresh detection run."""
        self.debouncer.cancel()
        with self.lock:
            if detection is not None:
                self.detection = detection
            self.corners = corners
            self.rectified = None
            self.rendered = None
            self.pending = None
            self.generation += 1
            self.step = UPLOADED

    def set_rectified(self, raster: Raster):
        self.debouncer.cancel()
        with self.lock:
            self.rectified = raster
            self.rendered = raster
            self.pending = None
            self.generation += 1
            self.step = RECTIFIED

    # ─── Filters ─────────────────────────────────────────────────────
    def edit_filters(self, params: FilterParameters) -> int:
        """Record a pending edit and (re)start the quiet-period timer."""
        with self.lock:
            self.generation += 1
            self.pending = params
            generation = self.generation
        self.debouncer(generation)
        return generation

    def render(self, generation: int) -> bool:
        """
        Apply the pending (or committed) filters to the rectified image.
        Returns False when a newer edit superseded this render.
        """
        with self.lock:
            if generation != self.generation:
                return False
            base = self.rectified
            params = self.pending if self.pending is not None else self.committed

        try:
            result = filter_service.apply_all(base, params)
        except FilterStageError as err:
            with self.lock:
                self.last_error = str(err)
                self.pending = None
            raise

        with self.lock:
            if generation != self.generation:
                logger.debug(f"[{self.session_id}] render {generation} superseded by {self.generation}")
                return False
            self.rendered = result
            self.committed = params
            self.pending = None
            self.last_error = None
        return True

    def _render_in_background(self, generation: int):
        try:
            self.render(generation)
        except FilterStageError as err:
            logger.error(f"[{self.session_id}] {err}; keeping the last good image")

    def commit(self) -> bool:
        """Render pending filters now, skipping the quiet period."""
        self.debouncer.cancel()
        with self.lock:
            generation = self.generation
        return self.render(generation)

    def apply_params(self, params: FilterParameters) -> bool:
        with self.lock:
            self.generation += 1
            self.pending = params
        return self.commit()

    def current_image(self) -> Optional[Raster]:
        for image in (self.rendered, self.rectified, self.source):
            if image is not None:
                return image
        return None


def get_or_create_session(session_id: str = None) -> ScanSession:
    """Get existing session or create new one."""
    if session_id is None:
        session_id = str(uuid.uuid4())

    if session_id not in sessions:
        sessions[session_id] = ScanSession(session_id)

    return sessions[session_id]


def get_session(session_id: Optional[str]) -> ScanSession:
    if not session_id or session_id not in sessions:
        raise SessionError("Invalid session")
    return sessions[session_id]


def request_json() -> dict:
    return request.get_json(silent=True) or {}


def image_to_base64(raster: Raster) -> str:
    """Encode a Raster as a PNG data URL for JSON responses."""
    data = image_service.export(raster, "png")
    return f"data:image/png;base64,{base64.b64encode(data).decode('utf-8')}"


def session_payload(session: ScanSession, include_image: bool = True) -> dict:
    payload = {
        'success': True,
        'session_id': session.session_id,
        'step': session.step,
        'corners': session.corners.as_list() if session.corners else None,
        'filters': session.committed.as_dict(),
    }
    image = session.current_image()
    if image is not None:
        payload['width'], payload['height'] = image.size
        if include_image:
            payload['image'] = image_to_base64(image)
    return payload


# ─── Routes ──────────────────────────────────────────────────────────
@app.route('/api/upload', methods=['POST'])
def upload():
    """Load an image into a new session and detect its corners."""
    if 'image' not in request.files:
        return jsonify({'success': False, 'message': 'No image provided'}), 400
    file = request.files['image']
    if file.filename == '':
        return jsonify({'success': False, 'message': 'No file selected'}), 400

    filename = secure_filename(file.filename) or "upload"
    raster = image_service.decode(file.read(), file.filename)

    session = get_or_create_session(request.form.get('session_id'))
    detection = detect_document(raster, detection_service=detection_service)
    session.load(raster, detection)
    logger.info(f"[{session.session_id}] uploaded {filename} ({raster.width}x{raster.height})")

    payload = session_payload(session)
    payload.update({'strategy': detection.strategy, 'fallback': detection.fallback})
    return jsonify(payload)


@app.route('/api/detect-corners', methods=['POST'])
def detect_corners():
    session = get_session(request_json().get('session_id'))
    session.require(UPLOADED)
    detection = detect_document(session.source, detection_service=detection_service)
    session.set_corners(detection.corners, detection)

    payload = session_payload(session, include_image=False)
    payload.update({'strategy': detection.strategy, 'fallback': detection.fallback})
    return jsonify(payload)


@app.route('/api/corners', methods=['POST'])
def update_corners():
    """Replace all corners, or move one (`index`, `x`, `y`) clamped into the image."""
    body = request_json()
    session = get_session(body.get('session_id'))
    session.require(UPLOADED)
    source = session.source

    if 'corners' in body:
        corners = CornerSet.from_list(body['corners'])
    elif 'index' in body:
        try:
            index = int(body['index'])
        except (TypeError, ValueError):
            raise ValueError(f"Corner index must be an integer, got {body['index']!r}")
        corners = session.corners.with_corner(index, body, source.width, source.height)
    else:
        raise ValueError("Provide 'corners' or 'index', 'x' and 'y'")

    session.set_corners(corners)
    return jsonify(session_payload(session, include_image=False))


@app.route('/api/pick-corner', methods=['POST'])
def pick_corner():
    body = request_json()
    session = get_session(body.get('session_id'))
    session.require(UPLOADED)
    radius = float(body.get('radius', CORNER_PICK_RADIUS))
    index = session.corners.nearest_corner(body, radius=radius)
    return jsonify({'success': True, 'index': index})


@app.route('/api/rectify', methods=['POST'])
def rectify():
    """Rectify with the current corners; `width`/`height` override the natural size."""
    body = request_json()
    session = get_session(body.get('session_id'))
    session.require(UPLOADED)

    size = None
    if body.get('width') is not None or body.get('height') is not None:
        natural = rectification_service.calculate_optimal_output_size(session.corners)
        size = (body.get('width') or natural[0], body.get('height') or natural[1])

    # API callers get the error rather than the unrectified image
    out_w, out_h = size if size else (None, None)
    rectified = rectification_service.rectify(session.source, session.corners, out_w, out_h)
    session.set_rectified(rectified)
    if not session.committed.is_neutral():
        session.apply_params(session.committed)
    return jsonify(session_payload(session))


@app.route('/api/filters', methods=['POST'])
def edit_filters():
    """Record a filter edit; it is rendered after the quiet period or on commit."""
    body = request_json()
    session = get_session(body.get('session_id'))
    session.require(RECTIFIED)

    filters = body.get('filters') or {}
    if not isinstance(filters, dict):
        raise ValueError("'filters' must be an object of name: value pairs")
    params = FilterParameters.from_dict(filters)
    generation = session.edit_filters(params)
    return jsonify({'success': True, 'session_id': session.session_id,
                    'generation': generation, 'pending': params.as_dict()})


@app.route('/api/filters/commit', methods=['POST'])
def commit_filters():
    session = get_session(request_json().get('session_id'))
    session.require(RECTIFIED)
    session.commit()
    return jsonify(session_payload(session))


@app.route('/api/presets/<name>', methods=['POST'])
def apply_preset(name):
    session = get_session(request_json().get('session_id'))
    session.require(RECTIFIED)

    if name == "auto":
        params = enhancement_service.estimate(session.rectified)
    else:
        params = preset(name)
    session.apply_params(params)
    return jsonify(session_payload(session))


@app.route('/api/preview', methods=['GET'])
def preview():
    session = get_session(request.args.get('session_id'))
    session.require(UPLOADED)
    payload = session_payload(session)
    payload['pending'] = session.debouncer.pending
    payload['last_error'] = session.last_error
    return jsonify(payload)


@app.route('/api/export/<fmt>', methods=['GET'])
def export(fmt):
    """Download the current image as png, jpg or pdf."""
    session = get_session(request.args.get('session_id'))
    session.require(UPLOADED)
    quality = request.args.get('quality', type=int)

    data = image_service.export(session.current_image(), fmt, quality)
    ext = fmt.lower().lstrip(".")
    return send_file(
        BytesIO(data),
        mimetype=image_service.mimetype(ext),
        as_attachment=True,
        download_name=f"scanned-document.{ext}",
    )


@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    status = VisionEngine().status
    return jsonify({
        'status': 'healthy' if status.ready else 'degraded',
        'engine': {'ready': status.ready, 'version': status.version, 'error': status.error},
        'active_sessions': len(sessions)
    })


@app.route('/api/clear-session', methods=['POST'])
def clear_session():
    """Clear a session and free memory."""
    session_id = request_json().get('session_id')
    if session_id and session_id in sessions:
        sessions.pop(session_id).clear()
        return jsonify({'success': True, 'message': 'Session cleared'})
    return jsonify({'success': False, 'message': 'Session not found'})


# ─── Error handlers ──────────────────────────────────────────────────
@app.errorhandler(SessionError)
def session_error(e):
    return jsonify({'success': False, 'message': str(e)}), 400


@app.errorhandler(UnsupportedInput)
@app.errorhandler(ValueError)
def bad_input(e):
    return jsonify({'success': False, 'message': str(e)}), 400


@app.errorhandler(InvalidGeometry)
def invalid_geometry(e):
    return jsonify({'success': False, 'message': str(e)}), 422


@app.errorhandler(FilterStageError)
def filter_failed(e):
    logger.error(f"{e}; keeping the last good image")
    return jsonify({'success': False, 'message': str(e), 'stage': e.stage}), 500


@app.errorhandler(413)
def too_large(e):
    """Handle file too large error."""
    return jsonify({'success': False,
                    'message': f'File too large. Maximum size is {MAX_CONTENT_LENGTH // (1024 * 1024)}MB.'}), 413


@app.errorhandler(500)
def internal_error(e):
    """Handle internal server error."""
    logger.error(f"Internal server error: {e}")
    return jsonify({'success': False, 'message': 'Internal server error'}), 500


def main():
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", "5000"))
    status = VisionEngine().status
    logger.info(f"Starting Document Scanner API on {host}:{port}")
    logger.info(f"Max upload size: {MAX_CONTENT_LENGTH // (1024 * 1024)}MB, "
                f"filter debounce: {FILTER_DEBOUNCE_SECONDS}s")
    if not status.ready:
        logger.warning(f"Vision engine unavailable ({status.error}); detection falls back to the brightness scan")
    app.run(host=host, port=port, debug=False, threaded=True)


if __name__ == '__main__':
    main()
