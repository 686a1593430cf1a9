"""
Document scanner: corner detection, perspective rectification and an
enhancement filter chain for photographed documents.
"""

__version__ = "1.0.0"
