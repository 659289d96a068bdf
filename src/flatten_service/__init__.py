"""
PDF Flatten Service package.

This module provides a FastAPI application that rasterizes uploaded PDFs into
image-only PDFs and serves each result through a short-lived download link.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
