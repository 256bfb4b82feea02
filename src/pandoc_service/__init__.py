"""
Pandoc Conversion Service package.

This module provides a FastAPI application that renders Markdown documents
into PDF by delegating to the pandoc executable. Access can be restricted to
clients presenting a certificate signed by a configured root CA.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
