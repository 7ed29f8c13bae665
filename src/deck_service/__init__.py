"""
Presentation conversion service package.

Converts uploaded PowerPoint decks to PDF with a headless LibreOffice process
and exposes the result over a small FastAPI application.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
