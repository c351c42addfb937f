"""
XML Conversion Service package.

This module provides a FastAPI application that stages uploaded XML documents,
runs an external converter to produce CSV, XLSX and HTML files, and serves the
results. See ``xml_conversion_service.webapi``.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
