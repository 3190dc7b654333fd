"""
Secure Conversion Service package.

PDF/DOCX conversion behind a tier-aware job queue, with every uploaded and
converted file encrypted at rest. The FastAPI application lives in
`conversion_service.webapi`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
