"""
Entry point for ASGI hosts.

This module exposes the FastAPI application instance defined in the
`noveltracker.main` module. Hosts that import a top-level `main:app`
(Vercel, `uvicorn main:app`) pick it up from here.
"""

from noveltracker.main import app as app  # noqa: F401  re-export FastAPI instance
