"""
asgi.py -- ASGI entry point for Ayerhs.

Keeps the server command independent of the package layout: process managers
point at asgi:app and api/main.py stays importable on its own.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
