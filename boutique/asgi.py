# module boutique.asgi
"""Cible ASGI des déploiements: `uvicorn boutique.asgi:app` (ou gunicorn + workers uvicorn)."""
from boutique.app import app

__all__ = ["app"]
