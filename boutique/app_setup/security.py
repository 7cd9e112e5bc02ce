"""
En-têtes de sécurité d'une API JSON.
La documentation interactive (/docs, /redoc) charge Swagger UI depuis un CDN: CSP élargie pour ces seules pages.
"""
from fastapi import FastAPI, Request
from boutique.config import HSTS_ENABLED

DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")
SWAGGER_CDN = "https://cdn.jsdelivr.net"

API_CSP = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"
DOCS_CSP = (
    "default-src 'self'; frame-ancestors 'none'; object-src 'none'; "
    "img-src 'self' data: https://fastapi.tiangolo.com; "
    f"style-src 'self' 'unsafe-inline' {SWAGGER_CDN}; "
    f"script-src 'self' 'unsafe-inline' {SWAGGER_CDN}"
)


def register_security_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)

        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if HSTS_ENABLED:
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")

        docs = request.url.path.startswith(DOCS_PATHS)
        response.headers["Content-Security-Policy"] = DOCS_CSP if docs else API_CSP
        # Statuts de commande / paiement: jamais mis en cache
        response.headers.setdefault("Cache-Control", "no-store")
        return response
