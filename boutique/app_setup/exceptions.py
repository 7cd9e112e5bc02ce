"""
Gestionnaires d'exceptions utilisés par la factory.
- CheckoutError (et sous-classes): JSON {"detail", "code", ...} avec le status_code de l'erreur.
- Exception inattendue: journalisée avec la trace complète, réponse 500 générique.
"""
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from boutique.checkout.errors import CheckoutError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if exc.status_code >= 500:
            logger.error("checkout error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Erreur inattendue path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Erreur interne", "code": "system_error"})
