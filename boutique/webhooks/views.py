import logging

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from boutique.providers import RawRequest
from boutique.webhooks import service as webhooks_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

# module boutique.webhooks.views
@router.post("/{provider}", include_in_schema=False)
async def receive_webhook(provider: str, request: Request):
    """
    Point d'entrée unique des fournisseurs: /webhooks/stripe, /webhooks/paytech, /webhooks/nexpay.
    - Lit le body brut (nécessaire aux signatures) et les en-têtes
    - Délègue à webhooks_service.handle_webhook (appels bloquants -> threadpool)
    - Réponses: 200 {"status": "ok", "outcome": ...} ou {"status": "ignored"}
    - Erreurs (gestionnaires CheckoutError): 401 signature, 422 payload, 404 référence, 409 montant
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    raw = RawRequest(body=body, headers=headers)
    result = await run_in_threadpool(webhooks_service.handle_webhook, provider, raw)
    return JSONResponse(result)
