"""
Réception des webhooks fournisseurs: signature -> normalisation -> reconcile().
Une requête dont la signature est invalide ne modifie jamais l'état.
"""
from typing import Any, Dict
import logging

from boutique import providers
from boutique.checkout import service as checkout_service
from boutique.checkout.errors import MalformedEvent, SecurityError, UnknownReference
from boutique.providers import RawRequest

logger = logging.getLogger(__name__)


def handle_webhook(provider_name: str, raw: RawRequest) -> Dict[str, Any]:
    """
    - fournisseur inconnu -> UnknownReference (404)
    - signature invalide -> SecurityError (401), le fournisseur rejouera
    - payload illisible -> MalformedEvent (422)
    - type d'événement non géré -> {"status": "ignored"}
    - sinon -> résultat de reconcile(), y compris « déjà traité »
    """
    adapter = providers.get_provider(provider_name)
    if adapter is None:
        raise UnknownReference(f"Fournisseur inconnu: {provider_name}")

    if not adapter.verify_signature(raw):
        logger.warning("webhooks.%s signature invalide", provider_name)
        raise SecurityError("Signature du webhook invalide")

    try:
        event = adapter.parse_event(raw)
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        logger.warning("webhooks.%s payload illisible err=%s", provider_name, e)
        raise MalformedEvent("Payload du webhook illisible") from e

    if event is None:
        logger.info("webhooks.%s événement ignoré", provider_name)
        return {"status": "ignored"}

    result = checkout_service.reconcile(event)
    return {"status": "ok", **result.to_dict()}
