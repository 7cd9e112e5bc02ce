"""
Adaptateur Stripe (carte bancaire): Checkout Session + webhooks signés.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe

from boutique.config import (
    CURRENCY,
    FRONTEND_URL,
    PROVIDER_TIMEOUT_SECONDS,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)
from boutique.checkout.errors import ProviderError
from .base import EventType, InitiationData, PaymentProvider, ProviderEvent, RawRequest, sub_object

logger = logging.getLogger(__name__)

# Devises sans décimales: Stripe attend le montant tel quel (XOF 22000 -> 22000)
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg",
    "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}

_SESSION_EVENTS = {
    "checkout.session.async_payment_succeeded": EventType.SUCCEEDED,
    "checkout.session.async_payment_failed": EventType.FAILED,
    "checkout.session.expired": EventType.CANCELLED,
}


def to_minor_units(amount: Any, currency: str) -> int:
    value = Decimal(str(amount))
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(value)
    return int((value * 100).quantize(Decimal("1")))


def from_minor_units(amount: Any, currency: str) -> Optional[Decimal]:
    if amount is None:
        return None
    value = Decimal(str(amount))
    if (currency or CURRENCY).lower() in ZERO_DECIMAL_CURRENCIES:
        return value
    return value / 100


def as_dict(obj: Any) -> Dict[str, Any]:
    """Objet Stripe -> dict simple (les StripeObject récents ne sont plus des mappings)."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def require_stripe(api_key: str = "", timeout: float = PROVIDER_TIMEOUT_SECONDS):
    """
    Prépare et retourne le module stripe prêt à l'emploi.
    - Configure stripe.api_key via STRIPE_SECRET_KEY
    - Borne la durée des appels réseau (client HTTP par défaut avec timeout)
    """
    key = api_key or STRIPE_SECRET_KEY
    if not key:
        raise ProviderError("Stripe non configuré", provider="stripe", retryable=False)
    stripe.api_key = key
    if getattr(stripe, "default_http_client", None) is None:
        stripe.default_http_client = stripe.new_default_http_client(timeout=timeout)
    return stripe


class StripeCardAdapter(PaymentProvider):
    name = "stripe"
    supports_polling = True

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = STRIPE_SECRET_KEY if api_key is None else api_key
        self.webhook_secret = STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    @staticmethod
    def build_line_items(order: Dict[str, Any], currency: str) -> List[Dict[str, Any]]:
        """
        Lignes Stripe à partir de la commande:
        - une ligne par article + une ligne "Frais de livraison"
        - commande remisée: une seule ligne au montant total exact
        """
        def _line(name: str, unit_amount: Any, quantity: int) -> Dict[str, Any]:
            return {
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(unit_amount, currency),
                    "product_data": {"name": name},
                },
                "quantity": quantity,
            }

        if Decimal(str(order.get("remise") or 0)) > 0:
            return [_line(f"Commande {order.get('numero_commande')}", order["montant_total"], 1)]

        items = [
            _line(a.get("nom_produit") or "Article", a["prix_unitaire"], int(a["quantite"]))
            for a in order.get("articles") or []
        ]
        shipping = Decimal(str(order.get("frais_livraison") or 0))
        if shipping > 0:
            items.append(_line("Frais de livraison", shipping, 1))
        return items

    def initiate(self, order: Dict[str, Any], attempt: Dict[str, Any], params: Dict[str, Any]) -> InitiationData:
        require_stripe(self.api_key)
        reference = attempt["reference_paiement"]
        numero = order.get("numero_commande")
        currency = attempt.get("devise") or CURRENCY
        metadata = {
            "commande_id": str(order.get("id")),
            "numero_commande": str(numero),
            "reference_paiement": reference,
        }
        kwargs: Dict[str, Any] = {
            "line_items": self.build_line_items(order, currency),
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": f"{FRONTEND_URL}/commande/succes?order={numero}&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{FRONTEND_URL}/commande/annulee?order={numero}",
            "client_reference_id": reference,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "idempotency_key": reference,
        }
        if order.get("email_contact"):
            kwargs["customer_email"] = order["email_contact"]

        try:
            session = stripe.checkout.Session.create(**kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.warning("stripe.initiate erreur temporaire reference=%s err=%s", reference, e)
            raise ProviderError("Stripe indisponible, réessayez", provider=self.name) from e
        except stripe.StripeError as e:
            logger.warning("stripe.initiate refus reference=%s err=%s", reference, e)
            raise ProviderError(getattr(e, "user_message", None) or "Stripe a refusé la session", provider=self.name, retryable=False) from e

        data = as_dict(session)
        return InitiationData(session_id=data.get("id"), redirect_url=data.get("url"), raw_response=data)

    def verify_signature(self, raw: RawRequest) -> bool:
        if not self.webhook_secret:
            logger.error("stripe.verify_signature STRIPE_WEBHOOK_SECRET absent")
            return False
        sig_header = raw.header("stripe-signature")
        if not sig_header:
            return False
        try:
            stripe.WebhookSignature.verify_header(raw.body.decode("utf-8"), sig_header, self.webhook_secret)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    @staticmethod
    def _session_event(obj: Dict[str, Any], event_type: EventType, event_id: Optional[str], payload: Dict[str, Any]) -> ProviderEvent:
        metadata = obj.get("metadata") or {}
        reference = obj.get("client_reference_id") or metadata.get("reference_paiement") or ""
        if not reference:
            raise ValueError("client_reference_id manquant")
        return ProviderEvent(
            provider="stripe",
            event_type=event_type,
            reference=reference,
            transaction_id=obj.get("payment_intent") or obj.get("id"),
            amount=from_minor_units(obj.get("amount_total"), obj.get("currency") or CURRENCY),
            raw_payload=payload,
            event_id=event_id,
        )

    def parse_event(self, raw: RawRequest) -> Optional[ProviderEvent]:
        payload = raw.json()
        event_type_name = str(payload.get("type") or "")
        event_id = payload.get("id")
        obj = sub_object(sub_object(payload, "data"), "object")

        if event_type_name == "checkout.session.completed":
            # Paiement asynchrone: l'issue arrive via async_payment_succeeded/failed
            if obj.get("payment_status") != "paid":
                return None
            return self._session_event(obj, EventType.SUCCEEDED, event_id, payload)

        if event_type_name in _SESSION_EVENTS:
            return self._session_event(obj, _SESSION_EVENTS[event_type_name], event_id, payload)

        if event_type_name == "payment_intent.payment_failed":
            reference = (obj.get("metadata") or {}).get("reference_paiement") or ""
            if not reference:
                raise ValueError("metadata.reference_paiement manquant")
            error = obj.get("last_payment_error") or {}
            return ProviderEvent(
                provider=self.name,
                event_type=EventType.FAILED,
                reference=reference,
                transaction_id=obj.get("id"),
                amount=from_minor_units(obj.get("amount"), obj.get("currency") or CURRENCY),
                raw_payload=payload,
                event_id=event_id,
                message=error.get("message"),
            )

        if event_type_name == "charge.refunded":
            # Remboursement partiel: hors périmètre, seul le remboursement total est appliqué
            if not obj.get("refunded"):
                return None
            transaction_id = obj.get("payment_intent") or obj.get("id")
            return ProviderEvent(
                provider=self.name,
                event_type=EventType.REFUNDED,
                reference=(obj.get("metadata") or {}).get("reference_paiement") or "",
                transaction_id=transaction_id,
                raw_payload=payload,
                event_id=event_id,
            )
        return None

    def fetch_status(self, attempt: Dict[str, Any]) -> Optional[ProviderEvent]:
        session_id = attempt.get("session_id")
        if not session_id:
            return None
        require_stripe(self.api_key)
        try:
            session = as_dict(stripe.checkout.Session.retrieve(session_id))
        except stripe.StripeError as e:
            logger.warning("stripe.fetch_status échec session=%s err=%s", session_id, e)
            raise ProviderError("Statut Stripe indisponible", provider=self.name) from e

        if session.get("payment_status") == "paid":
            event_type = EventType.SUCCEEDED
        elif session.get("status") == "expired":
            event_type = EventType.CANCELLED
        else:
            return None
        return ProviderEvent(
            provider=self.name,
            event_type=event_type,
            reference=attempt["reference_paiement"],
            transaction_id=session.get("payment_intent") or session_id,
            amount=from_minor_units(session.get("amount_total"), session.get("currency") or CURRENCY),
            raw_payload=session,
        )
