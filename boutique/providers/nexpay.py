"""
Adaptateur NexPay (agrégateur Wave / Orange Money avec long polling).
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from boutique.config import (
    CURRENCY,
    FRONTEND_URL,
    NEXPAY_API_URL,
    NEXPAY_PROJECT_ID,
    NEXPAY_READ_KEY,
    NEXPAY_WEBHOOK_SECRET,
    NEXPAY_WRITE_KEY,
    PROVIDER_STATUS_TIMEOUT_SECONDS,
    PROVIDER_TIMEOUT_SECONDS,
)
from boutique.checkout.errors import ProviderError
from .base import EventType, InitiationData, PaymentProvider, ProviderEvent, RawRequest, sub_object, to_amount

logger = logging.getLogger(__name__)

_WEBHOOK_TYPES = {
    "payment.succeeded": EventType.SUCCEEDED,
    "payment.failed": EventType.FAILED,
    "payment.cancelled": EventType.CANCELLED,
}

# Statuts renvoyés par l'endpoint de session
_SESSION_STATUSES = {
    "succeeded": EventType.SUCCEEDED,
    "completed": EventType.SUCCEEDED,
    "paid": EventType.SUCCEEDED,
    "failed": EventType.FAILED,
    "expired": EventType.FAILED,
    "cancelled": EventType.CANCELLED,
    "canceled": EventType.CANCELLED,
}


class NexPayAdapter(PaymentProvider):
    name = "nexpay"
    supports_polling = True

    def __init__(
        self,
        api_url: Optional[str] = None,
        write_key: Optional[str] = None,
        read_key: Optional[str] = None,
        project_id: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        status_timeout: float = PROVIDER_STATUS_TIMEOUT_SECONDS,
    ):
        self.api_url = (api_url or NEXPAY_API_URL).rstrip("/")
        self.write_key = NEXPAY_WRITE_KEY if write_key is None else write_key
        self.read_key = NEXPAY_READ_KEY if read_key is None else read_key
        self.project_id = NEXPAY_PROJECT_ID if project_id is None else project_id
        self.webhook_secret = NEXPAY_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.timeout = timeout
        self.status_timeout = status_timeout

    def _raise_for_transport(self, e: httpx.HTTPError, action: str, reference: str) -> None:
        if isinstance(e, httpx.TimeoutException):
            logger.warning("nexpay.%s timeout reference=%s", action, reference)
            raise ProviderError("NexPay n'a pas répondu à temps", provider=self.name) from e
        logger.warning("nexpay.%s transport error reference=%s err=%s", action, reference, e)
        raise ProviderError("NexPay injoignable", provider=self.name) from e

    def initiate(self, order: Dict[str, Any], attempt: Dict[str, Any], params: Dict[str, Any]) -> InitiationData:
        if not self.api_url or not self.write_key:
            raise ProviderError("NexPay non configuré", provider=self.name, retryable=False)

        numero = order.get("numero_commande")
        reference = attempt["reference_paiement"]
        method = attempt.get("methode_paiement") or "wave"
        params = params or {}
        payload = {
            "amount": int(float(attempt["montant"])),
            "userId": order.get("client_id") or "guest",
            "name": order.get("nom_destinataire") or "Client",
            "phone": params.get("phone") or order.get("telephone_livraison"),
            "email": order.get("email_contact"),
            "client_reference": reference,
            "projectId": self.project_id,
            "currency": attempt.get("devise") or CURRENCY,
            "metadata": {
                "commande_id": order.get("id"),
                "numero_commande": numero,
                "provider": method,
            },
            "successUrl": f"{FRONTEND_URL}/commande/succes?order={numero}",
            "cancelUrl": f"{FRONTEND_URL}/commande/annulee?order={numero}",
            "provider": "om" if method == "orange_money" else "wave",
        }

        try:
            resp = httpx.post(
                f"{self.api_url}/api/v1/payment/initiate",
                json=payload,
                headers={"x-api-key": self.write_key},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            self._raise_for_transport(e, "initiate", reference)

        if resp.status_code >= 500:
            raise ProviderError(f"NexPay indisponible (HTTP {resp.status_code})", provider=self.name)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        data = body.get("data") or {}
        if resp.status_code >= 400 or not data.get("session_id"):
            logger.warning("nexpay.initiate refused status=%s body=%s", resp.status_code, resp.text[:300])
            raise ProviderError(
                body.get("message") or f"NexPay a refusé la demande (HTTP {resp.status_code})",
                provider=self.name,
                retryable=False,
            )

        return InitiationData(
            session_id=data.get("session_id"),
            redirect_url=data.get("wave_launch_url") or data.get("payment_url"),
            raw_response=body,
            extra={"qr_code": data.get("qr_code")} if data.get("qr_code") else {},
        )

    def verify_signature(self, raw: RawRequest) -> bool:
        """
        - `x-webhook-signature`: HMAC-SHA256 hexadécimal du corps brut (clé = secret webhook)
        - sinon `x-webhook-secret` doit être égal au secret partagé
        """
        if not self.webhook_secret:
            logger.error("nexpay.verify_signature secret webhook absent")
            return False
        signature = raw.header("x-webhook-signature")
        if signature:
            expected = hmac.new(self.webhook_secret.encode("utf-8"), raw.body, hashlib.sha256).hexdigest()
            return hmac.compare_digest(expected, signature.removeprefix("sha256="))
        received = raw.header("x-webhook-secret")
        return bool(received) and hmac.compare_digest(received, self.webhook_secret)

    def parse_event(self, raw: RawRequest) -> Optional[ProviderEvent]:
        payload = raw.json()
        event_type = _WEBHOOK_TYPES.get(str(payload.get("type") or ""))
        if event_type is None:
            return None
        data = sub_object(payload, "data")
        reference = str(data.get("client_reference") or "")
        if not reference:
            raise ValueError("client_reference manquant")
        provider_info = data.get("provider") if isinstance(data.get("provider"), dict) else {}
        return ProviderEvent(
            provider=self.name,
            event_type=event_type,
            reference=reference,
            transaction_id=provider_info.get("transaction_id") or data.get("session_id"),
            amount=to_amount(data.get("amount")),
            raw_payload=payload,
            event_id=payload.get("id"),
            message=data.get("failure_reason"),
        )

    def fetch_status(self, attempt: Dict[str, Any]) -> Optional[ProviderEvent]:
        """Long polling: GET /api/v1/payment/session/{id}/status (clé lecture). None tant que la session est en attente."""
        session_id = attempt.get("session_id")
        if not session_id or not self.read_key:
            return None
        reference = attempt["reference_paiement"]
        try:
            resp = httpx.get(
                f"{self.api_url}/api/v1/payment/session/{session_id}/status",
                headers={"x-api-key": self.read_key},
                timeout=self.status_timeout,
            )
        except httpx.HTTPError as e:
            self._raise_for_transport(e, "fetch_status", reference)
        if resp.status_code >= 400:
            raise ProviderError(f"Statut NexPay indisponible (HTTP {resp.status_code})", provider=self.name)

        body = resp.json()
        data = body.get("data") or {}
        event_type = _SESSION_STATUSES.get(str(data.get("status") or "").lower())
        if event_type is None:
            return None
        return ProviderEvent(
            provider=self.name,
            event_type=event_type,
            reference=reference,
            transaction_id=(data.get("provider") or {}).get("transaction_id") if isinstance(data.get("provider"), dict) else None,
            amount=to_amount(data.get("amount")),
            raw_payload=body,
            message=data.get("failure_reason"),
        )
