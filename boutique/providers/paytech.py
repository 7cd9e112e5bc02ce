"""
Adaptateur PayTech (agrégateur sénégalais: Wave, Orange Money).

- Initiation: POST {api}/payment/request-payment (formulaire, en-têtes API_KEY / API_SECRET)
- IPN: formulaire ou JSON, authentifié par `hmac_compute` = HMAC-SHA256("item_price|ref_command|api_key", api_secret),
  ou à défaut par la paire `api_key_sha256` / `api_secret_sha256`
- Types d'IPN: sale_complete, sale_canceled, refund_complete
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlencode

import httpx

from boutique.config import (
    CURRENCY,
    FRONTEND_URL,
    PAYTECH_API_KEY,
    PAYTECH_API_SECRET,
    PAYTECH_API_URL,
    PAYTECH_ENV,
    PAYTECH_IPN_URL,
    PROVIDER_TIMEOUT_SECONDS,
)
from boutique.checkout.errors import ProviderError
from .base import EventType, InitiationData, PaymentProvider, ProviderEvent, RawRequest, to_amount

logger = logging.getLogger(__name__)

# Valeurs `target_payment` attendues par PayTech
TARGETS = {
    "wave": "Wave",
    "orange_money": "Orange Money",
}

_EVENT_TYPES = {
    "sale_complete": EventType.SUCCEEDED,
    "sale_canceled": EventType.CANCELLED,
    "refund_complete": EventType.REFUNDED,
}


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class PayTechAdapter(PaymentProvider):
    name = "paytech"
    supports_polling = False

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        api_url: Optional[str] = None,
        env: Optional[str] = None,
        ipn_url: Optional[str] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ):
        self.api_key = PAYTECH_API_KEY if api_key is None else api_key
        self.api_secret = PAYTECH_API_SECRET if api_secret is None else api_secret
        self.api_url = (api_url or PAYTECH_API_URL).rstrip("/")
        self.env = env or PAYTECH_ENV
        self.ipn_url = PAYTECH_IPN_URL if ipn_url is None else ipn_url
        self.timeout = timeout

    # --- initiation -------------------------------------------------------

    def initiate(self, order: Dict[str, Any], attempt: Dict[str, Any], params: Dict[str, Any]) -> InitiationData:
        if not self.api_key or not self.api_secret:
            raise ProviderError("PayTech non configuré", provider=self.name, retryable=False)

        numero = order.get("numero_commande")
        reference = attempt["reference_paiement"]
        method = attempt.get("methode_paiement") or ""
        target = TARGETS.get(method, "")

        payload: Dict[str, Any] = {
            "item_name": f"Commande #{numero}",
            "item_price": int(float(attempt["montant"])),
            "currency": (attempt.get("devise") or CURRENCY),
            "ref_command": reference,
            "command_name": f"Achat - {order.get('nom_destinataire') or ''}".strip(),
            "env": self.env,
            "ipn_url": self.ipn_url,
            "success_url": f"{FRONTEND_URL}/commande/succes?order={numero}",
            "cancel_url": f"{FRONTEND_URL}/commande/annulee?order={numero}",
            "custom_field": json.dumps({
                "commande_id": order.get("id"),
                "numero_commande": numero,
                "reference_paiement": reference,
            }),
        }
        if target:
            payload["target_payment"] = target

        try:
            resp = httpx.post(
                f"{self.api_url}/payment/request-payment",
                data=payload,
                headers={"API_KEY": self.api_key, "API_SECRET": self.api_secret},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("paytech.initiate timeout reference=%s", reference)
            raise ProviderError("PayTech n'a pas répondu à temps", provider=self.name) from e
        except httpx.HTTPError as e:
            logger.warning("paytech.initiate transport error reference=%s err=%s", reference, e)
            raise ProviderError("PayTech injoignable", provider=self.name) from e

        if resp.status_code >= 500:
            logger.warning("paytech.initiate status=%s reference=%s", resp.status_code, reference)
            raise ProviderError(f"PayTech indisponible (HTTP {resp.status_code})", provider=self.name)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or int(data.get("success") or 0) != 1:
            logger.warning("paytech.initiate refused status=%s body=%s", resp.status_code, resp.text[:300])
            raise ProviderError(
                data.get("message") or f"PayTech a refusé la demande (HTTP {resp.status_code})",
                provider=self.name,
                retryable=False,
            )

        redirect_url = data.get("redirect_url") or data.get("redirectUrl")
        phone = (params or {}).get("phone") or order.get("telephone_livraison")
        if redirect_url and target and phone:
            redirect_url = self._with_autofill(redirect_url, target, str(phone), order.get("nom_destinataire") or "")

        return InitiationData(session_id=data.get("token"), redirect_url=redirect_url, raw_response=data)

    @staticmethod
    def _with_autofill(url: str, target: str, phone: str, full_name: str) -> str:
        """Pré-remplit la page PayTech pour une méthode unique (numéro, nom, soumission auto)."""
        query = urlencode({
            "pn": phone,
            "nn": phone[-9:],
            "fn": full_name,
            "tp": target,
            "nac": "0" if target == "Carte Bancaire" else "1",
        })
        sep = "&" if "?" in url else "?"
        return f"{url}{sep}{query}"

    # --- IPN --------------------------------------------------------------

    @staticmethod
    def _payload(raw: RawRequest) -> Dict[str, Any]:
        if "json" in raw.header("content-type"):
            return raw.json()
        parsed = parse_qs(raw.body.decode("utf-8"), keep_blank_values=True)
        return {k: v[0] for k, v in parsed.items()}

    def verify_signature(self, raw: RawRequest) -> bool:
        if not self.api_key or not self.api_secret:
            logger.error("paytech.verify_signature clés API absentes")
            return False
        try:
            payload = self._payload(raw)
        except ValueError:
            return False

        # HMAC d'abord, puis la paire SHA-256 des clés
        received = str(payload.get("hmac_compute") or "")
        if received:
            price = payload.get("item_price") or payload.get("final_item_price") or 0
            message = f"{price}|{payload.get('ref_command') or ''}|{self.api_key}"
            expected = hmac.new(self.api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
            if hmac.compare_digest(expected, received):
                return True

        key_hash = str(payload.get("api_key_sha256") or "")
        secret_hash = str(payload.get("api_secret_sha256") or "")
        if key_hash and secret_hash:
            return hmac.compare_digest(_sha256(self.api_key), key_hash) and hmac.compare_digest(
                _sha256(self.api_secret), secret_hash
            )
        return False

    def parse_event(self, raw: RawRequest) -> Optional[ProviderEvent]:
        payload = self._payload(raw)
        event_type = _EVENT_TYPES.get(str(payload.get("type_event") or ""))
        if event_type is None:
            return None
        reference = str(payload.get("ref_command") or "")
        if not reference:
            raise ValueError("ref_command manquant")
        amount = to_amount(payload.get("final_item_price") or payload.get("item_price"))
        safe_payload = {k: v for k, v in payload.items() if k not in ("api_key_sha256", "api_secret_sha256")}
        return ProviderEvent(
            provider=self.name,
            event_type=event_type,
            reference=reference,
            transaction_id=payload.get("token"),
            amount=amount,
            raw_payload=safe_payload,
            message=payload.get("payment_method"),
        )
