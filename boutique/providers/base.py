"""
Contrat commun des adaptateurs de paiement (carte Stripe, agrégateurs Wave / Orange Money).

Un adaptateur ne modifie jamais une commande ni une tentative: il renvoie des
données que l'orchestrateur (boutique.checkout.service) persiste lui-même.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class EventType(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class RawRequest:
    """Requête webhook brute: corps non décodé + en-têtes (clés en minuscules)."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "") or ""

    def json(self) -> Dict[str, Any]:
        data = json.loads(self.body.decode("utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError("payload JSON attendu sous forme d'objet")
        return data


@dataclass(frozen=True)
class InitiationData:
    """Résultat d'une initiation de paiement chez le fournisseur."""

    session_id: Optional[str]
    redirect_url: Optional[str]
    raw_response: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderEvent:
    """Événement fournisseur normalisé, consommé par reconcile()."""

    provider: str
    event_type: EventType
    reference: str
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        if self.event_id:
            return f"{self.provider}:{self.event_id}"
        return f"{self.provider}:{self.reference}:{self.event_type.value}"


def sub_object(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    """payload[key] sous forme de dict ({} si absent). ValueError si le champ a une autre forme."""
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"champ {key} inattendu")
    return value


def to_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class PaymentProvider(ABC):
    """Interface d'un fournisseur de paiement."""

    name: str = ""
    supports_polling: bool = False

    @abstractmethod
    def initiate(self, order: Dict[str, Any], attempt: Dict[str, Any], params: Dict[str, Any]) -> InitiationData:
        """Ouvre une session de paiement. Lève ProviderError en cas d'échec."""
        ...

    @abstractmethod
    def verify_signature(self, raw: RawRequest) -> bool:
        """Authenticité du webhook. Une requête refusée ne doit jamais atteindre reconcile()."""
        ...

    @abstractmethod
    def parse_event(self, raw: RawRequest) -> Optional[ProviderEvent]:
        """Normalise le webhook. None = type d'événement ignoré. ValueError/KeyError = payload illisible."""
        ...

    def fetch_status(self, attempt: Dict[str, Any]) -> Optional[ProviderEvent]:
        """Interroge le fournisseur sur une tentative en attente (si supports_polling)."""
        return None
