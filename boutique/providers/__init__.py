"""Registre des fournisseurs de paiement.

- gateway_for(): méthode choisie par le client -> passerelle technique
- get_provider() / set_provider() / reset_providers(): instances actives (remplaçables en test)
"""
from typing import Dict, Optional

from boutique.config import ORANGE_MONEY_GATEWAY, WAVE_GATEWAY
from boutique.checkout.errors import ValidationError
from .base import EventType, InitiationData, PaymentProvider, ProviderEvent, RawRequest
from .nexpay import NexPayAdapter
from .paytech import PayTechAdapter
from .stripe_adapter import StripeCardAdapter

_FACTORIES = {
    "stripe": StripeCardAdapter,
    "paytech": PayTechAdapter,
    "nexpay": NexPayAdapter,
}

_providers: Dict[str, PaymentProvider] = {}


def gateway_for(method: str) -> str:
    """card -> stripe; wave / orange_money -> agrégateur configuré (paytech | nexpay)."""
    mapping = {
        "card": "stripe",
        "wave": WAVE_GATEWAY,
        "orange_money": ORANGE_MONEY_GATEWAY,
    }
    gateway = mapping.get(method)
    if gateway not in _FACTORIES:
        raise ValidationError(
            "Moyen de paiement non supporté",
            errors=[{"field": "provider", "msg": f"inconnu: {method}"}],
        )
    return gateway


def get_provider(name: str) -> Optional[PaymentProvider]:
    """Retourne l'adaptateur de la passerelle `name`, None si inconnue."""
    if name not in _providers:
        factory = _FACTORIES.get(name)
        if factory is None:
            return None
        _providers[name] = factory()
    return _providers[name]


def set_provider(name: str, provider: PaymentProvider) -> None:
    """Remplace l'adaptateur actif (utile pour les tests)."""
    _providers[name] = provider


def reset_providers() -> None:
    _providers.clear()


__all__ = [
    "EventType",
    "InitiationData",
    "PaymentProvider",
    "ProviderEvent",
    "RawRequest",
    "gateway_for",
    "get_provider",
    "set_provider",
    "reset_providers",
]
