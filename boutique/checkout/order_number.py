# module boutique.checkout.order_number
from datetime import datetime, timezone
from typing import Optional
import secrets
import string

_ALPHABET = string.ascii_uppercase + string.digits
SUFFIX_LENGTH = 8


def _suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_order_number(now: Optional[datetime] = None) -> str:
    """Numéro lisible: CMD-<YYYYmmdd>-<8 alphanum>. L'unicité finale est garantie par la base."""
    now = now or datetime.now(timezone.utc)
    return f"CMD-{now:%Y%m%d}-{_suffix()}"


def generate_payment_reference(now: Optional[datetime] = None) -> str:
    """Référence de corrélation envoyée au fournisseur: PAY-<YYYYmmddHHMMSS>-<8 alphanum>."""
    now = now or datetime.now(timezone.utc)
    return f"PAY-{now:%Y%m%d%H%M%S}-{_suffix()}"
