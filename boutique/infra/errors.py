# module boutique.infra.errors
from typing import Any, NoReturn, Optional
import logging
from postgrest.exceptions import APIError

from boutique.checkout.errors import BusinessRuleError, CheckoutSystemError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def api_error_code(e: Exception) -> Optional[str]:
    """
    Extrait le code SQLSTATE d'une APIError PostgREST.
    Selon la version de postgrest-py, il est exposé en attribut ou dans args[0] (dict).
    """
    code: Any = getattr(e, "code", None)
    if not code and e.args and isinstance(e.args[0], dict):
        code = e.args[0].get("code")
    return str(code) if code else None


def is_unique_violation(e: Exception) -> bool:
    return isinstance(e, APIError) and api_error_code(e) == UNIQUE_VIOLATION


def raise_for_api_error(e: Exception, context: str) -> NoReturn:
    """
    Convertit une erreur d'accès Supabase en erreur du checkout:
    - contrainte d'intégrité (23xxx) -> BusinessRuleError
    - tout le reste (réseau, droits, SQL) -> CheckoutSystemError
    """
    code = api_error_code(e) if isinstance(e, APIError) else None
    if code and code.startswith("23"):
        logger.warning("%s: contrainte violée code=%s err=%s", context, code, e)
        raise BusinessRuleError(f"Contrainte de données non respectée ({context})") from e
    logger.exception("%s: erreur Supabase code=%s", context, code)
    raise CheckoutSystemError(f"Erreur de stockage ({context})") from e
