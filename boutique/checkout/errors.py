"""
Taxonomie des erreurs du checkout.

Chaque erreur porte un `code` stable (lisible par le front) et le `status_code`
HTTP utilisé par les gestionnaires d'exceptions (boutique.app_setup.exceptions).
- ValidationError: entrée de checkout incomplète ou incohérente (422)
- BusinessRuleError: règle métier violée (400), jamais une 500
- ProviderError: appel fournisseur échoué / délai dépassé (502, retryable)
- SecurityError: signature webhook invalide (401)
- MalformedEvent / UnknownReference / AmountMismatch: rejets webhook
- CheckoutSystemError: base injoignable, erreur inattendue (500)
"""
from typing import Any, Dict, List, Optional


class CheckoutError(Exception):
    code = "checkout_error"
    status_code = 400

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        payload.update({k: v for k, v in self.context.items() if v is not None})
        return payload


class ValidationError(CheckoutError):
    code = "validation_error"
    status_code = 422

    def __init__(self, message: str = "Données de commande invalides", errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, errors=errors or [])


class BusinessRuleError(CheckoutError):
    code = "business_rule"
    status_code = 400


class InvalidOrderState(BusinessRuleError):
    code = "invalid_order_state"


class StockUnavailable(BusinessRuleError):
    code = "stock_unavailable"


class ProductUnavailable(BusinessRuleError):
    code = "product_unavailable"


class PriceChanged(BusinessRuleError):
    code = "price_changed"


class DuplicateAccount(BusinessRuleError):
    code = "duplicate_account"


class OrderNotFound(BusinessRuleError):
    code = "order_not_found"
    status_code = 404


class ProviderError(CheckoutError):
    """Échec d'un appel fournisseur. `retryable` indique si le client peut relancer."""
    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, provider: str = "", retryable: bool = True):
        super().__init__(message, provider=provider or None, retryable=retryable)
        self.provider = provider
        self.retryable = retryable


class SecurityError(CheckoutError):
    code = "invalid_signature"
    status_code = 401


class MalformedEvent(CheckoutError):
    code = "malformed_event"
    status_code = 422


class UnknownReference(CheckoutError):
    code = "unknown_reference"
    status_code = 404


class AmountMismatch(CheckoutError):
    code = "amount_mismatch"
    status_code = 409


class CheckoutSystemError(CheckoutError):
    code = "system_error"
    status_code = 500
