"""
Modèles du checkout: statuts, snapshot de panier et corps de requêtes (pydantic v2).
Les commandes et paiements eux-mêmes circulent en dict (lignes Supabase).
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field, field_validator


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Choix exposés au client -> passerelle technique (voir providers.gateway_for)
PaymentMethod = Literal["card", "wave", "orange_money", "cash_on_delivery"]


class CartLine(BaseModel):
    produit_id: str
    nom_produit: str = ""
    quantite: int = Field(gt=0)
    prix_unitaire: Decimal = Field(ge=0)
    taille_choisie: Optional[str] = None
    couleur_choisie: Optional[str] = None
    # Produit suivi en stock: None = pas de gestion de stock
    stock_disponible: Optional[int] = None

    @property
    def total(self) -> Decimal:
        return self.prix_unitaire * self.quantite


class CartSnapshot(BaseModel):
    """Photo du panier au moment du checkout (lecture seule)."""
    items: List[CartLine]
    subtotal: Optional[Decimal] = None
    shipping_fee: Optional[Decimal] = Field(default=None, alias="shippingFee")
    discount: Decimal = Decimal("0")
    total: Optional[Decimal] = None
    cart_id: Optional[str] = None

    model_config = {"populate_by_name": True}


class DeliveryInfo(BaseModel):
    nom_destinataire: str = Field(min_length=2, max_length=120)
    telephone: str = Field(min_length=6, max_length=20)
    adresse: str = Field(min_length=3, max_length=500)
    email: Optional[EmailStr] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("telephone")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        cleaned = v.replace(" ", "").replace("-", "")
        if not cleaned.lstrip("+").isdigit():
            raise ValueError("numéro de téléphone invalide")
        return cleaned


class CreateOrderRequest(BaseModel):
    cart_id: Optional[str] = None
    cart: Optional[CartSnapshot] = None
    client_id: Optional[str] = None
    delivery: DeliveryInfo


class InitiatePaymentRequest(BaseModel):
    provider: PaymentMethod
    provider_params: Dict[str, Any] = Field(default_factory=dict)


class ReconcileOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ATTEMPT_VALIDATED = "attempt_validated"
    ATTEMPT_FAILED = "attempt_failed"
    ORDER_FAILED = "order_failed"
    ATTEMPT_CANCELLED = "attempt_cancelled"
    ORDER_CANCELLED = "order_cancelled"
    REFUNDED = "refunded"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    REJECTED_ALREADY_PAID = "rejected_already_paid"


@dataclass(frozen=True)
class ReconcileResult:
    """Transition appliquée par reconcile() (ou absence de transition)."""
    outcome: ReconcileOutcome
    reference: str
    attempt_status: Optional[str] = None
    order_status: Optional[str] = None
    dispatched: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reference": self.reference,
            "attempt_status": self.attempt_status,
            "order_status": self.order_status,
            "dispatched": self.dispatched,
        }
