import logging
from decimal import Decimal
from typing import Any, Dict

from fastapi import APIRouter, Depends

from boutique.utils.rate_limit import optional_rate_limit
from boutique.checkout import service as checkout_service
from boutique.checkout.errors import ValidationError
from boutique.checkout.models import CreateOrderRequest, InitiatePaymentRequest
from boutique.panier import service as panier_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/checkout", tags=["Checkout"])

# module boutique.checkout.views
@router.post(
    "/orders",
    status_code=201,
    dependencies=[Depends(optional_rate_limit(times=10, seconds=60))],
)
def create_order(body: CreateOrderRequest) -> Dict[str, Any]:
    """
    Crée une commande `pending` à partir d'un panier.
    - Entrée JSON: { "cart_id": "...", "client_id": null, "delivery": {nom_destinataire, telephone, adresse, email?, notes?} }
      ou un panier explicite { "cart": { "items": [...] } }: prix contrôlés contre le catalogue,
      livraison par défaut, aucune remise
    - Étapes:
      1) Photo du panier (panier_service.get_cart) si cart_id
      2) checkout_service.create_order (montants, catalogue, client, numéro unique)
    - Réponses: 201 {numero_commande, statut, montants}
    - Erreurs: 400 règle métier (stock, prix modifié, compte en double), 422 entrée invalide, 500 système
    """
    if body.cart is not None:
        # Panier explicite: seules les lignes sont reprises, les montants sont ceux du serveur
        snapshot = body.cart.model_copy(update={
            "shipping_fee": None,
            "discount": Decimal("0"),
            "subtotal": None,
            "total": None,
            "cart_id": body.cart.cart_id or body.cart_id,
        })
    elif body.cart_id:
        snapshot = panier_service.get_cart(body.cart_id)
    else:
        raise ValidationError("Panier manquant", errors=[{"field": "cart_id", "msg": "cart_id ou cart requis"}])

    order = checkout_service.create_order(snapshot, body.delivery, body.client_id)
    return {
        "numero_commande": order.get("numero_commande"),
        "statut": order.get("statut"),
        "sous_total": order.get("sous_total"),
        "frais_livraison": order.get("frais_livraison"),
        "remise": order.get("remise"),
        "montant_total": order.get("montant_total"),
    }

@router.post(
    "/orders/{numero_commande}/payment",
    dependencies=[Depends(optional_rate_limit(times=10, seconds=60))],
)
def initiate_payment(numero_commande: str, body: InitiatePaymentRequest) -> Dict[str, Any]:
    """
    Lance une tentative de paiement: { "provider": "card|wave|orange_money|cash_on_delivery", "provider_params": {"phone": "..."} }.
    - 200: {reference_paiement, redirect_url, session_id, ...}
    - 400 si la commande n'est plus `pending`, 502 si le fournisseur échoue (champ `retryable`)
    """
    return checkout_service.initiate_payment(numero_commande, body.provider, body.provider_params)

@router.get("/orders/{numero_commande}/payment-status")
def payment_status(numero_commande: str) -> Dict[str, Any]:
    """Statut de la commande et de sa dernière tentative (interroge le fournisseur si besoin)."""
    return checkout_service.refresh_payment_status(numero_commande)
