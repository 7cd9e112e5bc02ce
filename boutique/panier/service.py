"""
Cas d'usage 'panier': photo du panier au moment du checkout.
"""
from decimal import Decimal
from typing import Optional

from boutique.config import DEFAULT_SHIPPING_FEE
from boutique.catalogue import repository as catalogue_repo
from boutique.checkout.errors import BusinessRuleError, ValidationError
from boutique.checkout.models import CartLine, CartSnapshot
from . import repository


def get_cart(panier_id: str, shipping_fee: Optional[Decimal] = None) -> CartSnapshot:
    """
    Construit le CartSnapshot d'un panier actif:
    - prix repris du catalogue (prix promo si la promotion est en cours)
    - frais de livraison depuis la configuration, remise 0 (moteur de coupons externe)
    """
    header = repository.get_cart(panier_id)
    if not header:
        raise ValidationError("Panier introuvable", errors=[{"field": "cart_id", "msg": "inconnu"}])
    if (header.get("statut") or "actif") != "actif":
        raise BusinessRuleError("Ce panier a déjà été utilisé", panier_id=panier_id)

    rows = repository.get_cart_lines(panier_id)
    products = catalogue_repo.get_products_map(str(r.get("produit_id")) for r in rows)

    items = []
    for row in rows:
        produit_id = str(row.get("produit_id"))
        if int(row.get("quantite") or 0) <= 0:
            continue
        product = products.get(produit_id) or {}
        price = catalogue_repo.current_price(product) if product else Decimal(str(row.get("prix_unitaire") or 0))
        items.append(
            CartLine(
                produit_id=produit_id,
                nom_produit=product.get("nom") or "",
                quantite=int(row.get("quantite") or 0),
                prix_unitaire=price,
                taille_choisie=row.get("taille_choisie"),
                couleur_choisie=row.get("couleur_choisie"),
            )
        )

    subtotal = sum((i.total for i in items), Decimal("0"))
    fee = DEFAULT_SHIPPING_FEE if shipping_fee is None else shipping_fee
    discount = Decimal("0")
    return CartSnapshot(
        items=items,
        subtotal=subtotal,
        shipping_fee=fee,
        discount=discount,
        total=subtotal + fee - discount,
        cart_id=panier_id,
    )
