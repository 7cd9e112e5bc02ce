"""
Vérification (indicative) des produits d'un panier avant création de commande.
Le stock appartient au catalogue: ce contrôle n'est pas transactionnel.
"""
from typing import Dict, List
import logging

from boutique.config import AMOUNT_TOLERANCE
from boutique.catalogue import repository
from boutique.checkout.errors import PriceChanged, ProductUnavailable, StockUnavailable
from boutique.checkout.models import CartLine

logger = logging.getLogger(__name__)


def check_availability(lines: List[CartLine]) -> Dict[str, dict]:
    """
    - Chaque produit doit exister et être visible -> sinon ProductUnavailable
    - Le prix de chaque ligne doit être le prix courant du catalogue (à AMOUNT_TOLERANCE près) -> sinon PriceChanged
    - Si le produit gère son stock, la quantité totale demandée doit être disponible -> sinon StockUnavailable
    Retour: {produit_id: produit} pour compléter les noms de lignes.
    """
    wanted: Dict[str, int] = {}
    for line in lines:
        wanted[line.produit_id] = wanted.get(line.produit_id, 0) + line.quantite

    products = repository.get_products_map(wanted.keys())
    for line in lines:
        product = products.get(line.produit_id)
        if not product or product.get("est_visible") is False:
            logger.info("catalogue.check produit indisponible id=%s", line.produit_id)
            raise ProductUnavailable(f"Produit indisponible: {line.produit_id}", produit_id=line.produit_id)
        price = repository.current_price(product)
        if abs(line.prix_unitaire - price) > AMOUNT_TOLERANCE:
            logger.warning(
                "catalogue.check prix incohérent id=%s catalogue=%s panier=%s", line.produit_id, price, line.prix_unitaire
            )
            raise PriceChanged(
                f"Le prix de {product.get('nom') or line.produit_id} a changé",
                produit_id=line.produit_id,
                prix_actuel=str(price),
            )

    for produit_id, qty in wanted.items():
        product = products[produit_id]
        if product.get("gestion_stock"):
            stock = int(product.get("stock_disponible") or 0)
            if stock < qty:
                logger.info("catalogue.check stock insuffisant id=%s stock=%s demande=%s", produit_id, stock, qty)
                raise StockUnavailable(
                    f"Stock insuffisant pour {product.get('nom') or produit_id}",
                    produit_id=produit_id,
                    disponible=stock,
                )
    return products
