"""
Lecture du catalogue (table 'produits') pour le checkout.
"""
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional
import logging
from postgrest.exceptions import APIError

import boutique.infra.supabase_client as supabase_client
from boutique.infra.errors import raise_for_api_error

logger = logging.getLogger(__name__)

# module boutique.catalogue.repository
def fetch_products_by_ids(ids: List[str]) -> List[dict]:
    """
    Récupère les produits visibles et non supprimés par leurs IDs.
    - Retourne [] si ids vide.
    """
    if not ids:
        return []
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("produits")
            .select("id, nom, prix, prix_promo, debut_promo, fin_promo, stock_disponible, gestion_stock, est_visible")
            .in_("id", [str(i) for i in ids])
            .is_("deleted_at", "null")
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "produits.list")
    return res.data or []

def get_products_map(ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """
    Retourne un dict {id: produit} à partir d'une liste d'IDs.
    """
    products = fetch_products_by_ids(list(ids))
    return {str(p.get("id")): p for p in products}

def _to_date(v: Any) -> Optional[date]:
    if not v:
        return None
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v)[:10])
    except ValueError:
        return None

def current_price(product: Dict[str, Any], today: Optional[date] = None) -> Decimal:
    """
    Prix applicable aujourd'hui: prix promo si défini et dans sa période, sinon prix de base.
    """
    today = today or date.today()
    try:
        base = Decimal(str(product.get("prix") or 0))
        promo = product.get("prix_promo")
        if promo is not None:
            start, end = _to_date(product.get("debut_promo")), _to_date(product.get("fin_promo"))
            if (start is None or start <= today) and (end is None or today <= end):
                return Decimal(str(promo))
        return base
    except InvalidOperation:
        logger.warning("catalogue.current_price prix illisible produit=%s", product.get("id"))
        return Decimal("0")
