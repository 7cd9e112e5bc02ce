# module boutique.panier.repository
from typing import Any, Dict, List, Optional
import logging
from postgrest.exceptions import APIError

import boutique.infra.supabase_client as supabase_client
from boutique.infra.errors import raise_for_api_error

logger = logging.getLogger(__name__)


def get_cart(panier_id: str) -> Optional[Dict[str, Any]]:
    """Entête du panier (table 'paniers'), None si absent."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("paniers")
            .select("id, client_id, session_id, statut")
            .eq("id", panier_id)
            .limit(1)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "paniers.get")
    return supabase_client.first_row(res)


def get_cart_lines(panier_id: str) -> List[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("articles_panier")
            .select("produit_id, quantite, prix_unitaire, taille_choisie, couleur_choisie")
            .eq("panier_id", panier_id)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "articles_panier.list")
    return res.data or []
