# module boutique.commandes.repository
"""
Accès Supabase aux commandes (table `commandes`) et à leurs lignes (`articles_commande`).

- L'insertion passe par la RPC `creer_commande` (commande + lignes dans une seule transaction)
- Les changements de statut sont des UPDATE conditionnels: `WHERE id = .. AND statut IN (..)`.
  PostgreSQL verrouille la ligne et réévalue la condition, deux webhooks concurrents
  ne peuvent donc pas appliquer la même transition.
- Les commandes ne sont jamais supprimées: `deleted_at` (soft delete) et filtrées à la lecture.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import logging
from postgrest.exceptions import APIError

from boutique.infra.supabase_client import get_service_supabase, first_row
from boutique.infra.errors import is_unique_violation, raise_for_api_error

logger = logging.getLogger(__name__)

ORDER_COLUMNS = (
    "id, numero_commande, client_id, panier_id, sous_total, frais_livraison, remise, "
    "montant_total, statut, adresse_livraison, telephone_livraison, nom_destinataire, "
    "email_contact, notes_client, date_confirmation, created_at"
)


def insert_order(order: Dict[str, Any], lines: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Crée la commande et ses lignes de façon atomique.
    Retour: la commande créée, ou None si `numero_commande` existe déjà (l'appelant régénère).
    """
    try:
        res = (
            get_service_supabase()
            .rpc("creer_commande", {"p_commande": order, "p_articles": lines})
            .execute()
        )
    except APIError as e:
        if is_unique_violation(e):
            logger.info("commandes.insert duplicate numero_commande=%s", order.get("numero_commande"))
            return None
        raise_for_api_error(e, "commandes.insert")
    return first_row(res)


def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("commandes")
            .select(ORDER_COLUMNS)
            .eq("id", order_id)
            .is_("deleted_at", "null")
            .limit(1)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "commandes.get")
    return first_row(res)


def get_order_by_number(numero_commande: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("commandes")
            .select(ORDER_COLUMNS)
            .eq("numero_commande", numero_commande)
            .is_("deleted_at", "null")
            .limit(1)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "commandes.get_by_number")
    return first_row(res)


def get_order_lines(order_id: str) -> List[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("articles_commande")
            .select("produit_id, nom_produit, quantite, prix_unitaire, prix_total_article, taille_choisie, couleur_choisie")
            .eq("commande_id", order_id)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "articles_commande.list")
    return res.data or []


def transition_order_status(
    order_id: str,
    to_status: str,
    from_statuses: Iterable[str],
    extra: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Passe la commande à `to_status` seulement si son statut courant est dans `from_statuses`.
    Retour: la ligne mise à jour, ou None si la condition n'a rien touché.
    """
    payload: Dict[str, Any] = {"statut": to_status}
    if extra:
        payload.update(extra)
    try:
        res = (
            get_service_supabase()
            .table("commandes")
            .update(payload)
            .eq("id", order_id)
            .in_("statut", list(from_statuses))
            .is_("deleted_at", "null")
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "commandes.transition")
    return first_row(res)


def soft_delete_order(order_id: str) -> bool:
    now = datetime.now(timezone.utc).isoformat()
    try:
        res = (
            get_service_supabase()
            .table("commandes")
            .update({"deleted_at": now})
            .eq("id", order_id)
            .is_("deleted_at", "null")
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "commandes.soft_delete")
    return bool(res.data)
