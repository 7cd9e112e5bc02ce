# module boutique.paiements.repository
"""
Accès Supabase aux tentatives de paiement (`paiements`) et au journal des
événements fournisseurs (`evenements_paiement`).

Contraintes portées par le schéma (supabase/schema.sql):
- `reference_paiement` unique
- index unique partiel: au plus une ligne `statut = 'valid'` par commande
- `evenements_paiement.cle_dedup` unique
"""
from typing import Any, Dict, Iterable, List, Optional
import logging
from postgrest.exceptions import APIError

from boutique.infra.supabase_client import get_service_supabase, first_row
from boutique.infra.errors import is_unique_violation, raise_for_api_error

logger = logging.getLogger(__name__)

ATTEMPT_COLUMNS = (
    "id, commande_id, client_id, montant, devise, reference_paiement, fournisseur, "
    "methode_paiement, statut, transaction_id, session_id, message_retour, "
    "date_initiation, date_validation"
)


def insert_attempt(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Insère une tentative. None si la référence existe déjà."""
    try:
        res = get_service_supabase().table("paiements").insert(row).execute()
    except APIError as e:
        if is_unique_violation(e):
            logger.info("paiements.insert duplicate reference=%s", row.get("reference_paiement"))
            return None
        raise_for_api_error(e, "paiements.insert")
    return first_row(res)


def get_attempt_by_reference(reference: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("paiements")
            .select(ATTEMPT_COLUMNS)
            .eq("reference_paiement", reference)
            .limit(1)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "paiements.get_by_reference")
    return first_row(res)


def get_attempt_by_transaction_id(transaction_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("paiements")
            .select(ATTEMPT_COLUMNS)
            .eq("transaction_id", transaction_id)
            .limit(1)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "paiements.get_by_transaction")
    return first_row(res)


def list_attempts(commande_id: str) -> List[Dict[str, Any]]:
    try:
        res = (
            get_service_supabase()
            .table("paiements")
            .select(ATTEMPT_COLUMNS)
            .eq("commande_id", commande_id)
            .order("date_initiation", desc=True)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "paiements.list")
    return res.data or []


def update_attempt(attempt_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Mise à jour sans condition de statut (données de session fournisseur)."""
    try:
        res = get_service_supabase().table("paiements").update(fields).eq("id", attempt_id).execute()
    except APIError as e:
        raise_for_api_error(e, "paiements.update")
    return first_row(res)


def transition_attempt(
    attempt_id: str,
    to_status: str,
    from_statuses: Iterable[str],
    extra: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """
    UPDATE conditionnel du statut d'une tentative.
    Retour None si le statut courant n'était pas dans `from_statuses`, ou si l'index
    unique « une seule tentative valide par commande » a refusé la ligne.
    """
    payload: Dict[str, Any] = {"statut": to_status}
    if extra:
        payload.update(extra)
    try:
        res = (
            get_service_supabase()
            .table("paiements")
            .update(payload)
            .eq("id", attempt_id)
            .in_("statut", list(from_statuses))
            .execute()
        )
    except APIError as e:
        if is_unique_violation(e):
            logger.warning("paiements.transition refusée (tentative valide existante) id=%s", attempt_id)
            return None
        raise_for_api_error(e, "paiements.transition")
    return first_row(res)


def event_seen(dedup_key: str) -> bool:
    try:
        res = (
            get_service_supabase()
            .table("evenements_paiement")
            .select("id")
            .eq("cle_dedup", dedup_key)
            .limit(1)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, "evenements_paiement.get")
    return bool(res.data)


def record_event(row: Dict[str, Any]) -> bool:
    """Journalise un événement appliqué. False si la clé de dédup est déjà présente."""
    try:
        get_service_supabase().table("evenements_paiement").insert(row).execute()
    except APIError as e:
        if is_unique_violation(e):
            return False
        raise_for_api_error(e, "evenements_paiement.insert")
    return True
