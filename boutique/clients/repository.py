# module boutique.clients.repository
from typing import Any, Dict, Optional
import logging
from postgrest.exceptions import APIError

import boutique.infra.supabase_client as supabase_client
from boutique.infra.errors import is_unique_violation, raise_for_api_error

logger = logging.getLogger(__name__)

CLIENT_COLUMNS = "id, nom, prenom, telephone, email"


def _get_one(column: str, value: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("clients")
            .select(CLIENT_COLUMNS)
            .eq(column, value)
            .limit(1)
            .execute()
        )
    except APIError as e:
        raise_for_api_error(e, f"clients.get_by_{column}")
    return supabase_client.first_row(res)


def get_client(client_id: str) -> Optional[Dict[str, Any]]:
    return _get_one("id", client_id)


def get_client_by_email(email: str) -> Optional[Dict[str, Any]]:
    return _get_one("email", email.strip().lower())


def get_client_by_phone(telephone: str) -> Optional[Dict[str, Any]]:
    return _get_one("telephone", telephone)


def insert_client(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Crée le client. None si le téléphone (unique) est déjà pris."""
    try:
        res = supabase_client.get_service_supabase().table("clients").insert(row).execute()
    except APIError as e:
        if is_unique_violation(e):
            logger.info("clients.insert duplicate telephone=%s", row.get("telephone"))
            return None
        raise_for_api_error(e, "clients.insert")
    return supabase_client.first_row(res)
