"""
File de tâches post-confirmation (liste Redis consommée par un worker externe).

Chaque message porte une clé d'idempotence `<tâche>:<commande_id>`: la livraison est
au moins une fois, le worker ignore une clé déjà traitée.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json
import logging

import redis

from boutique.config import TASK_QUEUE_KEY, TASK_QUEUE_REDIS_URL

logger = logging.getLogger(__name__)

GENERATE_INVOICE = "generate_invoice"
SEND_CONFIRMATION_EMAIL = "send_confirmation_email"
CLEAR_CART = "clear_cart"
POST_CONFIRMATION_TASKS = (GENERATE_INVOICE, SEND_CONFIRMATION_EMAIL, CLEAR_CART)

_redis: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(TASK_QUEUE_REDIS_URL, encoding="utf-8", decode_responses=True)
    return _redis


def set_redis(client: Optional[redis.Redis]) -> None:
    """Remplace le client Redis (fakeredis en test)."""
    global _redis
    _redis = client


def close_redis() -> None:
    global _redis
    if _redis is not None:
        _redis.close()
        _redis = None


def enqueue(task: str, commande_id: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """
    Publie une tâche (fire-and-forget).
    Un échec Redis est journalisé, jamais propagé: la commande reste confirmée.
    """
    message = {
        "task": task,
        "commande_id": str(commande_id),
        "idempotency_key": f"{task}:{commande_id}",
        "enqueued_at": datetime.now(timezone.utc).isoformat(),
        "payload": payload or {},
    }
    try:
        get_redis().lpush(TASK_QUEUE_KEY, json.dumps(message))
    except redis.RedisError:
        logger.exception("dispatch.enqueue échec task=%s commande_id=%s", task, commande_id)
        return False
    logger.info("dispatch.enqueue task=%s commande_id=%s", task, commande_id)
    return True


def enqueue_post_confirmation(order: Dict[str, Any]) -> List[str]:
    """Facture, email de confirmation, vidage du panier. Retour: tâches effectivement publiées."""
    payload = {"numero_commande": order.get("numero_commande"), "panier_id": order.get("panier_id")}
    return [task for task in POST_CONFIRMATION_TASKS if enqueue(task, order["id"], payload)]


def queue_health_info() -> Dict[str, Any]:
    try:
        client = get_redis()
        client.ping()
        return {"ok": True, "pending": client.llen(TASK_QUEUE_KEY)}
    except redis.RedisError as e:
        return {"ok": False, "error": str(e)}
