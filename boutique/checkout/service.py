"""
Orchestrateur du checkout: commande -> tentative de paiement -> confirmation.

Seul ce module change le statut d'une commande ou d'une tentative. Les transitions
sont des UPDATE conditionnels (voir commandes.repository / paiements.repository):
un webhook concurrent qui perd la course ne touche aucune ligne et relit l'état.

Machine à états (commande):
    pending --succeeded / paiement à la livraison--> confirmed
    pending --cancelled, aucune tentative valide--> cancelled
    pending --failed, tentatives épuisées--> failed
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from boutique.config import (
    AMOUNT_TOLERANCE,
    CURRENCY,
    DEFAULT_SHIPPING_FEE,
    MAX_PAYMENT_ATTEMPTS,
    ORDER_NUMBER_MAX_TRIES,
)
from boutique.commandes import repository as commandes_repo
from boutique.paiements import repository as paiements_repo
from boutique.catalogue import service as catalogue_service
from boutique.clients import service as clients_service
from boutique.dispatch import queue
from boutique import providers
from boutique.providers import EventType, ProviderEvent
from .errors import (
    AmountMismatch,
    CheckoutSystemError,
    InvalidOrderState,
    MalformedEvent,
    OrderNotFound,
    ProviderError,
    UnknownReference,
    ValidationError,
)
from .models import (
    AttemptStatus,
    CartSnapshot,
    DeliveryInfo,
    OrderStatus,
    ReconcileOutcome,
    ReconcileResult,
)
from .order_number import generate_order_number, generate_payment_reference

logger = logging.getLogger(__name__)

CASH_ON_DELIVERY = "cash_on_delivery"

_TARGET_STATUS = {
    EventType.SUCCEEDED: AttemptStatus.VALID.value,
    EventType.FAILED: AttemptStatus.FAILED.value,
    EventType.CANCELLED: AttemptStatus.CANCELLED.value,
    EventType.REFUNDED: AttemptStatus.REFUNDED.value,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


# --- création de commande -----------------------------------------------------

def compute_totals(cart: CartSnapshot) -> Dict[str, Decimal]:
    """
    Recalcule les montants à partir des lignes:
    total = sous-total + frais de livraison - remise.
    Des montants fournis par le panier qui s'écartent de plus de AMOUNT_TOLERANCE sont refusés.
    """
    if not cart.items:
        raise ValidationError("Le panier est vide", errors=[{"field": "items", "msg": "au moins un article"}])

    subtotal = sum((line.total for line in cart.items), Decimal("0"))
    shipping = DEFAULT_SHIPPING_FEE if cart.shipping_fee is None else cart.shipping_fee
    discount = cart.discount or Decimal("0")
    if shipping < 0 or discount < 0:
        raise ValidationError("Montants négatifs", errors=[{"field": "discount", "msg": "doit être positif"}])
    total = subtotal + shipping - discount
    if total < 0:
        raise ValidationError("Remise supérieure au montant de la commande", errors=[{"field": "discount", "msg": "trop élevée"}])

    errors: List[Dict[str, Any]] = []
    if cart.subtotal is not None and abs(cart.subtotal - subtotal) > AMOUNT_TOLERANCE:
        errors.append({"field": "subtotal", "msg": f"attendu {subtotal}"})
    if cart.total is not None and abs(cart.total - total) > AMOUNT_TOLERANCE:
        errors.append({"field": "total", "msg": f"attendu {total}"})
    if errors:
        raise ValidationError("Montants du panier incohérents", errors=errors)
    return {"subtotal": subtotal, "shipping_fee": shipping, "discount": discount, "total": total}


def create_order(cart: CartSnapshot, delivery: DeliveryInfo, client_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Crée une commande `pending` et ses lignes en une transaction.

    Étapes:
    - recalcul et contrôle des montants
    - contrôle indicatif des produits / du stock (catalogue)
    - résolution du client (création si invité)
    - génération du numéro de commande, régénéré si la contrainte d'unicité le refuse
    Aucun paiement n'est lancé, aucun email envoyé.
    """
    totals = compute_totals(cart)
    products = catalogue_service.check_availability(cart.items)
    client = clients_service.get_or_create_client(delivery, client_id)

    lines = [
        {
            "produit_id": line.produit_id,
            "nom_produit": line.nom_produit or (products.get(line.produit_id) or {}).get("nom") or "",
            "quantite": line.quantite,
            "prix_unitaire": _money(line.prix_unitaire),
            "prix_total_article": _money(line.total),
            "taille_choisie": line.taille_choisie,
            "couleur_choisie": line.couleur_choisie,
        }
        for line in cart.items
    ]
    order_row: Dict[str, Any] = {
        "client_id": client.get("id"),
        "panier_id": cart.cart_id,
        "sous_total": _money(totals["subtotal"]),
        "frais_livraison": _money(totals["shipping_fee"]),
        "remise": _money(totals["discount"]),
        "montant_total": _money(totals["total"]),
        "statut": OrderStatus.PENDING.value,
        "adresse_livraison": delivery.adresse,
        "telephone_livraison": delivery.telephone,
        "nom_destinataire": delivery.nom_destinataire,
        "email_contact": str(delivery.email) if delivery.email else None,
        "notes_client": delivery.notes,
    }

    for _ in range(ORDER_NUMBER_MAX_TRIES):
        order_row["numero_commande"] = generate_order_number()
        created = commandes_repo.insert_order(order_row, lines)
        if created:
            logger.info(
                "checkout.create_order numero=%s total=%s client_id=%s",
                created.get("numero_commande"), order_row["montant_total"], order_row["client_id"],
            )
            return {**created, "articles": lines}
    logger.error("checkout.create_order numéro de commande introuvable après %s essais", ORDER_NUMBER_MAX_TRIES)
    raise CheckoutSystemError("Impossible de générer un numéro de commande unique")


# --- initiation du paiement ---------------------------------------------------

def _get_pending_order(numero_commande: str) -> Dict[str, Any]:
    order = commandes_repo.get_order_by_number(numero_commande)
    if not order:
        raise OrderNotFound(f"Commande introuvable: {numero_commande}")
    if order.get("statut") != OrderStatus.PENDING.value:
        raise InvalidOrderState(
            f"La commande {numero_commande} n'est plus en attente de paiement",
            statut=order.get("statut"),
        )
    return order


def _new_attempt(order: Dict[str, Any], fournisseur: str, methode: str) -> Dict[str, Any]:
    for _ in range(ORDER_NUMBER_MAX_TRIES):
        row = {
            "commande_id": order["id"],
            "client_id": order.get("client_id"),
            "montant": order["montant_total"],
            "devise": CURRENCY,
            "reference_paiement": generate_payment_reference(),
            "fournisseur": fournisseur,
            "methode_paiement": methode,
            "statut": AttemptStatus.PENDING.value,
            "date_initiation": _now(),
        }
        attempt = paiements_repo.insert_attempt(row)
        if attempt:
            return attempt
    raise CheckoutSystemError("Impossible de générer une référence de paiement unique")


def _initiation_result(order: Dict[str, Any], attempt: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    return {
        "numero_commande": order.get("numero_commande"),
        "reference_paiement": attempt.get("reference_paiement"),
        "provider": attempt.get("methode_paiement"),
        "gateway": attempt.get("fournisseur"),
        "montant": attempt.get("montant"),
        "devise": attempt.get("devise") or CURRENCY,
        **extra,
    }


def initiate_payment(numero_commande: str, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Ouvre une nouvelle tentative de paiement pour une commande `pending`.

    - cash_on_delivery: confirmation immédiate (voir accept_cash_on_delivery)
    - sinon: tentative `pending` créée, puis session ouverte chez le fournisseur
    - échec fournisseur: tentative `failed` (message conservé), commande toujours `pending`,
      ProviderError remontée avec son indicateur `retryable`
    """
    order = _get_pending_order(numero_commande)
    if method == CASH_ON_DELIVERY:
        return accept_cash_on_delivery(order)

    gateway = providers.gateway_for(method)
    adapter = providers.get_provider(gateway)
    attempt = _new_attempt(order, gateway, method)
    reference = attempt["reference_paiement"]
    order_for_provider = {**order, "articles": commandes_repo.get_order_lines(order["id"])}

    try:
        data = adapter.initiate(order_for_provider, attempt, params or {})
    except ProviderError as e:
        logger.warning("checkout.initiate_payment échec provider=%s reference=%s err=%s", gateway, reference, e.message)
        paiements_repo.transition_attempt(
            attempt["id"], AttemptStatus.FAILED.value, [AttemptStatus.PENDING.value], {"message_retour": e.message[:500]}
        )
        raise
    except Exception as e:
        logger.exception("checkout.initiate_payment erreur inattendue provider=%s reference=%s", gateway, reference)
        paiements_repo.transition_attempt(
            attempt["id"], AttemptStatus.FAILED.value, [AttemptStatus.PENDING.value], {"message_retour": str(e)[:500]}
        )
        raise CheckoutSystemError("Erreur lors de l'initiation du paiement") from e

    paiements_repo.update_attempt(attempt["id"], {"session_id": data.session_id, "donnees_api": data.raw_response})
    logger.info("checkout.initiate_payment numero=%s provider=%s reference=%s", numero_commande, gateway, reference)
    return _initiation_result(
        order,
        attempt,
        statut=AttemptStatus.PENDING.value,
        session_id=data.session_id,
        redirect_url=data.redirect_url,
        **data.extra,
    )


def _confirm_order(order_id: str) -> Optional[Dict[str, Any]]:
    """pending|failed -> confirmed, puis tâches post-confirmation. None si la commande n'a pas bougé."""
    confirmed = commandes_repo.transition_order_status(
        order_id,
        OrderStatus.CONFIRMED.value,
        [OrderStatus.PENDING.value, OrderStatus.FAILED.value],
        {"date_confirmation": _now()},
    )
    if confirmed:
        queue.enqueue_post_confirmation(confirmed)
    return confirmed


def accept_cash_on_delivery(order: Dict[str, Any]) -> Dict[str, Any]:
    """
    Paiement à la livraison: une tentative `pending` (encaissée au moment de la livraison)
    et confirmation immédiate de la commande.
    """
    attempt = _new_attempt(order, CASH_ON_DELIVERY, CASH_ON_DELIVERY)
    confirmed = commandes_repo.transition_order_status(
        order["id"],
        OrderStatus.CONFIRMED.value,
        [OrderStatus.PENDING.value],
        {"date_confirmation": _now()},
    )
    if not confirmed:
        paiements_repo.transition_attempt(
            attempt["id"], AttemptStatus.CANCELLED.value, [AttemptStatus.PENDING.value],
            {"message_retour": "commande déjà traitée"},
        )
        raise InvalidOrderState(f"La commande {order.get('numero_commande')} n'est plus en attente de paiement")
    queue.enqueue_post_confirmation(confirmed)
    logger.info("checkout.cash_on_delivery numero=%s confirmée", order.get("numero_commande"))
    return _initiation_result(
        order, attempt, statut=AttemptStatus.PENDING.value, statut_commande=OrderStatus.CONFIRMED.value,
        session_id=None, redirect_url=None,
    )


# --- réconciliation -----------------------------------------------------------

def _find_attempt(event: ProviderEvent) -> Optional[Dict[str, Any]]:
    attempt = None
    if event.reference:
        attempt = paiements_repo.get_attempt_by_reference(event.reference)
    elif event.transaction_id:
        attempt = paiements_repo.get_attempt_by_transaction_id(event.transaction_id)
    if attempt and attempt.get("fournisseur") != event.provider:
        logger.warning(
            "checkout.reconcile fournisseur incohérent reference=%s attendu=%s reçu=%s",
            event.reference, attempt.get("fournisseur"), event.provider,
        )
        return None
    return attempt


def _check_amount(event: ProviderEvent, attempt: Dict[str, Any]) -> None:
    if event.amount is None:
        if event.event_type is EventType.SUCCEEDED:
            raise MalformedEvent("Montant absent de l'événement de paiement")
        return
    expected = Decimal(str(attempt.get("montant") or 0))
    if abs(event.amount - expected) > AMOUNT_TOLERANCE:
        logger.warning(
            "checkout.reconcile montant incohérent reference=%s attendu=%s reçu=%s",
            attempt.get("reference_paiement"), expected, event.amount,
        )
        raise AmountMismatch(
            "Montant du paiement différent du montant attendu",
            attendu=str(expected), recu=str(event.amount),
        )


def _record(event: ProviderEvent, result: ReconcileResult) -> ReconcileResult:
    paiements_repo.record_event({
        "cle_dedup": event.dedup_key,
        "fournisseur": event.provider,
        "type_evenement": event.event_type.value,
        "reference_paiement": result.reference,
        "resultat": result.outcome.value,
        "payload": event.raw_payload,
    })
    logger.info(
        "checkout.reconcile outcome=%s reference=%s type=%s provider=%s",
        result.outcome.value, result.reference, event.event_type.value, event.provider,
    )
    return result


def _order_status(order_id: str) -> Optional[str]:
    order = commandes_repo.get_order(order_id)
    return order.get("statut") if order else None


def _lost_race(event: ProviderEvent, attempt: Dict[str, Any]) -> ReconcileResult:
    """Un UPDATE conditionnel n'a rien touché: relire et qualifier."""
    current = paiements_repo.get_attempt_by_reference(attempt["reference_paiement"]) or attempt
    status = current.get("statut")
    if status == _TARGET_STATUS[event.event_type]:
        outcome = ReconcileOutcome.ALREADY_PROCESSED
    elif event.event_type is EventType.SUCCEEDED and status in (AttemptStatus.PENDING.value, AttemptStatus.FAILED.value):
        logger.error("checkout.reconcile double paiement refusé reference=%s", attempt["reference_paiement"])
        outcome = ReconcileOutcome.REJECTED_ALREADY_PAID
    else:
        outcome = ReconcileOutcome.IGNORED
    return ReconcileResult(outcome, attempt["reference_paiement"], status, _order_status(attempt["commande_id"]))


def _apply_succeeded(event: ProviderEvent, attempt: Dict[str, Any]) -> ReconcileResult:
    reference = attempt["reference_paiement"]
    order_id = attempt["commande_id"]
    # Déjà payée: tentative valide, ou paiement à la livraison accepté (tentative restée pending)
    others = [
        a for a in paiements_repo.list_attempts(order_id)
        if a.get("id") != attempt["id"] and (
            a.get("statut") == AttemptStatus.VALID.value
            or (a.get("fournisseur") == CASH_ON_DELIVERY and a.get("statut") == AttemptStatus.PENDING.value)
        )
    ]
    if others:
        logger.error(
            "checkout.reconcile double paiement refusé reference=%s tentative_valide=%s",
            reference, others[0].get("reference_paiement"),
        )
        return ReconcileResult(ReconcileOutcome.REJECTED_ALREADY_PAID, reference, attempt.get("statut"), _order_status(order_id))

    updated = paiements_repo.transition_attempt(
        attempt["id"],
        AttemptStatus.VALID.value,
        [AttemptStatus.PENDING.value, AttemptStatus.FAILED.value],
        {"transaction_id": event.transaction_id, "date_validation": _now(), "donnees_api": event.raw_payload},
    )
    if not updated:
        return _lost_race(event, attempt)

    confirmed = _confirm_order(order_id)
    if confirmed:
        return ReconcileResult(ReconcileOutcome.CONFIRMED, reference, AttemptStatus.VALID.value, OrderStatus.CONFIRMED.value, True)
    order_status = _order_status(order_id)
    if order_status != OrderStatus.CONFIRMED.value:
        logger.error("checkout.reconcile paiement reçu sur commande %s reference=%s", order_status, reference)
    return ReconcileResult(ReconcileOutcome.ATTEMPT_VALIDATED, reference, AttemptStatus.VALID.value, order_status)


def _apply_failed(event: ProviderEvent, attempt: Dict[str, Any]) -> ReconcileResult:
    reference = attempt["reference_paiement"]
    order_id = attempt["commande_id"]
    updated = paiements_repo.transition_attempt(
        attempt["id"],
        AttemptStatus.FAILED.value,
        [AttemptStatus.PENDING.value],
        {"message_retour": (event.message or "paiement refusé")[:500], "donnees_api": event.raw_payload},
    )
    if not updated:
        return _lost_race(event, attempt)

    failed = [a for a in paiements_repo.list_attempts(order_id) if a.get("statut") == AttemptStatus.FAILED.value]
    if len(failed) >= MAX_PAYMENT_ATTEMPTS:
        order = commandes_repo.transition_order_status(order_id, OrderStatus.FAILED.value, [OrderStatus.PENDING.value])
        if order:
            logger.info("checkout.reconcile tentatives épuisées order_id=%s echecs=%s", order_id, len(failed))
            return ReconcileResult(ReconcileOutcome.ORDER_FAILED, reference, AttemptStatus.FAILED.value, OrderStatus.FAILED.value)
    return ReconcileResult(ReconcileOutcome.ATTEMPT_FAILED, reference, AttemptStatus.FAILED.value, _order_status(order_id))


def _apply_cancelled(event: ProviderEvent, attempt: Dict[str, Any]) -> ReconcileResult:
    reference = attempt["reference_paiement"]
    order_id = attempt["commande_id"]
    updated = paiements_repo.transition_attempt(
        attempt["id"],
        AttemptStatus.CANCELLED.value,
        [AttemptStatus.PENDING.value, AttemptStatus.FAILED.value],
        {"message_retour": (event.message or "paiement annulé")[:500]},
    )
    if not updated:
        return _lost_race(event, attempt)

    has_valid = any(a.get("statut") == AttemptStatus.VALID.value for a in paiements_repo.list_attempts(order_id))
    if not has_valid:
        order = commandes_repo.transition_order_status(
            order_id, OrderStatus.CANCELLED.value, [OrderStatus.PENDING.value, OrderStatus.FAILED.value]
        )
        if order:
            return ReconcileResult(ReconcileOutcome.ORDER_CANCELLED, reference, AttemptStatus.CANCELLED.value, OrderStatus.CANCELLED.value)
    return ReconcileResult(ReconcileOutcome.ATTEMPT_CANCELLED, reference, AttemptStatus.CANCELLED.value, _order_status(order_id))


def _apply_refunded(event: ProviderEvent, attempt: Dict[str, Any]) -> ReconcileResult:
    updated = paiements_repo.transition_attempt(
        attempt["id"], AttemptStatus.REFUNDED.value, [AttemptStatus.VALID.value], {"donnees_api": event.raw_payload}
    )
    if not updated:
        return _lost_race(event, attempt)
    return ReconcileResult(
        ReconcileOutcome.REFUNDED, attempt["reference_paiement"], AttemptStatus.REFUNDED.value, _order_status(attempt["commande_id"])
    )


_HANDLERS = {
    EventType.SUCCEEDED: _apply_succeeded,
    EventType.FAILED: _apply_failed,
    EventType.CANCELLED: _apply_cancelled,
    EventType.REFUNDED: _apply_refunded,
}

# Statuts de tentative à partir desquels un type d'événement peut encore agir
_ALLOWED_FROM = {
    EventType.SUCCEEDED: {AttemptStatus.PENDING.value, AttemptStatus.FAILED.value},
    EventType.FAILED: {AttemptStatus.PENDING.value},
    EventType.CANCELLED: {AttemptStatus.PENDING.value, AttemptStatus.FAILED.value},
    EventType.REFUNDED: {AttemptStatus.VALID.value},
}


def reconcile(event: ProviderEvent) -> ReconcileResult:
    """
    Applique un événement fournisseur, de façon idempotente.

    1. Événement déjà journalisé (clé de dédup) -> ALREADY_PROCESSED, sans effet
    2. Tentative introuvable -> UnknownReference
    3. Tentative déjà dans l'état visé -> rejeu, sans effet (une confirmation de commande
       interrompue est reprise)
    4. Transition interdite (ex: failed après valid) -> IGNORED
    5. Montant hors tolérance -> AmountMismatch, rien n'est modifié
    6. Transition conditionnelle, puis journalisation de l'événement
    """
    if paiements_repo.event_seen(event.dedup_key):
        logger.info("checkout.reconcile doublon ignoré key=%s", event.dedup_key)
        return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, event.reference)

    attempt = _find_attempt(event)
    if not attempt:
        logger.warning(
            "checkout.reconcile référence inconnue provider=%s reference=%s type=%s",
            event.provider, event.reference or event.transaction_id, event.event_type.value,
        )
        raise UnknownReference(f"Aucun paiement pour la référence {event.reference or event.transaction_id}")

    reference = attempt["reference_paiement"]
    status = attempt.get("statut")

    if status == _TARGET_STATUS[event.event_type]:
        dispatched = False
        order_status = _order_status(attempt["commande_id"])
        if event.event_type is EventType.SUCCEEDED and order_status in (OrderStatus.PENDING.value, OrderStatus.FAILED.value):
            dispatched = _confirm_order(attempt["commande_id"]) is not None
            order_status = OrderStatus.CONFIRMED.value if dispatched else _order_status(attempt["commande_id"])
        outcome = ReconcileOutcome.CONFIRMED if dispatched else ReconcileOutcome.ALREADY_PROCESSED
        return _record(event, ReconcileResult(outcome, reference, status, order_status, dispatched))

    if status not in _ALLOWED_FROM[event.event_type]:
        if event.event_type is EventType.SUCCEEDED:
            logger.error("checkout.reconcile paiement reçu sur tentative %s reference=%s", status, reference)
        else:
            logger.info("checkout.reconcile transition ignorée %s -> %s reference=%s", status, event.event_type.value, reference)
        return _record(event, ReconcileResult(ReconcileOutcome.IGNORED, reference, status, _order_status(attempt["commande_id"])))

    _check_amount(event, attempt)
    return _record(event, _HANDLERS[event.event_type](event, attempt))


# --- statut / polling ---------------------------------------------------------

def _public_attempt(attempt: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "reference_paiement": attempt.get("reference_paiement"),
        "provider": attempt.get("methode_paiement"),
        "statut": attempt.get("statut"),
        "montant": attempt.get("montant"),
        "message": attempt.get("message_retour"),
    }


def refresh_payment_status(numero_commande: str) -> Dict[str, Any]:
    """
    Statut courant de la commande et de sa dernière tentative.
    Si la tentative est encore `pending` et que son fournisseur sait répondre (polling),
    la réponse du fournisseur passe par reconcile() avec les mêmes garanties qu'un webhook.
    """
    order = commandes_repo.get_order_by_number(numero_commande)
    if not order:
        raise OrderNotFound(f"Commande introuvable: {numero_commande}")
    attempts = paiements_repo.list_attempts(order["id"])
    latest = attempts[0] if attempts else None

    if latest and latest.get("statut") == AttemptStatus.PENDING.value and order.get("statut") == OrderStatus.PENDING.value:
        adapter = providers.get_provider(latest.get("fournisseur") or "")
        if adapter is not None and adapter.supports_polling:
            try:
                event = adapter.fetch_status(latest)
                if event is not None:
                    reconcile(event)
                    order = commandes_repo.get_order(order["id"]) or order
                    latest = paiements_repo.get_attempt_by_reference(latest["reference_paiement"]) or latest
            except (ProviderError, AmountMismatch, UnknownReference, MalformedEvent) as e:
                logger.warning("checkout.refresh_payment_status polling sans effet numero=%s err=%s", numero_commande, e)

    return {
        "numero_commande": order.get("numero_commande"),
        "statut_commande": order.get("statut"),
        "paiement": _public_attempt(latest) if latest else None,
    }


def soft_delete_order(numero_commande: str) -> bool:
    """Archive une commande (jamais de suppression physique)."""
    order = commandes_repo.get_order_by_number(numero_commande)
    if not order:
        raise OrderNotFound(f"Commande introuvable: {numero_commande}")
    deleted = commandes_repo.soft_delete_order(order["id"])
    if deleted:
        logger.info("checkout.soft_delete_order numero=%s", numero_commande)
    return deleted
