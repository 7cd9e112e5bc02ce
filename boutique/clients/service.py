"""
Cas d'usage 'clients': création ou récupération du client au checkout (invité ou connu).
"""
from typing import Any, Dict, Optional
import logging

from boutique.checkout.errors import DuplicateAccount, ValidationError
from boutique.checkout.models import DeliveryInfo
from . import repository

logger = logging.getLogger(__name__)


def _split_name(full_name: str) -> Dict[str, str]:
    parts = (full_name or "").strip().split(" ", 1)
    if len(parts) == 1:
        return {"prenom": parts[0], "nom": parts[0]}
    return {"prenom": parts[0], "nom": parts[1]}


def get_or_create_client(delivery: DeliveryInfo, client_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Résout le client de la commande:
    - client_id fourni: il doit exister
    - sinon recherche par email, puis par téléphone
    - un téléphone déjà rattaché à un autre email -> DuplicateAccount
    - sinon création (téléphone unique en base, course gérée par relecture)
    """
    if client_id:
        client = repository.get_client(client_id)
        if not client:
            raise ValidationError("Client inconnu", errors=[{"field": "client_id", "msg": "inconnu"}])
        return client

    email = str(delivery.email).lower() if delivery.email else None
    if email:
        client = repository.get_client_by_email(email)
        if client:
            return client

    by_phone = repository.get_client_by_phone(delivery.telephone)
    if by_phone:
        existing_email = (by_phone.get("email") or "").lower()
        if email and existing_email and existing_email != email:
            raise DuplicateAccount("Ce numéro de téléphone est déjà associé à un autre compte")
        return by_phone

    row = {**_split_name(delivery.nom_destinataire), "telephone": delivery.telephone, "email": email}
    created = repository.insert_client(row)
    if created:
        logger.info("clients.create id=%s", created.get("id"))
        return created

    # Un checkout concurrent vient de créer ce téléphone
    again = repository.get_client_by_phone(delivery.telephone)
    if not again:
        raise DuplicateAccount("Ce numéro de téléphone est déjà utilisé")
    return again
