import json
import os
import threading
import uuid
from decimal import Decimal
from typing import Any, Dict, Generator, Iterable, List, Optional

import pytest
import fakeredis
from fastapi.testclient import TestClient

# Pas d'init Redis pour le rate limiting pendant les tests
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

from boutique.app import app as fastapi_app
from boutique import providers
from boutique.dispatch import queue
from boutique.providers import EventType, InitiationData, PaymentProvider, ProviderEvent, RawRequest

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)

@pytest.fixture(scope="session")
def app():
    return fastapi_app

@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


# --- file de tâches -------------------------------------------------------------

@pytest.fixture(autouse=True)
def task_redis():
    """File de tâches sur fakeredis pour tous les tests."""
    r = fakeredis.FakeRedis(decode_responses=True)
    queue.set_redis(r)
    yield r
    queue.set_redis(None)

@pytest.fixture
def queued(task_redis):
    """Clés d'idempotence des tâches publiées, dans l'ordre de publication."""
    def _keys() -> List[str]:
        return [json.loads(m)["idempotency_key"] for m in reversed(task_redis.lrange(queue.TASK_QUEUE_KEY, 0, -1))]
    return _keys


# --- stockage en mémoire ----------------------------------------------------------

class FakeStore:
    """
    Remplace les repositories Supabase par des dicts en mémoire.
    Les transitions conditionnelles sont sérialisées par un verrou, comme le ferait
    le verrou de ligne PostgreSQL, et l'index « une tentative valide par commande » est appliqué.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.lines: Dict[str, List[Dict[str, Any]]] = {}
        self.attempts: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Dict[str, Any]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.clients: Dict[str, Dict[str, Any]] = {}
        self.carts: Dict[str, Dict[str, Any]] = {}
        self.cart_lines: Dict[str, List[Dict[str, Any]]] = {}

    # commandes
    def insert_order(self, order, lines):
        with self.lock:
            if any(o["numero_commande"] == order["numero_commande"] for o in self.orders.values()):
                return None
            row = {**order, "id": str(uuid.uuid4()), "deleted_at": None, "date_confirmation": None}
            self.orders[row["id"]] = row
            self.lines[row["id"]] = [dict(l) for l in lines]
            return dict(row)

    def get_order(self, order_id):
        row = self.orders.get(order_id)
        return dict(row) if row and not row.get("deleted_at") else None

    def get_order_by_number(self, numero):
        for row in self.orders.values():
            if row["numero_commande"] == numero and not row.get("deleted_at"):
                return dict(row)
        return None

    def get_order_lines(self, order_id):
        return [dict(l) for l in self.lines.get(order_id, [])]

    def transition_order_status(self, order_id, to_status, from_statuses, extra=None):
        with self.lock:
            row = self.orders.get(order_id)
            if not row or row.get("deleted_at") or row["statut"] not in list(from_statuses):
                return None
            row.update(extra or {})
            row["statut"] = to_status
            return dict(row)

    def soft_delete_order(self, order_id):
        row = self.orders.get(order_id)
        if not row or row.get("deleted_at"):
            return False
        row["deleted_at"] = "2026-01-01T00:00:00+00:00"
        return True

    # paiements
    def insert_attempt(self, row):
        with self.lock:
            if any(a["reference_paiement"] == row["reference_paiement"] for a in self.attempts.values()):
                return None
            new = {**row, "id": str(uuid.uuid4()), "transaction_id": None, "session_id": None, "message_retour": None}
            new["_seq"] = len(self.attempts)
            self.attempts[new["id"]] = new
            return dict(new)

    def get_attempt_by_reference(self, reference):
        for a in self.attempts.values():
            if a["reference_paiement"] == reference:
                return dict(a)
        return None

    def get_attempt_by_transaction_id(self, transaction_id):
        for a in self.attempts.values():
            if a.get("transaction_id") == transaction_id:
                return dict(a)
        return None

    def list_attempts(self, commande_id):
        rows = [dict(a) for a in self.attempts.values() if a["commande_id"] == commande_id]
        return sorted(rows, key=lambda a: a["_seq"], reverse=True)

    def update_attempt(self, attempt_id, fields):
        with self.lock:
            self.attempts[attempt_id].update(fields)
            return dict(self.attempts[attempt_id])

    def transition_attempt(self, attempt_id, to_status, from_statuses, extra=None):
        with self.lock:
            row = self.attempts.get(attempt_id)
            if not row or row["statut"] not in list(from_statuses):
                return None
            if to_status == "valid" and any(
                a["commande_id"] == row["commande_id"] and a["statut"] == "valid" and a["id"] != attempt_id
                for a in self.attempts.values()
            ):
                return None
            row.update(extra or {})
            row["statut"] = to_status
            return dict(row)

    def event_seen(self, key):
        return key in self.events

    def record_event(self, row):
        with self.lock:
            if row["cle_dedup"] in self.events:
                return False
            self.events[row["cle_dedup"]] = dict(row)
            return True

    # catalogue / clients / paniers
    def add_product(self, prix, stock=100, gestion_stock=True, nom="Produit", **extra):
        pid = str(uuid.uuid4())
        self.products[pid] = {
            "id": pid, "nom": nom, "prix": prix, "prix_promo": None, "debut_promo": None, "fin_promo": None,
            "stock_disponible": stock, "gestion_stock": gestion_stock, "est_visible": True, **extra,
        }
        return pid

    def get_products_map(self, ids: Iterable[str]):
        return {i: dict(self.products[i]) for i in ids if i in self.products}

    def get_client(self, client_id):
        return self.clients.get(client_id)

    def get_client_by_email(self, email):
        return next((c for c in self.clients.values() if (c.get("email") or "") == email), None)

    def get_client_by_phone(self, telephone):
        return next((c for c in self.clients.values() if c["telephone"] == telephone), None)

    def insert_client(self, row):
        with self.lock:
            if self.get_client_by_phone(row["telephone"]):
                return None
            new = {**row, "id": str(uuid.uuid4())}
            self.clients[new["id"]] = new
            return dict(new)

    def get_cart(self, panier_id):
        return self.carts.get(panier_id)

    def get_cart_lines(self, panier_id):
        return list(self.cart_lines.get(panier_id, []))

    # aides de test
    def attempts_of(self, commande_id) -> List[Dict[str, Any]]:
        return self.list_attempts(commande_id)

    def valid_count(self, commande_id) -> int:
        return sum(1 for a in self.attempts.values() if a["commande_id"] == commande_id and a["statut"] == "valid")


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    s = FakeStore()
    for name in ("insert_order", "get_order", "get_order_by_number", "get_order_lines",
                 "transition_order_status", "soft_delete_order"):
        monkeypatch.setattr(f"boutique.commandes.repository.{name}", getattr(s, name))
    for name in ("insert_attempt", "get_attempt_by_reference", "get_attempt_by_transaction_id", "list_attempts",
                 "update_attempt", "transition_attempt", "event_seen", "record_event"):
        monkeypatch.setattr(f"boutique.paiements.repository.{name}", getattr(s, name))
    monkeypatch.setattr("boutique.catalogue.repository.get_products_map", s.get_products_map)
    for name in ("get_client", "get_client_by_email", "get_client_by_phone", "insert_client"):
        monkeypatch.setattr(f"boutique.clients.repository.{name}", getattr(s, name))
    monkeypatch.setattr("boutique.panier.repository.get_cart", s.get_cart)
    monkeypatch.setattr("boutique.panier.repository.get_cart_lines", s.get_cart_lines)
    return s


# --- fournisseurs factices -------------------------------------------------------

class FakeProvider(PaymentProvider):
    """Adaptateur scriptable: JSON {type, reference, amount}, signature = en-tête x-test-signature == 'ok'."""

    supports_polling = True

    def __init__(self, name: str):
        self.name = name
        self.fail_with: Optional[Exception] = None
        self.status_event: Optional[ProviderEvent] = None
        self.initiated: List[Dict[str, Any]] = []

    def initiate(self, order, attempt, params):
        if self.fail_with is not None:
            raise self.fail_with
        self.initiated.append({"order": order, "attempt": attempt, "params": params})
        ref = attempt["reference_paiement"]
        return InitiationData(session_id=f"sess_{ref}", redirect_url=f"https://pay.test/{ref}", raw_response={"id": ref})

    def verify_signature(self, raw: RawRequest) -> bool:
        return raw.header("x-test-signature") == "ok"

    def parse_event(self, raw: RawRequest):
        payload = raw.json()
        if payload.get("type") not in {t.value for t in EventType}:
            return None
        return ProviderEvent(
            provider=self.name,
            event_type=EventType(payload["type"]),
            reference=payload["reference"],
            transaction_id=payload.get("transaction_id", "tx_1"),
            amount=Decimal(str(payload["amount"])) if payload.get("amount") is not None else None,
            raw_payload=payload,
            event_id=payload.get("id"),
        )

    def fetch_status(self, attempt):
        return self.status_event


@pytest.fixture(autouse=True)
def _reset_providers():
    providers.reset_providers()
    yield
    providers.reset_providers()

@pytest.fixture
def fake_gateways() -> Dict[str, FakeProvider]:
    gateways = {name: FakeProvider(name) for name in ("stripe", "paytech", "nexpay")}
    for name, gw in gateways.items():
        providers.set_provider(name, gw)
    return gateways


@pytest.fixture
def make_event():
    """Fabrique d'événements normalisés."""
    def _make(provider: str, event_type: EventType, reference: str, amount: Any, **kw) -> ProviderEvent:
        return ProviderEvent(
            provider=provider,
            event_type=event_type,
            reference=reference,
            transaction_id=kw.pop("transaction_id", "tx_1"),
            amount=None if amount is None else Decimal(str(amount)),
            **kw,
        )
    return _make


@pytest.fixture
def delivery():
    from boutique.checkout.models import DeliveryInfo
    return DeliveryInfo(
        nom_destinataire="Awa Ndiaye",
        telephone="+221771234567",
        adresse="Sicap Liberté 6, Dakar",
        email="awa@example.com",
    )

@pytest.fixture
def place_order(store, delivery):
    """Commande `pending` du scénario de référence: 1 x 10000 + 2 x 5000, livraison 2000."""
    from boutique.checkout import service
    from boutique.checkout.models import CartLine, CartSnapshot

    def _place(shipping_fee="2000", discount="0"):
        p1 = store.add_product(10000, nom="Boubou brodé")
        p2 = store.add_product(5000, nom="Foulard wax")
        cart = CartSnapshot(
            items=[
                CartLine(produit_id=p1, quantite=1, prix_unitaire=Decimal("10000")),
                CartLine(produit_id=p2, quantite=2, prix_unitaire=Decimal("5000")),
            ],
            shipping_fee=Decimal(shipping_fee),
            discount=Decimal(discount),
        )
        return service.create_order(cart, delivery)
    return _place
