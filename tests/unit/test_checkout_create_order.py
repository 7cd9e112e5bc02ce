from decimal import Decimal
import re

import pytest

from boutique.checkout import service
from boutique.checkout.errors import (
    CheckoutSystemError,
    DuplicateAccount,
    ProductUnavailable,
    StockUnavailable,
    ValidationError,
)
from boutique.checkout.models import CartLine, CartSnapshot


def test_scenario_a_total_includes_shipping(store, place_order):
    order = place_order()

    assert order["statut"] == "pending"
    assert order["sous_total"] == "20000.00"
    assert order["frais_livraison"] == "2000.00"
    assert order["remise"] == "0.00"
    assert order["montant_total"] == "22000.00"
    assert re.fullmatch(r"CMD-\d{8}-[A-Z0-9]{8}", order["numero_commande"])
    # Commande et lignes persistées ensemble
    assert len(store.lines[order["id"]]) == 2
    assert store.lines[order["id"]][1]["prix_total_article"] == "10000.00"


def test_total_with_discount(store, place_order):
    order = place_order(shipping_fee="1500", discount="3000")
    assert order["montant_total"] == "18500.00"


def test_default_shipping_fee_when_cart_has_none(store, delivery):
    pid = store.add_product(7000)
    cart = CartSnapshot(items=[CartLine(produit_id=pid, quantite=1, prix_unitaire=Decimal("7000"))])
    order = service.create_order(cart, delivery)
    assert order["frais_livraison"] == "2000.00"
    assert order["montant_total"] == "9000.00"


def test_empty_cart_is_rejected(store, delivery):
    with pytest.raises(ValidationError):
        service.create_order(CartSnapshot(items=[]), delivery)
    assert store.orders == {}


def test_inconsistent_cart_total_is_rejected(store, delivery):
    pid = store.add_product(10000)
    cart = CartSnapshot(
        items=[CartLine(produit_id=pid, quantite=1, prix_unitaire=Decimal("10000"))],
        shipping_fee=Decimal("2000"),
        total=Decimal("15000"),
    )
    with pytest.raises(ValidationError) as exc:
        service.create_order(cart, delivery)
    assert exc.value.context["errors"][0]["field"] == "total"
    assert store.orders == {}


def test_discount_above_amount_is_rejected(store, delivery):
    pid = store.add_product(1000)
    cart = CartSnapshot(
        items=[CartLine(produit_id=pid, quantite=1, prix_unitaire=Decimal("1000"))],
        shipping_fee=Decimal("0"),
        discount=Decimal("5000"),
    )
    with pytest.raises(ValidationError):
        service.create_order(cart, delivery)


def test_stock_unavailable_persists_nothing(store, delivery):
    pid = store.add_product(5000, stock=1)
    cart = CartSnapshot(items=[CartLine(produit_id=pid, quantite=2, prix_unitaire=Decimal("5000"))])
    with pytest.raises(StockUnavailable) as exc:
        service.create_order(cart, delivery)
    assert exc.value.status_code == 400
    assert store.orders == {}
    assert store.clients == {}


def test_made_to_order_product_ignores_stock(store, delivery):
    pid = store.add_product(5000, stock=0, gestion_stock=False)
    cart = CartSnapshot(items=[CartLine(produit_id=pid, quantite=3, prix_unitaire=Decimal("5000"))])
    order = service.create_order(cart, delivery)
    assert order["statut"] == "pending"


def test_unknown_product_is_business_error(store, delivery):
    cart = CartSnapshot(items=[CartLine(produit_id="missing", quantite=1, prix_unitaire=Decimal("5000"))])
    with pytest.raises(ProductUnavailable):
        service.create_order(cart, delivery)


def test_order_number_collision_is_retried(store, place_order, monkeypatch):
    first = place_order()
    numbers = iter([first["numero_commande"], "CMD-20260101-NEWONE01"])
    monkeypatch.setattr("boutique.checkout.service.generate_order_number", lambda: next(numbers))

    second = place_order()

    assert second["numero_commande"] == "CMD-20260101-NEWONE01"
    assert len(store.orders) == 2


def test_order_number_retries_are_bounded(store, place_order, monkeypatch):
    first = place_order()
    monkeypatch.setattr("boutique.checkout.service.generate_order_number", lambda: first["numero_commande"])
    with pytest.raises(CheckoutSystemError):
        place_order()
    assert len(store.orders) == 1


def test_guest_client_is_created_then_reused(store, place_order):
    place_order()
    place_order()
    assert len(store.clients) == 1
    client = next(iter(store.clients.values()))
    assert client["prenom"] == "Awa" and client["nom"] == "Ndiaye"


def test_phone_owned_by_another_email_is_duplicate_account(store, delivery):
    store.clients["c1"] = {"id": "c1", "telephone": delivery.telephone, "email": "autre@example.com"}
    pid = store.add_product(1000)
    cart = CartSnapshot(items=[CartLine(produit_id=pid, quantite=1, prix_unitaire=Decimal("1000"))])
    with pytest.raises(DuplicateAccount):
        service.create_order(cart, delivery)
    assert store.orders == {}


def test_no_side_effects_on_creation(store, place_order, queued, fake_gateways):
    place_order()
    assert queued() == []
    assert store.attempts == {}
    assert fake_gateways["stripe"].initiated == []
