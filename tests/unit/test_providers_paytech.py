import hashlib
import hmac
import json
from decimal import Decimal
from urllib.parse import urlencode

import httpx
import pytest

from boutique.checkout.errors import ProviderError
from boutique.providers import EventType, RawRequest
from boutique.providers.paytech import PayTechAdapter

FORM = {"content-type": "application/x-www-form-urlencoded"}


@pytest.fixture
def adapter():
    return PayTechAdapter(api_key="pk_test", api_secret="sk_test", api_url="https://paytech.test/api", ipn_url="https://shop.test/webhooks/paytech")


def _order():
    return {"id": "o1", "numero_commande": "CMD-20260314-AB12CD34", "nom_destinataire": "Awa Ndiaye",
            "telephone_livraison": "+221771234567"}


def _attempt(method="wave"):
    return {"reference_paiement": "PAY-20260314090507-XYZ98765", "montant": "22000.00", "devise": "XOF",
            "methode_paiement": method}


def _ipn(type_event="sale_complete", price="22000", ref="PAY-20260314090507-XYZ98765", **extra):
    fields = {"type_event": type_event, "item_price": price, "ref_command": ref, "token": "tok_1", **extra}
    return fields


def _hmac(price, ref, key="pk_test", secret="sk_test"):
    return hmac.new(secret.encode(), f"{price}|{ref}|{key}".encode(), hashlib.sha256).hexdigest()


def test_hmac_compute_signature_accepted(adapter):
    fields = _ipn()
    fields["hmac_compute"] = _hmac("22000", fields["ref_command"])
    assert adapter.verify_signature(RawRequest(urlencode(fields).encode(), FORM)) is True


def test_hmac_compute_with_wrong_secret_rejected(adapter):
    fields = _ipn()
    fields["hmac_compute"] = _hmac("22000", fields["ref_command"], secret="autre")
    assert adapter.verify_signature(RawRequest(urlencode(fields).encode(), FORM)) is False


def test_tampered_price_rejected(adapter):
    fields = _ipn()
    fields["hmac_compute"] = _hmac("22000", fields["ref_command"])
    fields["item_price"] = "100"
    assert adapter.verify_signature(RawRequest(urlencode(fields).encode(), FORM)) is False


def test_sha256_pair_accepted_in_json(adapter):
    fields = _ipn(
        api_key_sha256=hashlib.sha256(b"pk_test").hexdigest(),
        api_secret_sha256=hashlib.sha256(b"sk_test").hexdigest(),
    )
    raw = RawRequest(json.dumps(fields).encode(), {"content-type": "application/json"})
    assert adapter.verify_signature(raw) is True


def test_sha256_pair_checked_when_hmac_does_not_match(adapter):
    fields = _ipn(
        hmac_compute="0" * 64,
        api_key_sha256=hashlib.sha256(b"pk_test").hexdigest(),
        api_secret_sha256=hashlib.sha256(b"sk_test").hexdigest(),
    )
    assert adapter.verify_signature(RawRequest(urlencode(fields).encode(), FORM)) is True

    fields["api_secret_sha256"] = hashlib.sha256(b"autre").hexdigest()
    assert adapter.verify_signature(RawRequest(urlencode(fields).encode(), FORM)) is False


def test_missing_signature_rejected(adapter):
    assert adapter.verify_signature(RawRequest(urlencode(_ipn()).encode(), FORM)) is False


def test_unconfigured_adapter_rejects_everything():
    fields = _ipn()
    fields["hmac_compute"] = _hmac("22000", fields["ref_command"], key="", secret="")
    assert PayTechAdapter(api_key="", api_secret="").verify_signature(RawRequest(urlencode(fields).encode(), FORM)) is False


def test_parse_sale_complete(adapter):
    event = adapter.parse_event(RawRequest(urlencode(_ipn(api_secret_sha256="x")).encode(), FORM))
    assert event.provider == "paytech"
    assert event.event_type is EventType.SUCCEEDED
    assert event.reference == "PAY-20260314090507-XYZ98765"
    assert event.amount == Decimal("22000")
    assert event.transaction_id == "tok_1"
    assert "api_secret_sha256" not in event.raw_payload
    assert event.dedup_key == "paytech:PAY-20260314090507-XYZ98765:succeeded"


def test_parse_cancel_and_refund(adapter):
    cancel = adapter.parse_event(RawRequest(urlencode(_ipn("sale_canceled")).encode(), FORM))
    refund = adapter.parse_event(RawRequest(urlencode(_ipn("refund_complete")).encode(), FORM))
    assert cancel.event_type is EventType.CANCELLED
    assert refund.event_type is EventType.REFUNDED


def test_parse_unknown_type_is_ignored(adapter):
    assert adapter.parse_event(RawRequest(urlencode(_ipn("sale_pending")).encode(), FORM)) is None


def test_parse_without_reference_is_malformed(adapter):
    with pytest.raises(ValueError):
        adapter.parse_event(RawRequest(urlencode(_ipn(ref="")).encode(), FORM))


def test_initiate_posts_form_and_prefills_wave(adapter, monkeypatch):
    calls = {}

    def fake_post(url, data=None, headers=None, timeout=None):
        calls.update(url=url, data=data, headers=headers, timeout=timeout)
        return httpx.Response(
            200,
            json={"success": 1, "token": "tok_abc", "redirect_url": "https://paytech.sn/payment/checkout/tok_abc"},
            request=httpx.Request("POST", url),
        )

    monkeypatch.setattr("boutique.providers.paytech.httpx.post", fake_post)

    data = adapter.initiate(_order(), _attempt("wave"), {})

    assert calls["url"] == "https://paytech.test/api/payment/request-payment"
    assert calls["headers"] == {"API_KEY": "pk_test", "API_SECRET": "sk_test"}
    assert calls["timeout"] == adapter.timeout
    assert calls["data"]["item_price"] == 22000
    assert calls["data"]["ref_command"] == "PAY-20260314090507-XYZ98765"
    assert calls["data"]["target_payment"] == "Wave"
    assert json.loads(calls["data"]["custom_field"])["numero_commande"] == "CMD-20260314-AB12CD34"
    assert data.session_id == "tok_abc"
    assert data.redirect_url.startswith("https://paytech.sn/payment/checkout/tok_abc?")
    assert "tp=Wave" in data.redirect_url
    assert "nn=771234567" in data.redirect_url


def test_initiate_timeout_is_retryable(adapter, monkeypatch):
    def fake_post(url, **kwargs):
        raise httpx.ReadTimeout("trop long", request=httpx.Request("POST", url))

    monkeypatch.setattr("boutique.providers.paytech.httpx.post", fake_post)

    with pytest.raises(ProviderError) as exc:
        adapter.initiate(_order(), _attempt(), {})
    assert exc.value.retryable is True
    assert exc.value.provider == "paytech"


def test_initiate_refusal_is_not_retryable(adapter, monkeypatch):
    def fake_post(url, **kwargs):
        return httpx.Response(200, json={"success": 0, "message": "Montant invalide"}, request=httpx.Request("POST", url))

    monkeypatch.setattr("boutique.providers.paytech.httpx.post", fake_post)

    with pytest.raises(ProviderError) as exc:
        adapter.initiate(_order(), _attempt(), {})
    assert exc.value.retryable is False
    assert exc.value.message == "Montant invalide"


def test_initiate_server_error_is_retryable(adapter, monkeypatch):
    monkeypatch.setattr(
        "boutique.providers.paytech.httpx.post",
        lambda url, **kw: httpx.Response(503, text="down", request=httpx.Request("POST", url)),
    )
    with pytest.raises(ProviderError) as exc:
        adapter.initiate(_order(), _attempt(), {})
    assert exc.value.retryable is True


def test_initiate_without_keys_fails_fast():
    with pytest.raises(ProviderError) as exc:
        PayTechAdapter(api_key="", api_secret="").initiate(_order(), _attempt(), {})
    assert exc.value.retryable is False
