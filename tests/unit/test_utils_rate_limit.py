import time

from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient
from fastapi_limiter import FastAPILimiter

from boutique.utils.rate_limit import optional_rate_limit, rate_limit_health_info


def _make_app(times=2, seconds=60):
    app = FastAPI()

    @app.post("/checkout/orders", dependencies=[Depends(optional_rate_limit(times, seconds))])
    def orders():
        return {"ok": True}

    @app.post("/checkout/orders/CMD-1/payment", dependencies=[Depends(optional_rate_limit(times, seconds))])
    def payment():
        return {"ok": True}

    @app.get("/rl_info")
    def rl_info(request: Request):
        return rate_limit_health_info(request)

    return app


def test_rate_limit_fallback_blocks_after_limit(monkeypatch):
    client = TestClient(_make_app(times=2, seconds=60))
    monkeypatch.setenv("LOCAL_RATE_LIMIT_FALLBACK", "1")

    assert client.post("/checkout/orders").status_code == 200
    assert client.post("/checkout/orders").status_code == 200
    assert client.post("/checkout/orders").status_code == 429


def test_rate_limit_is_per_path(monkeypatch):
    client = TestClient(_make_app(times=2, seconds=60))
    monkeypatch.setenv("LOCAL_RATE_LIMIT_FALLBACK", "1")

    assert client.post("/checkout/orders").status_code == 200
    assert client.post("/checkout/orders").status_code == 200
    assert client.post("/checkout/orders").status_code == 429

    # Chemin indépendant
    assert client.post("/checkout/orders/CMD-1/payment").status_code == 200
    assert client.post("/checkout/orders/CMD-1/payment").status_code == 200
    assert client.post("/checkout/orders/CMD-1/payment").status_code == 429


def test_rate_limit_resets_after_window(monkeypatch):
    client = TestClient(_make_app(times=2, seconds=1))
    monkeypatch.setenv("LOCAL_RATE_LIMIT_FALLBACK", "1")

    assert client.post("/checkout/orders").status_code == 200
    assert client.post("/checkout/orders").status_code == 200
    assert client.post("/checkout/orders").status_code == 429

    time.sleep(1.1)
    assert client.post("/checkout/orders").status_code == 200


def test_rate_limit_disabled_flag_bypasses_limit(monkeypatch):
    monkeypatch.delenv("LOCAL_RATE_LIMIT_FALLBACK", raising=False)
    app = _make_app(times=2, seconds=60)
    client = TestClient(app)
    app.state.rate_limit_enabled = False

    for _ in range(4):
        assert client.post("/checkout/orders").status_code == 200


def test_rate_limit_health_info(monkeypatch):
    app = _make_app()
    client = TestClient(app)
    app.state.rate_limit_enabled = True
    monkeypatch.setattr(FastAPILimiter, "redis", None)

    info = client.get("/rl_info").json()
    assert info == {"enabled": True, "ready": False, "backend": None}

    monkeypatch.setattr(FastAPILimiter, "redis", object())
    info = client.get("/rl_info").json()
    assert info["ready"] is True
    assert info["backend"] == "redis"
