from decimal import Decimal

from fastapi.testclient import TestClient

from stoneridge.api import schemas
from stoneridge.app import __version__, create_app
from stoneridge.service.devices import fingerprint
from stoneridge.service.runtime import get_runtime

PASSWORD = "Correct-Horse9"


def test_health_reports_runtime():
    client = TestClient(create_app())
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["data"] == {
        "version": __version__,
        "store": "MemoryStore",
        "offer_sweeper_running": False,
    }
    assert response.headers["X-Request-ID"]


def test_lifespan_respects_disabled_sweeper():
    with TestClient(create_app()) as client:
        assert client.get("/healthz").json()["data"]["offer_sweeper_running"] is False
    assert not get_runtime().offer_sweeper.running


def test_login_response_from_result(auth, make_account, browser_meta):
    make_account("alice")
    result = auth.login("alice", PASSWORD, browser_meta, remember_device=True)
    response = schemas.LoginResponse.from_result(result)

    assert response.token_type == "Bearer"
    assert response.expires_in == 900
    assert response.role == "USER"
    assert response.username == "alice"
    assert response.device_token == result.device_token
    assert len(response.trusted_devices) == 1
    device = response.trusted_devices[0]
    assert device.device_name == "Windows PC"
    assert device.ip_address == "203.0.113.7"

    dumped = response.model_dump(mode="json")
    assert "fingerprint" not in json_keys(dumped)
    assert fingerprint(browser_meta) not in str(dumped)


def json_keys(value):
    if isinstance(value, dict):
        keys = set(value)
        for item in value.values():
            keys |= json_keys(item)
        return keys
    if isinstance(value, list):
        keys = set()
        for item in value:
            keys |= json_keys(item)
        return keys
    return set()


def test_refresh_response_from_result(auth, make_account):
    make_account("alice")
    login = auth.login("alice", PASSWORD)
    response = schemas.RefreshResponse.from_result(auth.refresh(login.refresh_token))

    assert response.access_token
    assert response.expires_in == 900
    assert set(response.model_dump()) == {"access_token", "token_type", "expires_in"}


def test_offer_response_from_view(engine, marketplace):
    view = engine.make_offer(marketplace["chat"].id, marketplace["buyer"].id, "80", note="cash")
    response = schemas.OfferResponse.from_view(view)
    dumped = response.model_dump(mode="json")

    assert response.offered_price == Decimal("80.00")
    assert dumped["status"] == "PENDING"
    assert dumped["message"] == "cash"
    assert dumped["is_own_offer"] is True
    assert dumped["can_respond"] is False
