# secretlink/tests/test_service_http.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from secretlink.config import Settings
from secretlink.crypto import ConfigError
from secretlink.service_http import create_app
from secretlink.storage import InMemoryLinkLedger, LedgerUnavailable

BASE = "https://links.test"


class DownLedger(InMemoryLinkLedger):
    def insert_single(self, jti, expires_ts):
        raise LedgerUnavailable("down")

    def insert_multi(self, jti, count, expires_ts):
        raise LedgerUnavailable("down")

    def consume_single_use(self, jti, *, now=None):
        raise LedgerUnavailable("down")

    def consume_multi_use(self, jti, *, now=None):
        raise LedgerUnavailable("down")

    def ping(self):
        raise LedgerUnavailable("down")


def _settings(**kw):
    base = dict(
        signing_key="k" * 32,
        cleanup_enabled=False,
        public_base_url=BASE,
        max_uses=10,
        max_ttl_minutes=60,
    )
    base.update(kw)
    return Settings(**base)


def _client(ledger=None, **kw):
    app = create_app(_settings(**kw), ledger=ledger or InMemoryLinkLedger(), configure_logging=False)
    return TestClient(app)


@pytest.fixture
def client():
    with _client() as c:
        yield c


def _issue(client, **body):
    body.setdefault("username", "alice")
    r = client.post("/api/links", json=body)
    assert r.status_code == 200, r.text
    url = r.json()["url"]
    assert url.startswith(BASE + "/supersecret/")
    return url[len(BASE):]


def test_issue_and_redeem_single_use(client):
    path = _issue(client)
    r = client.get(path)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "username": "alice"}
    assert r.headers["cache-control"] == "no-store"

    r = client.get(path)
    assert r.status_code == 404
    assert r.json() == {"detail": "invalid or expired link"}
    assert r.headers["cache-control"] == "no-store"


def test_multi_use(client):
    path = _issue(client, username="bob", max=3)
    assert [client.get(path).status_code for _ in range(4)] == [200, 200, 200, 404]


def test_issue_with_expiry(client):
    exp = (datetime.now(timezone.utc) + timedelta(minutes=5)).isoformat()
    path = _issue(client, username="carol", expiresAt=exp)
    assert client.get(path).json()["username"] == "carol"


def test_forged_token_indistinguishable(client):
    path = _issue(client)
    token = path.rsplit("/", 1)[1]
    head, payload, sig = token.split(".")
    for bad in (f"{head}.{payload}.{sig[::-1]}", "garbage", "a.b.c"):
        r = client.get(f"/supersecret/{bad}")
        assert r.status_code == 404
        assert r.json() == {"detail": "invalid or expired link"}


def test_validation_errors(client):
    past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    r = client.post("/api/links", json={"username": "bad name!", "max": 0, "expiresAt": past})
    assert r.status_code == 400
    errors = r.json()["errors"]
    assert errors["username"] == ["Username must be alphanumeric only"]
    assert errors["max"] == ["Max clicks must be between 1 and 10"]
    assert errors["expiresAt"] == ["Expiry date must be in the future"]


def test_expiry_beyond_ceiling_rejected(client):
    far = (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat()
    r = client.post("/api/links", json={"username": "alice", "expiresAt": far})
    assert r.status_code == 400
    assert "expiresAt" in r.json()["errors"]


def test_base_url_falls_back_to_request():
    with _client(public_base_url="") as c:
        r = c.post("/api/links", json={"username": "alice"})
    assert r.json()["url"].startswith("http://testserver/supersecret/")


def test_ledger_outage_is_503():
    with _client(ledger=DownLedger()) as down:
        r = down.post("/api/links", json={"username": "alice"})
        assert r.status_code == 503
        assert r.json() == {"detail": "service unavailable"}
        assert down.get("/readyz").status_code == 503


def test_redeem_outage_is_503():
    ledger = InMemoryLinkLedger()
    with _client(ledger=ledger) as c:
        path = _issue(c)
    with _client(ledger=DownLedger()) as down:
        r = down.get(path)
    assert r.status_code == 503
    assert r.headers["cache-control"] == "no-store"


def test_missing_signing_key_fails_fast():
    with pytest.raises(ConfigError):
        create_app(_settings(signing_key=""), ledger=InMemoryLinkLedger(), configure_logging=False)


def test_health_ready_version(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json() == {"ready": True, "backend": "memory"}
    v = client.get("/version").json()
    assert v["config_hash"] == _settings().config_hash()


def test_response_headers(client):
    r = client.get("/healthz", headers={"X-Request-Id": "abc-123"})
    assert r.headers["X-Request-Id"] == "abc-123"
    assert r.headers["X-SecretLink-Config-Hash"] == _settings().config_hash()
    assert "X-SecretLink-Version" in r.headers

    r = client.get("/healthz", headers={"X-Request-Id": "bad id with spaces"})
    assert r.headers["X-Request-Id"] != "bad id with spaces"


def test_metrics_endpoint(client):
    client.get(_issue(client))
    body = client.get("/metrics").text
    assert "secretlink_requests_total" in body
    assert "secretlink_tokens_issued_total" in body
    # Tokens are collapsed out of route labels.
    assert 'route="/supersecret/:token"' in body


def test_docs_disabled_by_default(client):
    assert client.get("/docs").status_code == 404
    with _client(enable_docs=True) as c:
        assert c.get("/openapi.json").status_code == 200


def test_sweeper_runs_with_lifespan():
    ledger = InMemoryLinkLedger()
    stale = "01ARZ3NDEKTSV4RRFFQ69G5FAV"
    ledger.create(stale, 1, datetime.now(timezone.utc) - timedelta(seconds=1))
    with _client(ledger=ledger, cleanup_enabled=True, cleanup_interval_s=0) as c:
        sweeper = c.app.state.sweeper
    assert not sweeper.running
    assert sweeper.runs == 1
    assert ledger.peek(stale) is None



def test_sweeper_stopped_off_the_event_loop():
    seen = []
    with _client(cleanup_enabled=True, cleanup_interval_s=60) as c:
        sweeper = c.app.state.sweeper
        original_stop = sweeper.stop

        def stop(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen.append("loop")
            except RuntimeError:
                seen.append("worker")
            original_stop(*args, **kwargs)

        sweeper.stop = stop
    assert seen == ["worker"]
    assert not sweeper.running


def test_short_signing_key_warned_once(caplog):
    with caplog.at_level(logging.WARNING, logger="secretlink"):
        create_app(_settings(signing_key="short"), ledger=InMemoryLinkLedger(), configure_logging=False)
    warnings = [r for r in caplog.records if "signing key" in r.getMessage()]
    assert len(warnings) == 1
