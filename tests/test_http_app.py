# tests/test_http_app.py
"""
End-to-end tests through the FastAPI app (in-memory store):
- admin auth, error body shapes
- bidding round trip: create, open, bid, select
- customer, vendor portal and status pages
- monitor scan, health and metrics endpoints
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import BASE_URL, FakeClock
from roadside.config import Settings
from roadside.infra.memory_store import create_memory_store
from roadside.transport.http_app import create_app

ADMIN_TOKEN = "test-admin-token"
AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def _settings(**overrides) -> Settings:
    fields = dict(
        admin_token=ADMIN_TOKEN,
        disable_unbid_alerts=True,
        rate_limit_per_minute=1000,
        public_base_url=BASE_URL,
        enable_request_logging=False,
    )
    fields.update(overrides)
    return Settings(_env_file=None, **fields)


@pytest.fixture
def http_clock():
    return FakeClock()


@pytest.fixture
def client(http_clock):
    app = create_app(_settings(), store=create_memory_store(), clock=http_clock)
    with TestClient(app) as test_client:
        yield test_client


def _token(link: str) -> str:
    return link.rsplit("/", 1)[-1]


def _create_job(client, **overrides) -> dict:
    body = {
        "customerId": "cust-1",
        "pickupAddress": "123 Main St",
        "serviceType": "Towing",
        "bidMode": "open",
    }
    body.update(overrides)
    resp = client.post("/jobs", json=body, headers=AUTH)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _open(client, job_id: str) -> dict:
    resp = client.post(f"/jobs/{job_id}/open-bidding", headers=AUTH)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _bid(client, vendor_token: str, name="Vendor1", phone="+15550001111", price=120, eta=30) -> str:
    resp = client.post(
        f"/bids/{vendor_token}",
        json={"vendorName": name, "vendorPhone": phone, "price": price, "etaMinutes": eta},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["bidId"]


class TestAdminAuth:
    def test_missing_token(self, client):
        resp = client.get("/jobs")
        assert resp.status_code == 401
        assert resp.json() == {"message": "Authentication required"}
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_wrong_token(self, client):
        resp = client.get("/jobs", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_unconfigured_token(self):
        app = create_app(_settings(admin_token=None), store=create_memory_store())
        with TestClient(app) as test_client:
            resp = test_client.get("/jobs", headers=AUTH)
        assert resp.status_code == 503

    def test_public_endpoints_need_no_token(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
        assert client.get("/ready").status_code == 200


class TestErrorShapes:
    def test_validation_error(self, client):
        resp = client.post("/jobs", json={"pickupAddress": "123 Main St"}, headers=AUTH)
        assert resp.status_code == 400
        assert resp.json()["message"].startswith("customerId")

    def test_non_object_body(self, client):
        resp = client.post("/jobs", json=["not", "an", "object"], headers=AUTH)
        assert resp.status_code == 400
        assert "message" in resp.json()

    def test_not_found(self, client):
        resp = client.get("/jobs/missing", headers=AUTH)
        assert resp.status_code == 404
        assert set(resp.json()) == {"message"}

    def test_unknown_route(self, client):
        resp = client.get("/no-such-route")
        assert resp.status_code == 404
        assert resp.json() == {"message": "Not Found"}

    def test_invalid_transition(self, client):
        job = _create_job(client)
        resp = client.patch(f"/jobs/{job['id']}", json={"status": "Arrived"}, headers=AUTH)
        assert resp.status_code == 409
        body = resp.json()
        assert body["reasons"] == ["edge_not_allowed", "requires_override", "vendor_required"]
        assert client.get(f"/jobs/{job['id']}", headers=AUTH).json()["status"] == "Unassigned"

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Cache-Control"] == "no-store"
        assert "X-Request-ID" in resp.headers


class TestBiddingFlow:
    def test_towing_round_trip(self, client, http_clock):
        job = _create_job(client)
        assert job["status"] == "Unassigned"
        assert job["biddingOpen"] is False

        links = _open(client, job["id"])
        assert links["statusUrl"] == f"{BASE_URL}/status/{job['id']}"
        vendor_token = _token(links["vendorLink"])

        preview = client.get(f"/bids/job/{vendor_token}").json()
        assert preview["jobId"] == job["id"]
        assert "vendorPhone" not in preview

        first = _bid(client, vendor_token)
        _bid(client, vendor_token, name="Vendor2", phone="+15550002222", price=150, eta=25)

        bids = client.get(f"/jobs/{job['id']}/bids", headers=AUTH).json()
        assert [b["id"] for b in bids][0] == first
        assert len(bids) == 2

        resp = client.post(f"/bids/{first}/select", headers=AUTH)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["ok"] is True
        assert body["status"] == "Assigned"
        assert body["finalPrice"] == 120
        assert body["selectedBidId"] == first
        assert body["vendor"] == {"name": "Vendor1", "phone": "+15550001111"}
        assert body["job"]["assignedAt"] == http_clock.now.isoformat()
        assert body["links"]["vendorPortal"].startswith(f"{BASE_URL}/vendor/")

        again = client.post(f"/bids/{first}/select", headers=AUTH)
        assert again.status_code == 409
        assert "already_assigned" in again.json()["reasons"]

        late = client.post(
            f"/bids/{vendor_token}",
            json={"vendorName": "Late", "vendorPhone": "+15559999999", "price": 90, "etaMinutes": 10},
        )
        assert late.status_code == 409

    def test_bid_validation(self, client):
        job = _create_job(client)
        vendor_token = _token(_open(client, job["id"])["vendorLink"])
        resp = client.post(
            f"/bids/{vendor_token}",
            json={"vendorName": "Ace", "vendorPhone": "+15550001111", "price": -5, "etaMinutes": 10},
        )
        assert resp.status_code == 400

    def test_unknown_vendor_token(self, client):
        resp = client.post(
            "/bids/not-a-token",
            json={"vendorName": "Ace", "vendorPhone": "+15550001111", "price": 50, "etaMinutes": 10},
        )
        assert resp.status_code == 404

    def test_links_endpoint(self, client):
        job = _create_job(client)
        assert client.get(f"/jobs/{job['id']}/links", headers=AUTH).status_code == 404
        opened = _open(client, job["id"])
        assert client.get(f"/jobs/{job['id']}/links", headers=AUTH).json() == opened

    def test_list_and_search(self, client):
        _create_job(client, serviceType="Lockout", notes="Keys inside")
        _create_job(client, serviceType="Towing")
        found = client.get("/jobs", params={"q": "keys"}, headers=AUTH).json()
        assert [j["serviceType"] for j in found] == ["Lockout"]
        assert len(client.get("/jobs", params={"status": "Unassigned"}, headers=AUTH).json()) == 2
        assert client.get("/jobs", params={"status": "Bogus"}, headers=AUTH).status_code == 400


class TestCustomerAndVendor:
    def test_customer_picks_bid(self, client):
        job = _create_job(client)
        links = _open(client, job["id"])
        customer_token = _token(links["customerLink"])
        bid_id = _bid(client, _token(links["vendorLink"]))

        view = client.get(f"/public/customer/{customer_token}/bids").json()
        assert view["jobId"] == job["id"]
        assert view["job"]["biddingOpen"] is True
        assert [b["id"] for b in view["bids"]] == [bid_id]

        resp = client.post(f"/public/customer/{customer_token}/select", json={"bidId": bid_id})
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "Assigned"

        missing = client.post(f"/public/customer/{customer_token}/select", json={})
        assert missing.status_code == 400

    def test_vendor_portal(self, client):
        job = _create_job(client)
        links = _open(client, job["id"])
        bid_id = _bid(client, _token(links["vendorLink"]))
        portal = client.post(f"/bids/{bid_id}/select", headers=AUTH).json()["links"]["vendorPortal"]
        portal_token = _token(portal)

        view = client.get(f"/vendor/{portal_token}").json()
        assert view["allowedNext"] == ["Unassigned", "OnTheWay"]

        resp = client.patch(f"/vendor/{portal_token}/status", json={"status": "OnTheWay"})
        assert resp.json() == {"ok": True, "status": "OnTheWay"}

        skip = client.patch(f"/vendor/{portal_token}/status", json={"status": "Completed"})
        assert skip.status_code == 409
        assert "requires_admin" in skip.json()["reasons"]

        status = client.get(f"/status/{job['id']}").json()
        assert status["status"] == "OnTheWay"
        assert "vendorPhone" not in status

    def test_status_unknown_job(self, client):
        assert client.get("/status/missing").status_code == 404


class TestRateLimit:
    def test_link_endpoints_limited(self):
        app = create_app(_settings(rate_limit_per_minute=2), store=create_memory_store())
        with TestClient(app) as test_client:
            codes = [test_client.get("/status/missing").status_code for _ in range(3)]
        assert codes == [404, 404, 429]


class TestOperations:
    def test_manual_scan_raises_alert(self, client, http_clock):
        job = _create_job(client)
        _open(client, job["id"])
        http_clock.advance(minutes=11)

        result = client.post("/admin/unbid-monitor/scan", headers=AUTH).json()
        assert result["alerted"] == [job["id"]]
        assert result["busy"] is False

        alerts = client.get("/alerts", params={"jobId": job["id"]}, headers=AUTH).json()
        assert len(alerts) == 1
        assert alerts[0]["meta"]["kind"] == "job_unbid_alert"

        second = client.post("/admin/unbid-monitor/scan", headers=AUTH).json()
        assert second["alerted"] == []

    def test_detailed_health(self, client):
        body = client.get("/health/detailed", headers=AUTH).json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["checks"]["unbid_monitor"]["details"] == "Monitor disabled"

    def test_metrics(self, client):
        job = _create_job(client)
        client.patch(f"/jobs/{job['id']}", json={"status": "Arrived"}, headers=AUTH)
        metrics = client.get("/metrics", headers=AUTH).json()
        assert metrics["counters"]["job_transitions_rejected_total"] == 1

    def test_metrics_disabled(self):
        app = create_app(_settings(enable_metrics=False), store=create_memory_store())
        with TestClient(app) as test_client:
            resp = test_client.get("/metrics", headers=AUTH)
        assert resp.status_code == 404
        assert resp.json() == {"message": "Metrics disabled"}
