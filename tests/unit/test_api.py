"""Tests for the FastAPI application endpoints."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from failure_history.app import create_app
from failure_history.models import ScanStatus
from failure_history.services import Services
from tests.fixtures.history import make_result, seed_scans
from tests.fixtures.jenkins import jenkins_case


@pytest.fixture
def services(service_config, store, jenkins):
    return Services.build(service_config, store=store, jenkins=jenkins)


@pytest.fixture
def client(services):
    """Create test client."""
    with TestClient(create_app(services=services)) as c:
        yield c


class TestHealthEndpoint:

    def test_health_returns_200(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200

    def test_health_has_status(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["service"] == "ci-failure-history"
        assert data["storage"] == "InMemoryStore"
        assert "version" in data


class TestCollectGet:

    def test_returns_results(self, ci, client, store):
        ci.add_report(50, [
            jenkins_case("Foo", "bar"),
            jenkins_case("Foo", "ok", status="PASSED"),
        ])

        resp = client.get("/collect/50")

        assert resp.status_code == 200
        assert resp.headers["X-Collection-Status"] == "ok"
        data = resp.json()
        assert len(data) == 1
        assert data[0]["class_name"] == "Foo"
        assert data[0]["name"] == "bar"
        assert data[0]["status"] == "FAILED"
        assert data[0]["build_id"] == 50

    def test_aborted_build_returns_empty_list(self, ci, client):
        ci.results[70] = "ABORTED"
        resp = client.get("/collect/70")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_missing_build_id(self, client):
        resp = client.get("/collect")
        assert resp.status_code == 400
        assert resp.headers["content-type"].startswith("text/plain")
        assert resp.text == "You have to provide a build id"

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", "1.5", "²"])
    def test_invalid_build_id(self, client, raw):
        resp = client.get(f"/collect/{raw}")
        assert resp.status_code == 400
        assert "positive integer" in resp.text

    def test_ci_failure_returns_500(self, ci, client, store):
        ci.broken.add(13)
        resp = client.get("/collect/13")
        assert resp.status_code == 500
        assert "CI server returned 500" in resp.json()["detail"]
        scan = asyncio.run(store.get_scan(13))
        assert scan.status == ScanStatus.COMPLETED


class TestCollectPost:

    def test_empty_200(self, ci, client, store):
        ci.add_report(50, [jenkins_case("Foo", "bar")])
        resp = client.post("/collect", json={"buildId": 50})
        assert resp.status_code == 200
        assert resp.content == b""
        assert asyncio.run(store.get_history("Foo.bar")).failed_in == {50}

    def test_accepts_string_build_id(self, ci, client):
        ci.add_report(50, [])
        assert client.post("/collect", json={"buildId": "50"}).status_code == 200

    @pytest.mark.parametrize("payload", [{}, {"buildId": None}, {"buildId": ""}, []])
    def test_missing_build_id(self, client, payload):
        resp = client.post("/collect", json=payload)
        assert resp.status_code == 400
        assert resp.text == "You have to provide a build id"

    def test_no_body(self, client):
        resp = client.post("/collect")
        assert resp.status_code == 400

    def test_ci_failure_returns_500(self, ci, client):
        ci.broken.add(13)
        assert client.post("/collect", json={"buildId": 13}).status_code == 500


class TestScan:

    def test_dispatches_new_builds(self, ci, services, store):
        ci.set_builds([105, 104, 103, 102, 101])
        ci.add_report(105, [jenkins_case("Foo", "bar")])
        ci.add_report(104, [])
        asyncio.run(seed_scans(store, [103, 102, 101]))

        with TestClient(create_app(services=services)) as client:
            resp = client.post("/scan")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["high_water_mark"] == 103
        assert data["dispatched"] == [105, 104]
        assert data["failed_dispatches"] == []
        # collections were drained on shutdown
        assert asyncio.run(store.get_history("Foo.bar")).failed_in == {105}

    def test_empty_scan_log_returns_412(self, ci, client):
        ci.set_builds([105])
        resp = client.post("/scan")
        assert resp.status_code == 412
        assert "seed it" in resp.json()["detail"]

    def test_ci_failure_returns_500(self, ci, client, store):
        ci.down = True
        asyncio.run(seed_scans(store, [1]))
        resp = client.post("/scan")
        assert resp.status_code == 500


class TestHistoryEndpoints:

    def test_test_history(self, client, store):
        asyncio.run(store.create_history("Foo.bar", make_result(50), failed=True))
        resp = client.get("/tests/Foo.bar")
        assert resp.status_code == 200
        data = resp.json()
        assert data["test_name"] == "Foo.bar"
        assert data["failed_in"] == [50]
        assert len(data["results"]) == 1

    def test_unknown_test_404(self, client):
        assert client.get("/tests/Nope.missing").status_code == 404

    def test_scans(self, client, store):
        asyncio.run(seed_scans(store, [101, 102]))
        data = client.get("/scans", params={"days": 1}).json()
        assert [s["build_id"] for s in data] == [102, 101]
        assert data[0]["status"] == "COMPLETED"


class TestSummary:

    def test_summary_returns_200(self, client, store):
        asyncio.run(store.create_history("Foo.bar", make_result(50), failed=True))
        resp = client.get("/summary")
        assert resp.status_code == 200
        data = resp.json()
        assert data["tracked_tests"] == 1
        assert data["recorded_results"] == 1


class TestPrometheusMetrics:

    def test_metrics_returns_text(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "ci_history_tests_tracked 0" in resp.text
        assert "ci_history_results_total" in resp.text
        assert 'ci_history_scans{status="running"}' in resp.text
