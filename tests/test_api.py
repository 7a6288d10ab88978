import pytest
from fastapi.testclient import TestClient

from node_healer.api.v1.endpoints import fleets as fleets_endpoint
from node_healer.core.config import settings
from node_healer.main import app
from node_healer.services.driver import ReconcileDriver
from node_healer.services.records import FleetStatusRecordStore

from fakes import NAMESPACE, FakeKube, fleet_pods, make_fleet

API = settings.API_V1_STR


class UnavailableKube(FakeKube):
    def is_available(self):
        return False


@pytest.fixture
def kube(monkeypatch):
    kube = FakeKube(
        fleets=[make_fleet(), make_fleet(name="broken", healthy_threshold="-3%")],
        pods=fleet_pods(unhealthy={1: {"crash_looping": True, "restarts": 30}}),
    )
    driver = ReconcileDriver(kube, FleetStatusRecordStore(kube, NAMESPACE), namespace=NAMESPACE,
                             dry_run=False, sleep=lambda _: None)
    monkeypatch.setattr(fleets_endpoint, "reconcile_driver", driver)
    monkeypatch.setattr(fleets_endpoint, "k8s_service", kube)
    return kube


@pytest.fixture
def api():
    return TestClient(app)


def test_root(api):
    response = api.get("/")
    assert response.status_code == 200
    assert settings.APP_NAME in response.json()["message"]

def test_healthz(api):
    body = api.get("/healthz").json()
    assert body["status"] == "ok"
    assert body["reconciler_running"] is False

def test_reconcile_endpoint_recovers_replica(api, kube):
    response = api.post(f"{API}/fleets/cosmoshub/reconcile")

    assert response.status_code == 200
    body = response.json()
    assert body["required_healthy"] == 3
    assert body["healthy_count"] == 4
    decisions = {d["identity"]: d["decision"] for d in body["decisions"]}
    assert decisions["cosmoshub-1"] == "Executed"
    assert kube.deleted_pods == ["cosmoshub-1"]

def test_last_result_after_reconcile(api, kube):
    assert api.get(f"{API}/fleets/cosmoshub").status_code == 404
    api.post(f"{API}/fleets/cosmoshub/reconcile")
    body = api.get(f"{API}/fleets/cosmoshub").json()
    assert body["fleet_name"] == "cosmoshub"
    assert body["phase"] == "Idle"

def test_reconcile_unknown_fleet(api, kube):
    assert api.post(f"{API}/fleets/nope/reconcile").status_code == 404

def test_reconcile_invalid_threshold(api, kube):
    response = api.post(f"{API}/fleets/broken/reconcile")
    assert response.status_code == 422
    assert "-3%" in response.json()["detail"]

def test_reconcile_without_kubernetes(api, monkeypatch):
    monkeypatch.setattr(fleets_endpoint, "k8s_service", UnavailableKube())
    assert api.post(f"{API}/fleets/cosmoshub/reconcile").status_code == 503

def test_evaluate_threshold(api):
    body = api.post(f"{API}/threshold/evaluate", json={"healthy_threshold": "50%", "fleet_size": 5}).json()
    assert body == {"healthy_threshold": "50%", "fleet_size": 5, "required_healthy": 3, "tolerated_unhealthy": 2}

def test_evaluate_threshold_fallback(api):
    body = api.post(f"{API}/threshold/evaluate", json={"healthy_threshold": 10, "fleet_size": 5}).json()
    assert body["required_healthy"] == 4
    assert body["tolerated_unhealthy"] == 1

def test_evaluate_threshold_rejects_bad_values(api):
    response = api.post(f"{API}/threshold/evaluate", json={"healthy_threshold": "0%", "fleet_size": 5})
    assert response.status_code == 422
    response = api.post(f"{API}/threshold/evaluate", json={"healthy_threshold": 3, "fleet_size": -1})
    assert response.status_code == 422
