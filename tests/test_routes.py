"""HTTP-level tests against the FastAPI app."""

import pytest
from fastapi.testclient import TestClient

from app.core.db import get_db
from app.core.settings import get_settings
from app.main import create_app
from app.models.schemas.exposure import ExposureRecord
from app.repositories.exposure_repo import ExposureRepository

from conftest import ORG

AUTH = {"Authorization": "Bearer test-token"}
IDENTITY = {"x-org-id": ORG, "x-store-id": "store-a", "x-customer-id": "user42"}


@pytest.fixture
def client(engine, settings, session_factory):
    app = create_app(engine, settings)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    return TestClient(app)


def new_experiment(key="hero_banner", **extra):
    payload = {
        "org_id": ORG,
        "key": key,
        "name": "Hero banner copy",
        "traffic_allocation": 0.5,
        "guardrail_metric": "bounce_rate",
        "variants": [{"key": "control"}, {"key": "treatment"}],
    }
    payload.update(extra)
    return payload


class TestAssignRoute:
    def test_assigns_and_sets_cookies(self, client):
        response = client.post(
            "/api/experiments/assign", json={"experiments": ["exp1", "all_out"]}, headers=IDENTITY
        )
        assert response.status_code == 200
        assert response.json() == {
            "assignments": {"exp1": "treatment", "all_out": "control"},
            "newAssignments": {"exp1": "treatment", "all_out": "control"},
        }
        assert response.headers["x-tokpulse-xp"] == "exp1=treatment,all_out=control"
        assert response.headers.get_list("set-cookie") == [
            "tp_xp_exp1=treatment; Max-Age=2592000; SameSite=Lax; Path=/",
            "tp_xp_all_out=control; Max-Age=2592000; SameSite=Lax; Path=/",
        ]

    def test_carried_assignment_is_not_reissued(self, client):
        headers = {**IDENTITY, "cookie": "tp_xp_exp1=control"}
        response = client.post("/api/experiments/assign", json={"experiments": ["exp1"]}, headers=headers)
        assert response.json() == {"assignments": {"exp1": "control"}, "newAssignments": {}}
        assert response.headers.get_list("set-cookie") == []

    def test_bad_body_is_400(self, client):
        response = client.post(
            "/api/experiments/assign",
            content="{oops",
            headers={**IDENTITY, "content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request body"}


class TestAssignmentAndExposureRoutes:
    def test_assignment(self, client):
        response = client.post(
            "/api/experiments/assignment",
            json={"org_id": ORG, "subject_key": "user42", "experiment_key": "exp1"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["variant_key"] == "treatment"

    def test_exposure_is_deduplicated(self, client, telemetry):
        payload = {"org_id": ORG, "subject_key": "user42", "experiment_key": "exp1", "surface": "pdp"}
        first = client.post("/api/experiments/exposure", json=payload).json()
        second = client.post("/api/experiments/exposure", json=payload).json()

        assert first["data"]["first_exposure"] is True
        assert second["data"]["first_exposure"] is False
        assert len(telemetry.exposures) == 1

    def test_exposure_validation(self, client):
        response = client.post(
            "/api/experiments/exposure",
            json={"org_id": ORG, "subject_key": "user42", "experiment_key": "exp1", "surface": ""},
        )
        assert response.status_code == 422

    def test_carried_variant_cannot_record_inactive_experiments(self, client, telemetry):
        for key in ("does_not_exist", "paused_exp"):
            payload = {
                "org_id": ORG,
                "subject_key": "user42",
                "experiment_key": key,
                "surface": "pdp",
                "variant_key": "anything",
            }
            response = client.post("/api/experiments/exposure", json=payload)
            assert response.json() == {"success": True, "data": {"recorded": False}}
        assert telemetry.exposures == []

    def test_active(self, client):
        response = client.get("/api/experiments/active", params={"org_id": ORG, "store_id": "store-a"})
        keys = {experiment["key"] for experiment in response.json()["data"]}
        assert keys == {"exp1", "all_in", "all_out", "store_a_only"}


class TestAuthoringRoutes:
    def test_requires_token(self, client):
        assert client.post("/experiments", json=new_experiment()).status_code == 401
        bad = {"Authorization": "Bearer nope"}
        assert client.get("/experiments", params={"org_id": ORG}, headers=bad).status_code == 401

    def test_create_get_and_list(self, client):
        created = client.post("/experiments", json=new_experiment(), headers=AUTH)
        assert created.status_code == 201
        body = created.json()
        assert body["status"] == "DRAFT"
        assert [variant["key"] for variant in body["variants"]] == ["control", "treatment"]

        fetched = client.get("/experiments/hero_banner", params={"org_id": ORG}, headers=AUTH)
        assert fetched.json()["experiment_id"] == body["experiment_id"]

        listed = client.get("/experiments", params={"org_id": ORG, "status": "DRAFT"}, headers=AUTH)
        assert [experiment["key"] for experiment in listed.json()] == ["hero_banner"]

    def test_duplicate_is_409(self, client):
        client.post("/experiments", json=new_experiment(), headers=AUTH)
        assert client.post("/experiments", json=new_experiment(), headers=AUTH).status_code == 409

    def test_variant_configuration_is_returned(self, client):
        payload = new_experiment(
            variants=[{"key": "control"}, {"key": "treatment", "configuration_json": {"headline": "Hi"}}]
        )
        body = client.post("/experiments", json=payload, headers=AUTH).json()
        assert [variant["configuration_json"] for variant in body["variants"]] == [None, {"headline": "Hi"}]

    @pytest.mark.parametrize("key", ["bad;key", "bad=key", "bad,key", "bad key"])
    def test_rejects_keys_that_cannot_travel_in_a_cookie(self, client, key):
        assert client.post("/experiments", json=new_experiment(key), headers=AUTH).status_code == 422
        variants = [{"key": "control"}, {"key": key}]
        payload = new_experiment(variants=variants)
        assert client.post("/experiments", json=payload, headers=AUTH).status_code == 422

    def test_rejects_single_variant(self, client):
        payload = new_experiment(variants=[{"key": "control"}])
        assert client.post("/experiments", json=payload, headers=AUTH).status_code == 422

    def test_unknown_experiment_is_404(self, client):
        response = client.get("/experiments/missing", params={"org_id": ORG}, headers=AUTH)
        assert response.status_code == 404

    def test_status_transitions(self, client):
        client.post("/experiments", json=new_experiment(), headers=AUTH)

        running = client.post(
            "/experiments/hero_banner/status", json={"org_id": ORG, "status": "RUNNING"}, headers=AUTH
        )
        assert running.json()["status"] == "RUNNING"

        client.post(
            "/experiments/hero_banner/status", json={"org_id": ORG, "status": "COMPLETED"}, headers=AUTH
        )
        restart = client.post(
            "/experiments/hero_banner/status", json={"org_id": ORG, "status": "RUNNING"}, headers=AUTH
        )
        assert restart.status_code == 400

    def test_guardrail(self, client):
        client.post("/experiments", json=new_experiment(), headers=AUTH)

        def check(metric, value):
            response = client.post(
                "/experiments/hero_banner/guardrail",
                json={"org_id": ORG, "metric": metric, "value": value, "threshold": 0.4},
                headers=AUTH,
            )
            return response.json()["passed"]

        assert check("bounce_rate", 0.3) is True
        assert check("bounce_rate", 0.6) is False
        assert check("conversion_rate", 0.9) is True

        metrics_text = client.get("/metrics").text
        assert 'experiment_guardrail_breaches_total{experiment="hero_banner",metric="bounce_rate"} 1.0' in metrics_text


def test_metrics_endpoint_counts_assignments(client):
    client.post("/api/experiments/assign", json={"experiments": ["exp1"]}, headers=IDENTITY)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "experiment_assignments_total" in response.text


def test_exposure_summary(client, session_factory):
    client.post("/experiments", json=new_experiment(), headers=AUTH)
    with session_factory() as db:
        repo = ExposureRepository(db)
        for subject, variant, surface in [
            ("user1", "control", "edge"),
            ("user2", "treatment", "edge"),
            ("user2", "treatment", "pdp"),
        ]:
            repo.create_exposure(
                ExposureRecord(
                    org_id=ORG,
                    subject_key=subject,
                    experiment_key="hero_banner",
                    variant_key=variant,
                    surface=surface,
                )
            )

    response = client.get("/experiments/hero_banner/exposures", params={"org_id": ORG}, headers=AUTH)
    assert response.json() == {
        "experiment_key": "hero_banner",
        "total": 3,
        "by_variant": {"control": 1, "treatment": 2},
        "by_surface": {"edge": 2, "pdp": 1},
    }
    missing = client.get("/experiments/missing/exposures", params={"org_id": ORG}, headers=AUTH)
    assert missing.status_code == 404
