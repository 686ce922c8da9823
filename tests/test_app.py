"""
Route tests for app.py using the Flask test client over in-memory backends.
"""
from unittest.mock import patch

import pytest

from aggregation import AggregationEngine
from app import create_app, factor_dataset_name, seed_factors
from errors import InvalidInput, StorageError
from factors import EmissionFactorTable
from storage import InMemoryEventStore, InMemoryRegistry

ADMIN = "admin-token"
KEY = "user-key"


@pytest.fixture
def backends():
    engine = AggregationEngine(InMemoryEventStore(), EmissionFactorTable())
    seed_factors(engine, "defra-2024")
    registry = InMemoryRegistry()
    registry.set_api_key("u1", KEY, "tests")
    return engine, registry


@pytest.fixture
def client(backends):
    engine, registry = backends
    app = create_app(engine, registry, config={
        "ADMIN_API_KEY": ADMIN,
        "ALLOW_CLEAR": True,
        "RATELIMIT_ENABLED": False,
        "TESTING": True,
    })
    return app.test_client()


def user_headers(key=KEY):
    return {"X-API-Key": key}


def admin_headers(token=ADMIN):
    return {"Authorization": f"Bearer {token}"}


class TestHealth:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.get_json()["ok"] is True

    def test_versioned_health_and_ping(self, client):
        assert client.get("/api/v1/health").status_code == 200
        assert client.get("/db-ping").get_json() == {"ok": True}

    def test_routes_listing(self, client):
        rules = {r["rule"] for r in client.get("/_routes").get_json()}
        assert "/users/<user_id>/transit" in rules


class TestUsers:

    def test_register_then_post(self, client):
        r = client.post("/users/register", json={"app_name": "commuter"})
        assert r.status_code == 201
        body = r.get_json()
        assert body["user_id"].startswith("u_")

        r = client.post(f"/users/{body['user_id']}/transit",
                        json={"mode": "bus", "distance_km": 10},
                        headers=user_headers(body["api_key"]))
        assert r.status_code == 201

    def test_register_requires_app_name(self, client):
        r = client.post("/users/register", json={})
        assert r.status_code == 400
        assert r.get_json()["error"] == "missing_app_name"

    def test_transit_requires_key(self, client):
        r = client.post("/users/u1/transit", json={"mode": "bus", "distance_km": 1})
        assert r.status_code == 401
        r = client.post("/users/u1/transit", json={"mode": "bus", "distance_km": 1},
                        headers=user_headers("wrong"))
        assert r.status_code == 401

    @pytest.mark.parametrize("body,reason", [
        ({"mode": "bus"}, "missing_fields"),
        ({"mode": "plane", "distance_km": 1}, "invalid mode"),
        ({"mode": "bus", "distance_km": -1}, "Negative value for distance_km is not allowed."),
    ])
    def test_transit_validation(self, client, backends, body, reason):
        r = client.post("/users/u1/transit", json=body, headers=user_headers())
        assert r.status_code == 400
        assert r.get_json()["error"] == reason
        assert backends[0].get_events("u1") == []

    @pytest.mark.parametrize("raw", [
        '{"mode": "bus", "distance_km": NaN}',
        '{"mode": "bus", "distance_km": Infinity}',
        '{"mode": "car", "distance_km": 5, "occupancy": NaN}',
    ])
    def test_transit_non_finite_numbers_rejected(self, client, backends, raw):
        r = client.post("/users/u1/transit", data=raw, content_type="application/json",
                        headers=user_headers())
        assert r.status_code == 400
        assert backends[0].get_events("u1") == []
        assert backends[0].global_average_weekly() == 0.0

    def test_transit_invalid_json(self, client):
        r = client.post("/users/u1/transit", data="{oops", content_type="application/json",
                        headers=user_headers())
        assert r.status_code == 400
        assert r.get_json()["error"] == "invalid_json"

    def test_footprint_reflects_new_event(self, client):
        client.post("/users/u1/transit", headers=user_headers(), json={
            "mode": "car", "fuel_type": "petrol", "vehicle_size": "small", "distance_km": 10,
        })
        r = client.get("/users/u1/lifetime-footprint", headers=user_headers())
        body = r.get_json()
        assert body["lifetime_kg_co2"] == pytest.approx(1.67)
        assert body["last_7d_kg_co2"] == pytest.approx(1.67)
        assert body["last_30d_kg_co2"] == pytest.approx(1.67)

    def test_analytics_and_suggestions(self, client):
        client.post("/users/u1/transit", headers=user_headers(), json={"mode": "walk", "distance_km": 2})
        a = client.get("/users/u1/analytics", headers=user_headers()).get_json()
        assert a == {"user_id": "u1", "this_week_kg_co2": 0.0,
                     "peer_week_avg_kg_co2": 0.0, "above_peer_avg": False}
        s = client.get("/users/u1/suggestions", headers=user_headers()).get_json()
        assert s["suggestions"][0].startswith("Nice work")

    def test_bad_user_path(self, client):
        r = client.get("/users/bad.id/lifetime-footprint", headers=user_headers())
        assert r.status_code == 404

    def test_storage_error_maps_to_503(self, client, backends):
        engine, _ = backends
        with patch.object(engine.store, "get_events", side_effect=StorageError("backend down")):
            r = client.get("/users/u1/lifetime-footprint", headers=user_headers())
        assert r.status_code == 503
        assert "backend down" in r.get_json()["error"]


class TestEstimate:

    def test_estimate(self, client):
        r = client.post("/api/v1/emissions/estimate", json={
            "mode": "car", "fuel_type": "petrol", "vehicle_size": "small",
            "distance_km": 10, "occupancy": 2,
        })
        assert r.status_code == 200
        assert r.get_json()["kgCO2e"] == pytest.approx(0.835)

    def test_estimate_rejects_negative(self, client):
        r = client.post("/api/v1/emissions/estimate", json={"mode": "bus", "distance_km": -3})
        assert r.status_code == 400
        assert r.get_json()["error"] == "Distance cannot be negative"

    def test_estimate_rejects_nan(self, client):
        r = client.post("/api/v1/emissions/estimate", data='{"mode": "bus", "distance_km": NaN}',
                        content_type="application/json")
        assert r.status_code == 400


class TestAdmin:

    def test_requires_bearer(self, client):
        assert client.get("/admin/clients").status_code == 401
        assert client.get("/admin/clients", headers=admin_headers("nope")).status_code == 401
        assert client.get("/admin/clients", headers={"Authorization": ADMIN}).status_code == 401

    def test_clients_and_data(self, client):
        client.post("/users/u1/transit", headers=user_headers(), json={"mode": "bus", "distance_km": 3, "ts": 1000})
        assert client.get("/admin/clients", headers=admin_headers()).get_json() == ["u1"]
        data = client.get("/admin/clients/u1/data", headers=admin_headers()).get_json()
        assert data[0]["mode"] == "bus"
        assert data[0]["ts"] == 1000

    def test_logs_record_requests(self, client):
        client.get("/health")
        logs = client.get("/admin/logs", headers=admin_headers()).get_json()
        assert logs[0]["path"] == "/health"
        assert logs[0]["status"] == 200
        assert client.delete("/admin/logs", headers=admin_headers()).status_code == 200
        logs = client.get("/admin/logs", headers=admin_headers()).get_json()
        # only the DELETE itself remains
        assert [l["path"] for l in logs] == ["/admin/logs"]

    def test_clear_db_events(self, client):
        client.post("/users/u1/transit", headers=user_headers(), json={"mode": "bus", "distance_km": 3})
        assert client.get("/admin/clear-db-events", headers=admin_headers()).status_code == 200
        assert client.get("/admin/clients", headers=admin_headers()).get_json() == []

    def test_clear_disabled(self, backends):
        engine, registry = backends
        app = create_app(engine, registry, config={
            "ADMIN_API_KEY": ADMIN, "ALLOW_CLEAR": False, "RATELIMIT_ENABLED": False,
        })
        r = app.test_client().get("/admin/clear-db", headers=admin_headers())
        assert r.status_code == 403

    def test_clear_db_wipes_keys(self, client):
        assert client.get("/admin/clear-db", headers=admin_headers()).status_code == 200
        r = client.get("/users/u1/lifetime-footprint", headers=user_headers())
        assert r.status_code == 401

    def test_list_factors_by_mode(self, client):
        rows = client.get("/admin/emission-factors?mode=taxi", headers=admin_headers()).get_json()
        assert len(rows) == 4
        assert {r["mode"] for r in rows} == {"taxi"}

    def test_load_factors_json(self, client):
        r = client.post("/admin/emission-factors", headers=admin_headers(),
                        json=[{"mode": "bus", "kg_co2_per_km": 0.5, "source": "LOCAL"}])
        assert r.status_code == 201
        assert r.get_json() == {"loaded": 1}
        est = client.post("/api/v1/emissions/estimate", json={"mode": "bus", "distance_km": 2}).get_json()
        assert est["source"] == "LOCAL"
        assert est["kgCO2e"] == pytest.approx(1.0)

    def test_load_factors_csv(self, client):
        csv = "mode,fuel_type,vehicle_size,kg_co2_per_km,source\ntaxi,petrol,small,0.25,LOCAL\n"
        r = client.post("/admin/emission-factors", headers=admin_headers(),
                        data=csv, content_type="text/csv")
        assert r.get_json() == {"loaded": 1}

    def test_bad_factor_payload_is_atomic(self, client):
        before = client.get("/admin/emission-factors", headers=admin_headers()).get_json()
        r = client.post("/admin/emission-factors", headers=admin_headers(),
                        json=[{"mode": "bus", "kg_co2_per_km": 0.9}, {"mode": "train"}])
        assert r.status_code == 400
        after = client.get("/admin/emission-factors", headers=admin_headers()).get_json()
        assert after == before

    def test_factor_change_reflected_in_footprint(self, client):
        client.post("/users/u1/transit", headers=user_headers(), json={"mode": "bus", "distance_km": 10})
        client.post("/admin/emission-factors", headers=admin_headers(),
                    json=[{"mode": "bus", "kg_co2_per_km": 0.1}])
        body = client.get("/users/u1/lifetime-footprint", headers=user_headers()).get_json()
        assert body["lifetime_kg_co2"] == pytest.approx(1.0)

    def test_reload_dataset(self, client):
        client.delete("/admin/emission-factors", headers=admin_headers())
        assert client.get("/admin/emission-factors", headers=admin_headers()).get_json() == []
        r = client.post("/admin/emission-factors/reload", headers=admin_headers(), json={"dataset": "basic"})
        assert r.status_code == 200
        rows = client.get("/admin/emission-factors?mode=bus", headers=admin_headers()).get_json()
        assert rows[0]["source"] == "BASIC-DEFAULT"

    def test_reload_unknown_dataset(self, client):
        r = client.post("/admin/emission-factors/reload", headers=admin_headers(), json={"dataset": "nope"})
        assert r.status_code == 400


class TestConfig:

    def test_known_dataset_kept(self):
        assert factor_dataset_name("basic") == "basic"

    def test_unknown_dataset_falls_back(self, caplog):
        with caplog.at_level("ERROR", logger="transitfootprint"):
            assert factor_dataset_name("defra-2023") == "defra-2024"
        assert "defra-2023" in caplog.text

    def test_seed_unknown_dataset_raises(self, backends):
        engine, _ = backends
        with pytest.raises(InvalidInput):
            seed_factors(engine, "nope")
