import pytest
from fastapi.testclient import TestClient

from conftest import create_access_token
import database
from database import get_db
from main import app, get_routing
from routing import RoutingClient


def auth(user_id, role):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


MANAGER = auth("manager-1", "manager")


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_routing] = lambda: RoutingClient(use_road_distance=False)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def fleet_ids(client):
    ids = {"drivers": [], "parcels": []}
    for n in range(2):
        r = client.post("/drivers", json={"name": f"Driver {n}", "mobile": f"99000000{n}", "is_available": True},
                        headers=MANAGER)
        assert r.status_code == 200
        ids["drivers"].append(r.json()["driver_id"])
    r = client.post("/vehicles", json={"reg_number": "KA-05-1234", "model": "Ace", "type": "Van", "capacity": 10},
                    headers=MANAGER)
    ids["vehicle"] = r.json()["vehicle_id"]
    for n, weight in enumerate([2, 3, 1]):
        r = client.post("/parcels", json={
            "tracking_id": f"TRK{n}",
            "weight": weight,
            "delivery_location": {"latitude": 12.9 + n / 100, "longitude": 77.6, "location_name": f"Stop {n}"},
        }, headers=MANAGER)
        ids["parcels"].append(r.json()["parcel_id"])
    return ids


def create_trip(client, fleet_ids, driver_index=0):
    r = client.post("/trips", json={
        "parcel_ids": fleet_ids["parcels"],
        "driver_id": fleet_ids["drivers"][driver_index],
        "vehicle_id": fleet_ids["vehicle"],
        "start_location": {"latitude": 12.85, "longitude": 77.55, "address": "Depot"},
    }, headers=MANAGER)
    assert r.status_code == 201, r.text
    return r.json()


def test_root(client):
    assert client.get("/").status_code == 200


def test_invalid_token(client):
    r = client.get("/trips", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_drivers_cannot_create_trips(client, fleet_ids):
    r = client.post("/trips", json={"parcel_ids": fleet_ids["parcels"], "driver_id": fleet_ids["drivers"][0],
                                    "vehicle_id": fleet_ids["vehicle"]},
                    headers=auth(fleet_ids["drivers"][0], "driver"))
    assert r.status_code == 403


def test_delivery_lifecycle(client, fleet_ids):
    driver_id = fleet_ids["drivers"][0]
    driver = auth(driver_id, "driver")
    trip = create_trip(client, fleet_ids)
    trip_id = trip["trip_id"]
    assert trip["status"] == "pending"

    inbox = client.get(f"/notifications/driver/{driver_id}", headers=driver).json()["notifications"]
    assert [n["type"] for n in inbox] == ["trip_offer"]
    assert client.get(f"/notifications/driver/{driver_id}/unread-count", headers=driver).json() == {"count": 1}
    assert client.patch(f"/notifications/{inbox[0]['id']}/read", headers=driver).json()["read"] is True

    r = client.post(f"/trips/{trip_id}/accept", json={"driver_id": driver_id}, headers=driver)
    assert r.status_code == 200
    assert r.json()["status"] == "in-progress"
    assert client.get(f"/trips/driver/{driver_id}/active", headers=driver).json()["trip_id"] == trip_id

    r = client.post(f"/trips/{trip_id}/location", json={"latitude": 12.9, "longitude": 77.6}, headers=driver)
    assert r.json()["accepted"] is True

    r = client.post(f"/trips/{trip_id}/complete", headers=driver)
    assert r.status_code == 409
    assert r.json()["code"] == "incomplete_delivery"

    for pid in fleet_ids["parcels"][:2]:
        r = client.patch(f"/trips/{trip_id}/delivery/{pid}", json={"delivery_status": "delivered"}, headers=driver)
        assert r.status_code == 200
    assert client.get(f"/trips/{trip_id}/progress", headers=MANAGER).json()["progress"] == 66.67

    client.patch(f"/trips/{trip_id}/delivery/{fleet_ids['parcels'][2]}", json={"delivery_status": "delivered"},
                 headers=driver)
    r = client.post(f"/trips/{trip_id}/complete", headers=driver)
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = client.post(f"/trips/{trip_id}/location", json={"latitude": 12.9, "longitude": 77.6}, headers=driver)
    assert r.json() == {"accepted": False, "ongoing": None}


def test_assignment_errors_map_to_status_codes(client, fleet_ids):
    create_trip(client, fleet_ids)
    r = client.post("/trips", json={"parcel_ids": fleet_ids["parcels"][:1], "driver_id": fleet_ids["drivers"][1],
                                    "vehicle_id": fleet_ids["vehicle"]}, headers=MANAGER)
    assert r.status_code == 409
    assert r.json()["code"] == "parcel_already_assigned"

    r = client.get("/trips/TR-NOPE", headers=MANAGER)
    assert r.status_code == 404
    assert r.json()["detail"] == "Trip not found"


def test_driver_cannot_answer_for_someone_else(client, fleet_ids):
    trip = create_trip(client, fleet_ids)
    r = client.post(f"/trips/{trip['trip_id']}/accept", json={"driver_id": fleet_ids["drivers"][0]},
                    headers=auth(fleet_ids["drivers"][1], "driver"))
    assert r.status_code == 403


def test_decline_and_reassign(client, fleet_ids):
    first, second = fleet_ids["drivers"]
    trip = create_trip(client, fleet_ids)
    r = client.post(f"/trips/{trip['trip_id']}/decline", json={"driver_id": first, "reason": "Too far"},
                    headers=auth(first, "driver"))
    assert r.json()["status"] == "declined"

    inbox = client.get("/notifications/manager/manager-1", headers=MANAGER).json()["notifications"]
    escalation = inbox[0]
    assert escalation["type"] == "driver_declined"
    assert escalation["status"] == "pending"

    eligible = client.get("/drivers/eligible", params={"exclude": first}, headers=MANAGER).json()["drivers"]
    assert [d["id"] for d in eligible] == [second]
    assert len(client.get("/parcels/declined", headers=MANAGER).json()["parcels"]) == 3

    r = client.post(f"/notifications/{escalation['id']}/reassign", json={"driver_id": first}, headers=MANAGER)
    assert r.status_code == 409
    assert r.json()["code"] == "driver_not_eligible"

    r = client.post(f"/notifications/{escalation['id']}/reassign", json={"driver_id": second}, headers=MANAGER)
    assert r.status_code == 200
    assert r.json()["driver_id"] == second
    assert r.json()["status"] == "pending"

    r = client.post(f"/trips/{trip['trip_id']}/accept", json={"driver_id": first}, headers=auth(first, "driver"))
    assert r.status_code == 409
    r = client.post(f"/trips/{trip['trip_id']}/accept", json={"driver_id": second}, headers=auth(second, "driver"))
    assert r.json()["status"] == "in-progress"


def test_delete_trip(client, fleet_ids):
    driver_id = fleet_ids["drivers"][0]
    trip = create_trip(client, fleet_ids)

    r = client.delete(f"/trips/{trip['trip_id']}", headers=auth(driver_id, "driver"))
    assert r.status_code == 403

    r = client.delete(f"/trips/{trip['trip_id']}", headers=MANAGER)
    assert r.status_code == 200
    assert r.json()["trip_id"] == trip["trip_id"]
    assert client.get(f"/trips/{trip['trip_id']}", headers=MANAGER).status_code == 404
    assert client.delete(f"/trips/{trip['trip_id']}", headers=MANAGER).status_code == 404

    inbox = client.get(f"/notifications/driver/{driver_id}", headers=auth(driver_id, "driver")).json()
    assert [n["status"] for n in inbox["notifications"]] == ["resolved"]

    # parcels and driver are free for a new trip
    assert create_trip(client, fleet_ids)["status"] == "pending"


def test_started_trip_cannot_be_deleted(client, fleet_ids):
    driver_id = fleet_ids["drivers"][0]
    trip = create_trip(client, fleet_ids)
    client.post(f"/trips/{trip['trip_id']}/accept", json={"driver_id": driver_id}, headers=auth(driver_id, "driver"))
    r = client.delete(f"/trips/{trip['trip_id']}", headers=MANAGER)
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_transition"


def test_sos_endpoint(client, fleet_ids):
    driver_id = fleet_ids["drivers"][0]
    trip = create_trip(client, fleet_ids)
    client.post(f"/trips/{trip['trip_id']}/accept", json={"driver_id": driver_id}, headers=auth(driver_id, "driver"))
    r = client.post(f"/trips/{trip['trip_id']}/sos", json={"sos": True, "latitude": 12.9, "longitude": 77.6},
                    headers=auth(driver_id, "driver"))
    assert r.status_code == 200
    assert r.json()["trip"]["sos"] is True

    ongoing = client.get("/ongoing-trips", headers=MANAGER).json()["ongoing"]
    assert ongoing[0]["sos"] is True
    assert ongoing[0]["last_known_location"]["address"] == "SOS Reported Location"


def test_route_estimate(client):
    r = client.post("/routing/estimate", json={"points": [{"latitude": 12.97, "longitude": 77.59},
                                                          {"latitude": 12.29, "longitude": 76.63}]},
                    headers=MANAGER)
    assert r.status_code == 200
    assert r.json()["source"] == "haversine"

    r = client.post("/routing/estimate", json={"points": [{"latitude": 12.97, "longitude": 77.59}]}, headers=MANAGER)
    assert r.status_code == 400


def test_missing_store_is_a_503(monkeypatch):
    app.dependency_overrides.clear()
    monkeypatch.setattr(database, "db", None)
    r = TestClient(app).get("/trips", headers=MANAGER)
    assert r.status_code == 503
    assert r.json()["code"] == "store_unavailable"
