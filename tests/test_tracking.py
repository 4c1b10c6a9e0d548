import pytest
from bson import ObjectId

from errors import InvalidLocation, InvalidTransition, NotFound, ValidationFailure
from tracking import SOS_DEFAULT_ADDRESS, compute_progress, validate_coordinates


@pytest.mark.parametrize("lat, lng", [(91, 0), (-90.5, 10), (0, 180.1), (0, -181), ("north", 1), (None, 1)])
def test_coordinates_out_of_range(lat, lng):
    with pytest.raises(InvalidLocation):
        validate_coordinates(lat, lng)


def test_coordinates_on_the_edge_are_fine():
    validate_coordinates(90, 180)
    validate_coordinates(-90, -180)


def test_report_location_on_started_trip(db, tracker, started_trip):
    result = tracker.report_location(started_trip["trip_id"], 12.95, 77.58, "MG Road")
    assert result["last_known_location"]["latitude"] == 12.95
    assert result["last_known_location"]["address"] == "MG Road"
    assert result["last_known_location"]["reported_at"] is not None
    assert result["sos"] is False

    ongoing = db["ongoingtrip"].find_one({"trip_ref": started_trip["id"]})
    assert ongoing["last_known_location"]["longitude"] == 77.58


def test_report_location_is_ignored_before_start(db, tracker, offered_trip):
    assert tracker.report_location(offered_trip["trip_id"], 12.95, 77.58) is None
    assert db["ongoingtrip"].count_documents({}) == 0


def test_report_location_is_ignored_after_completion(engine, tracker, started_trip):
    for pid in started_trip["parcel_ids"]:
        tracker.update_delivery_status(started_trip["trip_id"], pid, "delivered")
    engine.complete_trip(started_trip["trip_id"])
    assert tracker.report_location(started_trip["trip_id"], 12.95, 77.58) is None


def test_report_location_validates_before_lookup(tracker):
    with pytest.raises(InvalidLocation):
        tracker.report_location("TR-MISSING", 100, 0)
    with pytest.raises(NotFound):
        tracker.report_location("TR-MISSING", 10, 0)


def test_progress_follows_deliveries(db, tracker, started_trip):
    trip_id = started_trip["trip_id"]
    first, second, third = started_trip["parcel_ids"]

    tracker.update_delivery_status(trip_id, first, "in-transit")
    assert db["parcel"].find_one({"_id": ObjectId(first)})["status"] == "In Transit"
    assert compute_progress(db["trip"].find_one({"trip_id": trip_id})) == 0.0

    trip = tracker.update_delivery_status(trip_id, first, "delivered", notes="Left at the door")
    assert compute_progress(trip) == 33.33
    dest = next(d for d in trip["delivery_destinations"] if d["parcel_id"] == first)
    assert dest["delivered_at"] is not None
    assert dest["notes"] == "Left at the door"
    assert db["parcel"].find_one({"_id": ObjectId(first)})["status"] == "Delivered"

    tracker.update_delivery_status(trip_id, second, "delivered")
    trip = tracker.update_delivery_status(trip_id, third, "delivered")
    assert compute_progress(trip) == 100.0
    assert db["ongoingtrip"].find_one({"trip_id": trip_id})["progress"] == 100.0


def test_two_of_four_delivered_is_half_way(engine, tracker, fleet):
    trip = engine.create_trip(fleet.parcels(1, 1, 1, 1), fleet.driver(), fleet.vehicle())
    trip = engine.accept_trip(trip["trip_id"], trip["driver_id"])
    tracker.update_delivery_status(trip["trip_id"], trip["parcel_ids"][0], "delivered")
    trip = tracker.update_delivery_status(trip["trip_id"], trip["parcel_ids"][1], "delivered")
    assert compute_progress(trip) == 50.0


def test_redelivering_is_a_no_op(tracker, started_trip):
    trip_id = started_trip["trip_id"]
    pid = started_trip["parcel_ids"][0]
    first = tracker.update_delivery_status(trip_id, pid, "delivered")
    again = tracker.update_delivery_status(trip_id, pid, "delivered")
    assert again["version"] == first["version"]
    with pytest.raises(InvalidTransition):
        tracker.update_delivery_status(trip_id, pid, "in-transit")


def test_delivery_update_rules(tracker, started_trip):
    with pytest.raises(ValidationFailure):
        tracker.update_delivery_status(started_trip["trip_id"], started_trip["parcel_ids"][0], "failed")
    with pytest.raises(NotFound):
        tracker.update_delivery_status(started_trip["trip_id"], str(ObjectId()), "delivered")


def test_delivery_update_needs_started_trip(tracker, offered_trip):
    with pytest.raises(InvalidTransition):
        tracker.update_delivery_status(offered_trip["trip_id"], offered_trip["parcel_ids"][0], "delivered")


def test_sos_raise_and_clear(db, tracker, started_trip):
    trip = tracker.toggle_sos(started_trip["trip_id"], True, {"latitude": 12.9, "longitude": 77.6})
    assert trip["sos"] is True
    assert trip["status"] == "in-progress"

    ongoing = db["ongoingtrip"].find_one({"trip_id": started_trip["trip_id"]})
    assert ongoing["last_known_location"]["address"] == SOS_DEFAULT_ADDRESS
    alerts = list(db["notification"].find({"trip_id": started_trip["trip_id"], "type": "info",
                                           "recipient_type": "manager"}))
    assert len(alerts) == 1
    assert "SOS raised" in alerts[0]["message"]

    # raising again does not alert twice
    tracker.toggle_sos(started_trip["trip_id"], True)
    assert db["notification"].count_documents({"type": "info", "recipient_type": "manager"}) == 1

    assert tracker.report_location(started_trip["trip_id"], 12.91, 77.61)["sos"] is True

    cleared = tracker.toggle_sos(started_trip["trip_id"], False)
    assert cleared["sos"] is False
    assert cleared["status"] == "in-progress"


def test_sos_needs_a_live_trip(tracker, offered_trip):
    with pytest.raises(InvalidTransition):
        tracker.toggle_sos(offered_trip["trip_id"], True)
    # clearing is always allowed
    assert tracker.toggle_sos(offered_trip["trip_id"], False)["sos"] is False


def test_sos_is_cleared_on_completion(engine, tracker, started_trip):
    tracker.toggle_sos(started_trip["trip_id"], True)
    for pid in started_trip["parcel_ids"]:
        tracker.update_delivery_status(started_trip["trip_id"], pid, "delivered")
    assert engine.complete_trip(started_trip["trip_id"])["sos"] is False


def test_sos_raised_as_the_trip_completes_is_rejected(db, engine, tracker, started_trip, monkeypatch):
    trip_id = started_trip["trip_id"]
    stale = db["trip"].find_one({"trip_id": trip_id})
    for pid in started_trip["parcel_ids"]:
        tracker.update_delivery_status(trip_id, pid, "delivered")
    engine.complete_trip(trip_id)

    monkeypatch.setattr(tracker.engine, "find_trip", lambda ref: stale)
    with pytest.raises(InvalidTransition):
        tracker.toggle_sos(trip_id, True, {"latitude": 12.9, "longitude": 77.6})

    trip = db["trip"].find_one({"trip_id": trip_id})
    assert trip["status"] == "completed"
    assert trip["sos"] is False
    assert db["notification"].count_documents({"type": "info", "recipient_type": "manager"}) == 0


def test_ongoing_views(tracker, started_trip):
    view = tracker.get_ongoing_trip(started_trip["trip_id"])
    assert view["trip"]["trip_id"] == started_trip["trip_id"]
    assert view["progress"] == 0.0

    listing = tracker.list_ongoing_trips()
    assert [o["trip_id"] for o in listing] == [started_trip["trip_id"]]
    assert listing[0]["status"] == "in-transit"


def test_ongoing_view_missing_before_start(tracker, offered_trip):
    with pytest.raises(NotFound):
        tracker.get_ongoing_trip(offered_trip["trip_id"])
