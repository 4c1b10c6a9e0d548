from datetime import datetime, timedelta, timezone

import jwt
import mongomock
import pytest

import config
from database import create_document
from lifecycle import TripEngine
from notifications import NotificationDispatcher
from reassignment import ReassignmentResolver
from routing import RoutingClient
from schemas import Driver, Parcel, Vehicle
import statuses


class Fleet:
    """Seeds drivers, vehicles and parcels straight into the store."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def driver(self, name=None, **overrides):
        n = self._next()
        data = Driver(name=name or f"Driver {n}", mobile=f"07000000{n:02d}", is_available=True).model_dump()
        data.update(overrides)
        return create_document(self.db, "driver", data)

    def vehicle(self, capacity=100.0, **overrides):
        n = self._next()
        data = Vehicle(reg_number=f"KA-01-{n:04d}", model="Tata Ace", type="Van", capacity=capacity).model_dump()
        data.update(overrides)
        return create_document(self.db, "vehicle", data)

    def parcel(self, weight=1.0, lat=12.97, lng=77.59, **overrides):
        n = self._next()
        data = Parcel(
            tracking_id=f"TRK{n:05d}",
            weight=weight,
            recipient_name=f"Recipient {n}",
            delivery_location={"latitude": lat + n / 1000, "longitude": lng, "location_name": f"Stop {n}"},
        ).model_dump()
        data.update(overrides)
        return create_document(self.db, "parcel", data)

    def parcels(self, *weights):
        return [self.parcel(weight=w) for w in weights]


@pytest.fixture
def db():
    return mongomock.MongoClient().fleettrack


@pytest.fixture
def fleet(db):
    return Fleet(db)


@pytest.fixture
def routing():
    return RoutingClient(use_road_distance=False)


@pytest.fixture
def engine(db, routing):
    return TripEngine(db, NotificationDispatcher(db), routing)


@pytest.fixture
def dispatcher(engine):
    return engine.dispatcher


@pytest.fixture
def resolver(db, engine):
    return ReassignmentResolver(db, engine)


@pytest.fixture
def tracker(db, engine):
    from tracking import ProgressTracker
    return ProgressTracker(db, engine)


@pytest.fixture
def offered_trip(engine, fleet):
    """A pending trip with three parcels (2 + 3 + 1 kg) on a 10 kg vehicle."""
    driver_id = fleet.driver()
    vehicle_id = fleet.vehicle(capacity=10)
    parcel_ids = fleet.parcels(2, 3, 1)
    trip = engine.create_trip(parcel_ids, driver_id, vehicle_id,
                              start_location={"latitude": 12.9, "longitude": 77.5, "address": "Depot"},
                              assigned_by="manager-1")
    return trip


@pytest.fixture
def started_trip(engine, offered_trip):
    return engine.accept_trip(offered_trip["trip_id"], offered_trip["driver_id"])


def create_access_token(user_id: str, role: str) -> str:
    """Issue a token the API accepts; real tokens come from the identity service."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "exp": now + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": now,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def assert_fleet_invariants(db):
    """The cross-document invariants the lifecycle engine promises at all times."""
    live = list(db["trip"].find({"status": {"$in": list(statuses.LIVE_TRIP_STATUSES)}}))
    for driver in db["driver"].find({"driver_status": statuses.DRIVER_ON_TRIP}):
        refs = [t for t in live if t["driver_id"] == str(driver["_id"])]
        assert len(refs) == 1, f"driver {driver['_id']} is On-trip with {len(refs)} live trips"
    for vehicle in db["vehicle"].find({"status": statuses.VEHICLE_ON_TRIP}):
        refs = [t for t in live if t["vehicle_id"] == str(vehicle["_id"])]
        assert len(refs) == 1, f"vehicle {vehicle['_id']} is On-trip with {len(refs)} live trips"

    not_declined = list(db["trip"].find({"status": {"$ne": statuses.TRIP_DECLINED}}))
    for parcel in db["parcel"].find({"status": {"$in": list(statuses.COMMITTED_PARCEL_STATUSES)}}):
        refs = [t for t in not_declined if str(parcel["_id"]) in t["parcel_ids"]]
        assert len(refs) == 1, f"parcel {parcel['_id']} is {parcel['status']} on {len(refs)} trips"
