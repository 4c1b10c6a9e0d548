"""
Location and progress tracker.

Live tracking is pull-based: the driver app posts positions and delivery events,
while manager dashboards, the SOS screen and customer tracking poll the OngoingTrip
projection. SOS is a flag laid over the trip, never a lifecycle state.
"""
import logging
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import compensating, serialize, to_object_id, utcnow
from errors import InvalidLocation, InvalidTransition, NotFound, ValidationFailure
from lifecycle import TripEngine
import statuses

logger = logging.getLogger(__name__)

SOS_DEFAULT_ADDRESS = "SOS Reported Location"


def validate_coordinates(lat, lng) -> None:
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        raise InvalidLocation("Latitude and longitude must be numbers") from None
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise InvalidLocation(f"Coordinates ({lat}, {lng}) are out of range")


def compute_progress(trip: dict) -> float:
    """Percent of the trip's parcels delivered, computed from the destinations."""
    return statuses.delivery_progress(trip.get("delivery_destinations", []))


class ProgressTracker:

    def __init__(self, db: Database, engine: Optional[TripEngine] = None):
        self.db = db
        self.engine = engine or TripEngine(db)
        self.trips = self.engine.trips
        self.parcels = self.engine.parcels
        self.ongoing = self.engine.ongoing
        self.dispatcher = self.engine.dispatcher

    def report_location(self, trip_ref: str, lat: float, lng: float, address: Optional[str] = None) -> Optional[dict]:
        """
        Record the driver's position on an in-progress trip.

        Late or duplicate reports for a trip that is no longer in progress are
        ignored and return None.
        """
        validate_coordinates(lat, lng)
        trip = self.engine.find_trip(trip_ref)
        if trip["status"] != statuses.TRIP_IN_PROGRESS:
            logger.debug(f"Ignoring location for trip {trip['trip_id']} in status {trip['status']}")
            return None

        now = utcnow()
        updated = self.ongoing.find_one_and_update(
            {"trip_ref": str(trip["_id"])},
            {"$set": {
                "last_known_location": {
                    "latitude": float(lat),
                    "longitude": float(lng),
                    "address": address,
                    "reported_at": now,
                },
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # projection already archived by a concurrent completion
            return None
        result = serialize(updated)
        result["sos"] = trip.get("sos", False)
        return result

    def update_delivery_status(self, trip_ref: str, parcel_id: str, delivery_status: str,
                               notes: Optional[str] = None) -> dict:
        """Mark one destination of an in-progress trip in-transit or delivered."""
        if delivery_status not in statuses.DESTINATION_TO_PARCEL:
            raise ValidationFailure(f"Unknown delivery status: {delivery_status}")

        trip = self.engine.find_trip(trip_ref)
        trip_id = trip["trip_id"]
        if trip["status"] != statuses.TRIP_IN_PROGRESS:
            raise InvalidTransition(f"Trip {trip_id} is {trip['status']}, deliveries can only be updated on a trip in progress")

        destinations = [dict(d) for d in trip.get("delivery_destinations", [])]
        target = next((d for d in destinations if d.get("parcel_id") == parcel_id), None)
        if target is None:
            raise NotFound("Destination not found")
        if target.get("delivery_status") == statuses.DESTINATION_DELIVERED:
            if delivery_status == statuses.DESTINATION_DELIVERED:
                return serialize(trip)
            raise InvalidTransition("This parcel is already delivered")

        now = utcnow()
        target["delivery_status"] = delivery_status
        if notes:
            target["notes"] = notes
        if delivery_status == statuses.DESTINATION_DELIVERED:
            target["delivered_at"] = now

        with compensating(f"delivery update on trip {trip_id}") as undo:
            updated = self.trips.find_one_and_update(
                {"_id": trip["_id"], "status": statuses.TRIP_IN_PROGRESS, "version": trip.get("version", 0)},
                {"$set": {"delivery_destinations": destinations, "updated_at": now}, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise InvalidTransition(f"Trip {trip_id} changed meanwhile, refresh and try again")
            undo.restore(
                self.trips, {"_id": updated["_id"], "version": updated["version"]},
                {"delivery_destinations": trip.get("delivery_destinations", [])},
            )

            parcel_oid = to_object_id(parcel_id, "Parcel")
            before = self.parcels.find_one_and_update(
                {"_id": parcel_oid, "trip_id": trip_id},
                {"$set": {"status": statuses.DESTINATION_TO_PARCEL[delivery_status], "updated_at": now}},
            )
            if before is not None:
                undo.restore(self.parcels, {"_id": parcel_oid}, {"status": before.get("status")})

            progress = compute_progress(updated)
            self.ongoing.update_one(
                {"trip_ref": str(updated["_id"])},
                {"$set": {"progress": progress, "updated_at": now}},
            )

        logger.info(f"Trip {trip_id} parcel {parcel_id} marked {delivery_status}, progress {progress}%")
        return serialize(updated)

    def toggle_sos(self, trip_ref: str, active: bool, location: Optional[dict] = None) -> dict:
        """
        Raise or clear the SOS flag. Raising needs a live trip; clearing is always
        allowed. A raised SOS with a position also moves the last known location.
        """
        trip = self.engine.find_trip(trip_ref)
        trip_id = trip["trip_id"]
        if active and trip["status"] not in statuses.LIVE_TRIP_STATUSES:
            raise InvalidTransition(f"SOS can only be raised on an active trip, trip {trip_id} is {trip['status']}")
        if active and location:
            validate_coordinates(location.get("latitude"), location.get("longitude"))

        now = utcnow()
        flt = {"_id": trip["_id"]}
        if active:
            flt["status"] = {"$in": list(statuses.LIVE_TRIP_STATUSES)}
        updated = self.trips.find_one_and_update(
            flt,
            {"$set": {"sos": bool(active), "sos_updated_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None and active:
            raise InvalidTransition(f"SOS can only be raised on an active trip, trip {trip_id} has just ended")
        if updated is None:
            raise NotFound("Trip not found")

        ongoing_update = {"updated_at": now}
        if active and location:
            ongoing_update["last_known_location"] = {
                "latitude": float(location["latitude"]),
                "longitude": float(location["longitude"]),
                "address": location.get("address") or SOS_DEFAULT_ADDRESS,
                "reported_at": now,
            }
        self.ongoing.update_one({"trip_ref": str(trip["_id"])}, {"$set": ongoing_update})

        if active and not trip.get("sos"):
            logger.warning(f"SOS raised on trip {trip_id} by driver {trip['driver_id']}")
            where = ""
            if location:
                place = location.get("address") or "{}, {}".format(location.get("latitude"), location.get("longitude"))
                where = f" at {place}"
            self.dispatcher.create_info(
                updated, f"SOS raised on trip {trip_id}{where}", recipient_type=statuses.RECIPIENT_MANAGER)
        elif not active and trip.get("sos"):
            logger.info(f"SOS cleared on trip {trip_id}")

        return serialize(updated)

    def get_ongoing_trip(self, trip_ref: str) -> dict:
        """Live tracking view: the projection joined with its trip."""
        trip = self.engine.find_trip(trip_ref)
        ongoing = self.ongoing.find_one({"trip_ref": str(trip["_id"])})
        if ongoing is None:
            raise NotFound("Ongoing trip details not found")
        result = serialize(ongoing)
        result["trip"] = serialize(trip)
        result["progress"] = compute_progress(trip)
        return result

    def list_ongoing_trips(self) -> List[dict]:
        """Accepted and in-progress trips with whatever live data exists for them."""
        trips = list(self.trips.find({"status": {"$in": list(statuses.LIVE_TRIP_STATUSES)}})
                     .sort([("assigned_at", -1), ("_id", -1)]))
        live = {o["trip_ref"]: o for o in self.ongoing.find({"trip_ref": {"$in": [str(t["_id"]) for t in trips]}})}

        results = []
        for trip in trips:
            data = live.get(str(trip["_id"]), {})
            results.append({
                "trip": serialize(trip),
                "trip_id": trip["trip_id"],
                "tracking_id": data.get("tracking_id"),
                "status": data.get("status", trip["status"]),
                "sos": trip.get("sos", False),
                "last_known_location": data.get("last_known_location"),
                "progress": compute_progress(trip),
            })
        return results
