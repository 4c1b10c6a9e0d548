"""
Reassignment resolver.

Picks up `driver_declined` escalations. A manager either re-offers the declined trip
to another eligible driver on the same vehicle, or dismisses the escalation and
returns the parcels to the booking pool.
"""
import logging
from typing import List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

from database import compensating, serialize, to_object_id, utcnow
from errors import DriverNotEligible, DriverUnavailable, InvalidTransition, NotFound
from lifecycle import TripEngine
import statuses

logger = logging.getLogger(__name__)


class ReassignmentResolver:

    def __init__(self, db: Database, engine: Optional[TripEngine] = None):
        self.db = db
        self.drivers = db["driver"]
        self.parcels = db["parcel"]
        self.engine = engine or TripEngine(db)
        self.dispatcher = self.engine.dispatcher

    def list_eligible_drivers(self, exclude_driver_id: Optional[str] = None) -> List[dict]:
        exclude = None
        if exclude_driver_id and ObjectId.is_valid(exclude_driver_id):
            exclude = ObjectId(exclude_driver_id)
        cursor = self.drivers.find(statuses.eligible_driver_filter(exclude)).sort("name", 1)
        return [serialize(d) for d in cursor]

    def reassign(self, notification_id: str, new_driver_id: str, manager_id: Optional[str] = None) -> dict:
        """
        Re-offer a declined trip to `new_driver_id`, keeping its vehicle and parcels.

        Eligibility is checked again here rather than trusted from the list the
        manager picked from, because the driver may have taken another trip since.
        """
        escalation, trip = self._pending_escalation(notification_id)
        if new_driver_id == escalation.get("declined_driver_id"):
            raise DriverNotEligible("This driver already declined the trip, pick another driver")

        driver = self.drivers.find_one({"_id": to_object_id(new_driver_id, "Driver")})
        if driver is None:
            raise NotFound("Driver not found")
        if not statuses.is_driver_eligible(driver):
            raise DriverNotEligible(f"Driver {driver.get('name')} is no longer available, pick another driver")

        claimed = self.dispatcher.claim_escalation(notification_id)
        if claimed is None:
            raise InvalidTransition("Another manager already handled this request")

        try:
            updated = self.engine.update_trip_resources(
                trip["trip_id"],
                new_driver_id=new_driver_id,
                manager_id=manager_id or escalation.get("manager_id"),
            )
        except DriverUnavailable as e:
            self.dispatcher.release_escalation(notification_id)
            raise DriverNotEligible(e.message) from e
        except Exception:
            self.dispatcher.release_escalation(notification_id)
            raise

        logger.info(f"Trip {trip['trip_id']} reassigned to driver {new_driver_id}")
        return updated

    def dismiss(self, notification_id: str, manager_id: Optional[str] = None) -> dict:
        """
        Close an escalation without reassigning. The trip stays declined, its vehicle
        is released and its parcels go back to the booking pool.
        """
        escalation, trip = self._pending_escalation(notification_id)
        trip_id = trip["trip_id"]

        claimed = self.dispatcher.claim_escalation(notification_id)
        if claimed is None:
            raise InvalidTransition("Another manager already handled this request")

        # reassigned between the check and the claim: the escalation is settled either way
        if self.engine.trips.find_one({"_id": trip["_id"], "status": statuses.TRIP_DECLINED}) is None:
            raise InvalidTransition(f"Trip {trip_id} no longer needs a new driver")

        now = utcnow()
        with compensating(f"dismiss escalation for trip {trip_id}") as undo:
            undo.record(lambda: self.dispatcher.release_escalation(notification_id))

            self.engine._release_vehicle(trip["vehicle_id"], trip_id, undo)

            pool = list(self.parcels.find({"trip_id": trip_id, "status": statuses.PARCEL_DECLINED_POOL}))
            for parcel in pool:
                self.parcels.update_one(
                    {"_id": parcel["_id"], "status": statuses.PARCEL_DECLINED_POOL},
                    {"$set": {"status": statuses.PARCEL_BOOKED, "trip_id": None,
                              "assigned_vehicle": None, "updated_at": now}},
                )
                undo.restore(
                    self.parcels, {"_id": parcel["_id"]},
                    {"status": statuses.PARCEL_DECLINED_POOL, "trip_id": trip_id,
                     "assigned_vehicle": parcel.get("assigned_vehicle")},
                )

        logger.info(
            f"Decline escalation for trip {trip_id} dismissed by manager {manager_id or 'unknown'}, "
            f"{len(pool)} parcels returned to the booking pool"
        )
        return serialize(claimed)

    def declined_parcels(self) -> List[dict]:
        """The reassignable pool, each parcel joined with the trip it was declined on."""
        parcels = list(self.parcels.find({"status": statuses.PARCEL_DECLINED_POOL}).sort("updated_at", -1))
        trip_ids = {p.get("trip_id") for p in parcels if p.get("trip_id")}
        trips = {t["trip_id"]: t for t in self.engine.trips.find({"trip_id": {"$in": list(trip_ids)}})}

        results = []
        for parcel in parcels:
            item = serialize(parcel)
            trip = trips.get(parcel.get("trip_id"))
            item["declined_driver_id"] = trip.get("declined_by") if trip else None
            item["declined_at"] = trip.get("declined_at") if trip else None
            item["assigned_vehicle"] = trip.get("vehicle_id") if trip else parcel.get("assigned_vehicle")
            results.append(item)
        return results

    def _pending_escalation(self, notification_id: str) -> Tuple[dict, dict]:
        """The escalation and its trip, provided both still call for a decision."""
        escalation = self.dispatcher.get(notification_id)
        if escalation["type"] != statuses.NOTIFY_DRIVER_DECLINED:
            raise InvalidTransition("Only declined-trip notifications can be reassigned")
        if escalation["status"] != statuses.NOTIFY_PENDING:
            raise InvalidTransition("This request has already been handled")
        trip = self.engine.trips.find_one({"trip_id": escalation["trip_id"]})
        if trip is None:
            raise InvalidTransition(f"Trip {escalation['trip_id']} has been deleted")
        if trip["status"] != statuses.TRIP_DECLINED:
            raise InvalidTransition(f"Trip {trip['trip_id']} is {trip['status']} and no longer needs a new driver")
        return escalation, trip
