"""
Trip lifecycle engine.

Owns every trip transition and keeps the driver, vehicle and parcel statuses in step
with it. Driver `driver_status`, vehicle `status` and the `current_trip_id`
reservations are projections of trip state and are written only from here.

Contended writes are conditional updates that filter on the expected prior state.
A lost race surfaces as a typed error and never as a lost update. Transitions that
touch several documents run inside `compensating()`, so a failure partway through
replays the inverse writes before the error propagates.
"""
import logging
import uuid
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import (
    compensating, create_document, get_document, serialize, to_object_id, utcnow,
)
from errors import (
    AssignmentError, DriverUnavailable, IncompleteDelivery, InvalidDestination,
    InvalidTransition, NotFound, ParcelAlreadyAssigned, ValidationFailure,
    VehicleInsufficientCapacity, VehicleUnavailable,
)
from notifications import NotificationDispatcher, offer_expiry
from routing import RoutingClient
from schemas import DeliveryDestination, OngoingTrip, Trip
import statuses

logger = logging.getLogger(__name__)


def generate_trip_id() -> str:
    return f"TR-{uuid.uuid4().hex[:8].upper()}"


class TripEngine:

    def __init__(self, db: Database, dispatcher: Optional[NotificationDispatcher] = None,
                 routing: Optional[RoutingClient] = None):
        self.db = db
        self.trips = db["trip"]
        self.drivers = db["driver"]
        self.vehicles = db["vehicle"]
        self.parcels = db["parcel"]
        self.ongoing = db["ongoingtrip"]
        self.archive = db["ongoingtriparchive"]
        self.dispatcher = dispatcher or NotificationDispatcher(db)
        self.routing = routing or RoutingClient()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_trip(self, trip_ref: str) -> dict:
        """Raw trip document by Mongo id or human-readable trip id."""
        if isinstance(trip_ref, ObjectId) or ObjectId.is_valid(str(trip_ref)):
            trip = self.trips.find_one({"_id": ObjectId(str(trip_ref))})
        else:
            trip = self.trips.find_one({"trip_id": trip_ref})
        if trip is None:
            raise NotFound("Trip not found")
        return trip

    def get_trip(self, trip_ref: str) -> dict:
        return serialize(self.find_trip(trip_ref))

    def list_trips(self, status: Optional[str] = None) -> List[dict]:
        flt = {"status": status} if status else {}
        return [serialize(t) for t in self.trips.find(flt).sort([("created_at", -1), ("_id", -1)])]

    def trips_for_driver(self, driver_id: str, status: Optional[str] = None) -> List[dict]:
        flt = {"driver_id": driver_id}
        if status:
            flt["status"] = status
        return [serialize(t) for t in self.trips.find(flt).sort([("created_at", -1), ("_id", -1)])]

    def active_trip_for_driver(self, driver_id: str) -> dict:
        trip = self.trips.find_one({
            "driver_id": driver_id,
            "status": {"$in": list(statuses.LIVE_TRIP_STATUSES)},
        })
        if trip is None:
            raise NotFound("No active trip found")
        return serialize(trip)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_trip(self, parcel_ids: List[str], driver_id: str, vehicle_id: str,
                    start_location: Optional[dict] = None, destinations: Optional[List[dict]] = None,
                    assigned_by: Optional[str] = None, notes: Optional[str] = None,
                    trip_id: Optional[str] = None) -> dict:
        """
        Bundle parcels into a trip and offer it to a driver.

        The driver and vehicle are reserved, not committed: the driver becomes
        `pending` and the vehicle holds `current_trip_id`. Only acceptance marks
        them On-trip, so a declined offer leaves no stale On-trip state behind.
        """
        if not parcel_ids:
            raise AssignmentError("Select at least one parcel for the trip")
        if len(set(parcel_ids)) != len(parcel_ids):
            raise AssignmentError("The same parcel was selected more than once")

        parcels = self._load_parcels(parcel_ids)
        for parcel in parcels:
            if parcel.get("status") not in statuses.UNASSIGNED_PARCEL_STATUSES:
                raise ParcelAlreadyAssigned(
                    f"Parcel {parcel.get('tracking_id')} is already assigned to trip {parcel.get('trip_id')}"
                )
        total_weight = round(sum(float(p.get("weight") or 0) for p in parcels), 3)

        vehicle = get_document(self.db, "vehicle", vehicle_id, "Vehicle")
        self._check_vehicle(vehicle, total_weight)

        driver = get_document(self.db, "driver", driver_id, "Driver")
        if not statuses.is_driver_eligible(driver):
            raise DriverUnavailable(f"Driver {driver.get('name')} is not available for a new trip")

        trip_id = trip_id or generate_trip_id()
        if self.trips.find_one({"trip_id": trip_id}):
            raise ValidationFailure(f"Trip with ID {trip_id} already exists")

        dests = self._build_destinations(parcels, destinations or [])
        estimate = self._estimate(start_location, dests)
        now = utcnow()

        trip = Trip(
            trip_id=trip_id,
            driver_id=str(driver["_id"]),
            vehicle_id=str(vehicle["_id"]),
            parcel_ids=[str(p["_id"]) for p in parcels],
            delivery_destinations=dests,
            start_location=start_location,
            assigned_by=assigned_by,
            assigned_at=now,
            offer_expires_at=offer_expiry(now),
            total_weight=total_weight,
            total_distance=estimate.distance_km if estimate else None,
            estimated_duration=estimate.duration_min if estimate else None,
            route_source=estimate.source if estimate else None,
            notes=notes,
        )

        with compensating(f"create trip {trip_id}") as undo:
            self._reserve_driver(driver["_id"], trip_id, undo)
            self._reserve_vehicle(vehicle["_id"], trip_id, undo)
            self._claim_parcels(parcels, trip, undo)

            trip_oid = ObjectId(create_document(self.db, "trip", trip))
            undo.delete(self.trips, trip_oid)

            trip_doc = self.trips.find_one({"_id": trip_oid})
            offer = self.dispatcher.create_offer(trip_doc)
            undo.delete(self.dispatcher.collection, ObjectId(offer["id"]))

        logger.info(
            f"Trip {trip_id} created with {len(parcels)} parcels ({total_weight} kg), "
            f"offered to driver {trip.driver_id} on vehicle {trip.vehicle_id}"
        )
        return serialize(trip_doc)

    # ------------------------------------------------------------------
    # Driver answers
    # ------------------------------------------------------------------

    def accept_trip(self, trip_ref: str, driver_id: str) -> dict:
        """
        Accept a pending offer. Acceptance starts the trip straight away, so the
        trip goes pending -> accepted -> in-progress in one conditional update.
        Accepting again is a no-op.
        """
        trip = self.find_trip(trip_ref)
        self._ensure_offered_to(trip, driver_id)

        if trip["status"] in statuses.LIVE_TRIP_STATUSES:
            return serialize(trip)

        statuses.validate_trip_transition(trip["status"], statuses.TRIP_ACCEPTED)
        statuses.validate_trip_transition(statuses.TRIP_ACCEPTED, statuses.TRIP_IN_PROGRESS)

        now = utcnow()
        expires_at = trip.get("offer_expires_at")
        if expires_at is not None and expires_at <= now:
            self._decline(trip, reason="expired")
            raise InvalidTransition(f"The offer for trip {trip['trip_id']} has expired")

        accepted = self.trips.find_one_and_update(
            {"_id": trip["_id"], "status": statuses.TRIP_PENDING, "driver_id": driver_id},
            {
                "$set": {
                    "status": statuses.TRIP_IN_PROGRESS,
                    "accepted_at": now,
                    "started_at": now,
                    "offer_expires_at": None,
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if accepted is None:
            current = self.find_trip(trip["_id"])
            if current["status"] in statuses.LIVE_TRIP_STATUSES and current["driver_id"] == driver_id:
                return serialize(current)
            raise InvalidTransition(f"Trip {trip['trip_id']} is no longer waiting for your answer")

        trip_id = accepted["trip_id"]
        with compensating(f"accept trip {trip_id}") as undo:
            undo.restore(
                self.trips,
                {"_id": accepted["_id"], "version": accepted["version"]},
                {"status": statuses.TRIP_PENDING, "accepted_at": None, "started_at": None,
                 "offer_expires_at": expires_at},
            )

            driver = self.drivers.find_one_and_update(
                {"_id": to_object_id(driver_id, "Driver"), "driver_status": statuses.DRIVER_PENDING,
                 "current_trip_id": trip_id},
                {"$set": {"driver_status": statuses.DRIVER_ON_TRIP, "updated_at": now}},
            )
            if driver is None:
                raise DriverUnavailable("Driver no longer holds this trip offer")
            undo.restore(self.drivers, {"_id": driver["_id"]}, {"driver_status": statuses.DRIVER_PENDING})

            vehicle = self.vehicles.find_one_and_update(
                {"_id": to_object_id(accepted["vehicle_id"], "Vehicle"), "status": statuses.VEHICLE_ACTIVE,
                 "current_trip_id": trip_id},
                {"$set": {"status": statuses.VEHICLE_ON_TRIP, "updated_at": now}},
            )
            if vehicle is None:
                raise VehicleUnavailable("The vehicle for this trip is no longer available")
            undo.restore(self.vehicles, {"_id": vehicle["_id"]}, {"status": statuses.VEHICLE_ACTIVE})

            self.parcels.update_many(
                {"trip_id": trip_id, "status": statuses.PARCEL_PENDING},
                {"$set": {"status": statuses.PARCEL_CONFIRMED, "updated_at": now}},
            )
            undo.restore(
                self.parcels,
                {"trip_id": trip_id, "status": statuses.PARCEL_CONFIRMED},
                {"status": statuses.PARCEL_PENDING},
            )

            self._open_ongoing_trip(accepted, undo)

            self.dispatcher.settle_offers(trip_id, statuses.NOTIFY_ACCEPTED, driver_id)
            undo.record(lambda: self.dispatcher.reopen_offers(trip_id, driver_id, statuses.NOTIFY_ACCEPTED))

        logger.info(f"Trip {trip_id} accepted by driver {driver_id} and started")
        return serialize(accepted)

    def decline_trip(self, trip_ref: str, driver_id: str, reason: Optional[str] = None) -> dict:
        trip = self.find_trip(trip_ref)
        self._ensure_offered_to(trip, driver_id)
        return self._decline(trip, reason=reason)

    def expire_stale_offers(self, now=None) -> List[dict]:
        """Auto-decline pending offers whose answer window has passed."""
        now = now or utcnow()
        expired = []
        stale = self.trips.find({
            "status": statuses.TRIP_PENDING,
            "offer_expires_at": {"$ne": None, "$lte": now},
        })
        for trip in list(stale):
            try:
                expired.append(self._decline(trip, reason="expired"))
            except InvalidTransition:
                # answered between the query and the decline
                continue
        if expired:
            logger.info(f"Expired {len(expired)} unanswered trip offers")
        return expired

    def _decline(self, trip: dict, reason: Optional[str] = None) -> dict:
        statuses.validate_trip_transition(trip["status"], statuses.TRIP_DECLINED)
        now = utcnow()
        trip_id = trip["trip_id"]
        driver_id = trip["driver_id"]

        declined = self.trips.find_one_and_update(
            {"_id": trip["_id"], "status": statuses.TRIP_PENDING, "driver_id": driver_id},
            {
                "$set": {
                    "status": statuses.TRIP_DECLINED,
                    "declined_at": now,
                    "declined_by": driver_id,
                    "decline_reason": reason,
                    "offer_expires_at": None,
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if declined is None:
            raise InvalidTransition(f"Trip {trip_id} is no longer waiting for an answer")

        with compensating(f"decline trip {trip_id}") as undo:
            undo.restore(
                self.trips,
                {"_id": declined["_id"], "version": declined["version"]},
                {"status": statuses.TRIP_PENDING, "declined_at": None, "declined_by": None,
                 "decline_reason": None, "offer_expires_at": trip.get("offer_expires_at")},
            )

            self.parcels.update_many(
                {"trip_id": trip_id, "status": statuses.PARCEL_PENDING},
                {"$set": {"status": statuses.PARCEL_DECLINED_POOL, "assigned_driver": None, "updated_at": now}},
            )
            undo.restore(
                self.parcels,
                {"trip_id": trip_id, "status": statuses.PARCEL_DECLINED_POOL},
                {"status": statuses.PARCEL_PENDING, "assigned_driver": driver_id},
            )

            self._release_driver(driver_id, trip_id, undo)

            self.dispatcher.settle_offers(trip_id, statuses.NOTIFY_DECLINED, driver_id)
            undo.record(lambda: self.dispatcher.reopen_offers(trip_id, driver_id, statuses.NOTIFY_DECLINED))

            escalation = self.dispatcher.create_decline_escalation(declined, driver_id, reason)
            undo.delete(self.dispatcher.collection, ObjectId(escalation["id"]))

        logger.info(f"Trip {trip_id} declined by driver {driver_id}" + (f" ({reason})" if reason else ""))
        return serialize(declined)

    # ------------------------------------------------------------------
    # Manager edits
    # ------------------------------------------------------------------

    def update_trip_resources(self, trip_ref: str, new_driver_id: Optional[str] = None,
                              new_vehicle_id: Optional[str] = None,
                              manager_id: Optional[str] = None) -> dict:
        """
        Swap the driver and/or vehicle on a trip that has not started.

        A new driver demotes the trip to `pending` and gets a fresh offer. A new
        vehicle alone leaves the status untouched and informs the current driver.
        """
        trip = self.find_trip(trip_ref)
        trip_id = trip["trip_id"]
        if trip["status"] not in statuses.EDITABLE_TRIP_STATUSES:
            raise InvalidTransition(f"Trip {trip_id} is {trip['status']} and can no longer be edited")

        driver_changed = bool(new_driver_id) and new_driver_id != trip["driver_id"]
        vehicle_changed = bool(new_vehicle_id) and new_vehicle_id != trip["vehicle_id"]
        if not driver_changed and not vehicle_changed:
            return serialize(trip)

        vehicle = None
        if vehicle_changed:
            vehicle = get_document(self.db, "vehicle", new_vehicle_id, "Vehicle")
            self._check_vehicle(vehicle, float(trip.get("total_weight") or 0))
        if driver_changed:
            driver = get_document(self.db, "driver", new_driver_id, "Driver")
            if not statuses.is_driver_eligible(driver):
                raise DriverUnavailable(f"Driver {driver.get('name')} is not available for a new trip")
            if trip["status"] == statuses.TRIP_DECLINED:
                statuses.validate_trip_transition(statuses.TRIP_DECLINED, statuses.TRIP_PENDING)

        now = utcnow()
        changes = {"updated_at": now}
        previous = {}
        if vehicle_changed:
            changes["vehicle_id"] = new_vehicle_id
            previous["vehicle_id"] = trip["vehicle_id"]
        if driver_changed:
            changes.update({
                "driver_id": new_driver_id,
                "status": statuses.TRIP_PENDING,
                "assigned_at": now,
                "offer_expires_at": offer_expiry(now),
                "assigned_by": manager_id or trip.get("assigned_by"),
            })
            previous.update({
                "driver_id": trip["driver_id"],
                "status": trip["status"],
                "assigned_at": trip.get("assigned_at"),
                "offer_expires_at": trip.get("offer_expires_at"),
                "assigned_by": trip.get("assigned_by"),
            })

        with compensating(f"update resources of trip {trip_id}") as undo:
            updated = self.trips.find_one_and_update(
                {"_id": trip["_id"], "status": trip["status"], "version": trip.get("version", 0)},
                {"$set": changes, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise InvalidTransition(f"Trip {trip_id} was changed by someone else, refresh and try again")
            undo.restore(self.trips, {"_id": updated["_id"], "version": updated["version"]}, previous)

            if vehicle_changed:
                self._reserve_vehicle(vehicle["_id"], trip_id, undo)
                self._release_vehicle(trip["vehicle_id"], trip_id, undo)
                self.parcels.update_many({"trip_id": trip_id}, {"$set": {"assigned_vehicle": new_vehicle_id}})
                undo.restore(self.parcels, {"trip_id": trip_id}, {"assigned_vehicle": trip["vehicle_id"]})
            elif driver_changed:
                # a dismissed escalation may have released the vehicle
                self._reserve_vehicle(to_object_id(trip["vehicle_id"], "Vehicle"), trip_id, undo)

            if driver_changed:
                self._reserve_driver(to_object_id(new_driver_id, "Driver"), trip_id, undo)
                if trip["status"] == statuses.TRIP_PENDING:
                    self._release_driver(trip["driver_id"], trip_id, undo)
                else:
                    self._reclaim_declined_parcels(updated, undo)
                    for escalation_id in self.dispatcher.resolve_escalations(trip_id):
                        undo.record(lambda nid=escalation_id: self.dispatcher.release_escalation(nid))
                self.parcels.update_many({"trip_id": trip_id}, {"$set": {"assigned_driver": new_driver_id}})

                self.dispatcher.settle_offers(trip_id, statuses.NOTIFY_RESOLVED)
                undo.record(lambda: self.dispatcher.reopen_offers(
                    trip_id, trip["driver_id"], statuses.NOTIFY_RESOLVED))

                reg = self._vehicle_label(updated["vehicle_id"])
                offer = self.dispatcher.create_offer(
                    updated, message=f"Trip {trip_id} has been reassigned to you. Vehicle: {reg}")
                undo.delete(self.dispatcher.collection, ObjectId(offer["id"]))
            elif trip["status"] == statuses.TRIP_PENDING:
                reg = self._vehicle_label(new_vehicle_id)
                info = self.dispatcher.create_info(
                    updated, f"Trip {trip_id} vehicle has been updated. New vehicle: {reg}")
                undo.delete(self.dispatcher.collection, ObjectId(info["id"]))

        logger.info(
            f"Trip {trip_id} resources updated"
            + (f", driver {trip['driver_id']} -> {new_driver_id}" if driver_changed else "")
            + (f", vehicle {trip['vehicle_id']} -> {new_vehicle_id}" if vehicle_changed else "")
        )
        return serialize(updated)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete_trip(self, trip_ref: str) -> dict:
        trip = self.find_trip(trip_ref)
        trip_id = trip["trip_id"]
        statuses.validate_trip_transition(trip["status"], statuses.TRIP_COMPLETED)

        destinations = trip.get("delivery_destinations", [])
        if not statuses.all_delivered(destinations):
            remaining = sum(1 for d in destinations if d.get("delivery_status") != statuses.DESTINATION_DELIVERED)
            raise IncompleteDelivery(
                f"{remaining} of {len(destinations)} parcels on trip {trip_id} are not delivered yet"
            )

        now = utcnow()
        completed = self.trips.find_one_and_update(
            {"_id": trip["_id"], "status": statuses.TRIP_IN_PROGRESS, "version": trip.get("version", 0)},
            {"$set": {"status": statuses.TRIP_COMPLETED, "completed_at": now, "sos": False, "updated_at": now},
             "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if completed is None:
            raise InvalidTransition(f"Trip {trip_id} changed while completing, refresh and try again")

        with compensating(f"complete trip {trip_id}") as undo:
            undo.restore(
                self.trips,
                {"_id": completed["_id"], "version": completed["version"]},
                {"status": statuses.TRIP_IN_PROGRESS, "completed_at": None, "sos": trip.get("sos", False)},
            )

            if ObjectId.is_valid(trip["driver_id"]):
                result = self.drivers.update_one(
                    {"_id": ObjectId(trip["driver_id"]), "current_trip_id": trip_id},
                    {"$set": {"driver_status": statuses.DRIVER_AVAILABLE, "current_trip_id": None,
                              "updated_at": now}},
                )
                if result.modified_count:
                    undo.restore(self.drivers, {"_id": ObjectId(trip["driver_id"])},
                                 {"driver_status": statuses.DRIVER_ON_TRIP, "current_trip_id": trip_id})

            if ObjectId.is_valid(trip["vehicle_id"]):
                result = self.vehicles.update_one(
                    {"_id": ObjectId(trip["vehicle_id"]), "current_trip_id": trip_id},
                    {"$set": {"status": statuses.VEHICLE_ACTIVE, "current_trip_id": None, "updated_at": now}},
                )
                if result.modified_count:
                    undo.restore(self.vehicles, {"_id": ObjectId(trip["vehicle_id"])},
                                 {"status": statuses.VEHICLE_ON_TRIP, "current_trip_id": trip_id})

            for parcel in self.parcels.find({"trip_id": trip_id, "status": {"$ne": statuses.PARCEL_DELIVERED}}):
                self.parcels.update_one({"_id": parcel["_id"]},
                                        {"$set": {"status": statuses.PARCEL_DELIVERED, "updated_at": now}})
                undo.restore(self.parcels, {"_id": parcel["_id"]}, {"status": parcel["status"]})

            self._archive_ongoing_trip(completed, undo)

        logger.info(f"Trip {trip_id} completed")
        return serialize(completed)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_trip(self, trip_ref: str) -> dict:
        """
        Remove a trip that is not on the road. Reservations held by a pending or
        declined trip are released and its parcels go back to booking. Notifications
        are kept; open offers and escalations for the trip are resolved.
        """
        trip = self.find_trip(trip_ref)
        trip_id = trip["trip_id"]
        if trip["status"] in statuses.LIVE_TRIP_STATUSES:
            raise InvalidTransition(f"Trip {trip_id} is {trip['status']}, complete it before deleting")

        deleted = self.trips.find_one_and_delete(
            {"_id": trip["_id"], "status": trip["status"], "version": trip.get("version", 0)}
        )
        if deleted is None:
            raise InvalidTransition(f"Trip {trip_id} was changed by someone else, refresh and try again")

        released = 0
        with compensating(f"delete trip {trip_id}") as undo:
            undo.record(lambda: self.trips.insert_one(deleted))
            if deleted["status"] in statuses.EDITABLE_TRIP_STATUSES:
                self._release_driver(deleted["driver_id"], trip_id, undo)
                self._release_vehicle(deleted["vehicle_id"], trip_id, undo)

                now = utcnow()
                held = list(self.parcels.find({
                    "trip_id": trip_id,
                    "status": {"$in": [statuses.PARCEL_PENDING, statuses.PARCEL_DECLINED_POOL]},
                }))
                for parcel in held:
                    self.parcels.update_one(
                        {"_id": parcel["_id"], "status": parcel["status"]},
                        {"$set": {"status": statuses.PARCEL_BOOKED, "trip_id": None, "assigned_driver": None,
                                  "assigned_vehicle": None, "updated_at": now}},
                    )
                    undo.restore(
                        self.parcels, {"_id": parcel["_id"]},
                        {"status": parcel["status"], "trip_id": trip_id,
                         "assigned_driver": parcel.get("assigned_driver"),
                         "assigned_vehicle": parcel.get("assigned_vehicle")},
                    )
                released = len(held)

                if self.dispatcher.settle_offers(trip_id, statuses.NOTIFY_RESOLVED):
                    undo.record(lambda: self.dispatcher.reopen_offers(
                        trip_id, deleted["driver_id"], statuses.NOTIFY_RESOLVED))
                for escalation_id in self.dispatcher.resolve_escalations(trip_id):
                    undo.record(lambda nid=escalation_id: self.dispatcher.release_escalation(nid))

        logger.info(f"Trip {trip_id} ({deleted['status']}) deleted, {released} parcels returned to booking")
        return serialize(deleted)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_offered_to(self, trip: dict, driver_id: str) -> None:
        if trip["driver_id"] != driver_id:
            raise InvalidTransition(f"Trip {trip['trip_id']} is not assigned to this driver")

    def _load_parcels(self, parcel_ids: List[str]) -> List[dict]:
        oids = [to_object_id(pid, "Parcel") for pid in parcel_ids]
        found = {p["_id"]: p for p in self.parcels.find({"_id": {"$in": oids}})}
        missing = [str(oid) for oid in oids if oid not in found]
        if missing:
            raise NotFound(f"Parcel not found: {', '.join(missing)}")
        return [found[oid] for oid in oids]

    def _check_vehicle(self, vehicle: dict, total_weight: float, trip_id: Optional[str] = None) -> None:
        reg = vehicle.get("reg_number")
        if vehicle.get("status") != statuses.VEHICLE_ACTIVE:
            raise VehicleUnavailable(f"Vehicle {reg} is {vehicle.get('status')}")
        if not statuses.is_vehicle_assignable(vehicle, trip_id):
            raise VehicleUnavailable(f"Vehicle {reg} is already reserved for trip {vehicle.get('current_trip_id')}")
        capacity = float(vehicle.get("capacity") or 0)
        if capacity < total_weight:
            raise VehicleInsufficientCapacity(
                f"Vehicle {reg} carries {capacity:g} kg but the parcels weigh {total_weight:g} kg"
            )

    def _vehicle_label(self, vehicle_id: str) -> str:
        vehicle = self.vehicles.find_one({"_id": ObjectId(vehicle_id)}) if ObjectId.is_valid(vehicle_id) else None
        return vehicle.get("reg_number", "N/A") if vehicle else "N/A"

    def _build_destinations(self, parcels: List[dict], destinations: List[dict]) -> List[dict]:
        by_parcel = {}
        parcel_ids = {str(p["_id"]) for p in parcels}
        for dest in destinations:
            pid = str(dest.get("parcel_id"))
            if pid not in parcel_ids:
                raise InvalidDestination(f"Destination refers to parcel {pid} which is not on this trip")
            if pid in by_parcel:
                raise InvalidDestination(f"Parcel {pid} has more than one destination")
            by_parcel[pid] = dest

        built = []
        for index, parcel in enumerate(parcels):
            pid = str(parcel["_id"])
            dest = by_parcel.get(pid) or parcel.get("delivery_location")
            if not dest or dest.get("latitude") is None or dest.get("longitude") is None:
                raise InvalidDestination(f"Parcel {parcel.get('tracking_id')} has no delivery destination")
            built.append(DeliveryDestination(
                parcel_id=pid,
                latitude=dest["latitude"],
                longitude=dest["longitude"],
                location_name=dest.get("location_name") or parcel.get("recipient_name") or parcel.get("tracking_id"),
                order=dest.get("order") if dest.get("order") is not None else index + 1,
            ).model_dump())
        built.sort(key=lambda d: d["order"])
        return built

    def _estimate(self, start_location: Optional[dict], destinations: List[dict]):
        points = [(d["latitude"], d["longitude"]) for d in destinations]
        if start_location and start_location.get("latitude") is not None:
            points.insert(0, (start_location["latitude"], start_location["longitude"]))
        try:
            return self.routing.estimate_route(points)
        except Exception as e:
            # routing is best-effort and must never block an assignment
            logger.warning(f"Route estimate failed: {e}")
            return None

    def _reserve_driver(self, driver_oid: ObjectId, trip_id: str, undo) -> None:
        flt = statuses.eligible_driver_filter()
        flt["_id"] = driver_oid
        reserved = self.drivers.find_one_and_update(
            flt,
            {"$set": {"driver_status": statuses.DRIVER_PENDING, "current_trip_id": trip_id,
                      "updated_at": utcnow()}},
        )
        if reserved is None:
            raise DriverUnavailable("Driver was just assigned to another trip or went off duty")
        undo.restore(
            self.drivers,
            {"_id": driver_oid, "current_trip_id": trip_id},
            {"driver_status": statuses.DRIVER_AVAILABLE, "current_trip_id": None},
        )

    def _release_driver(self, driver_id: str, trip_id: str, undo=None) -> None:
        if not ObjectId.is_valid(driver_id):
            return
        oid = ObjectId(driver_id)
        result = self.drivers.update_one(
            {"_id": oid, "driver_status": statuses.DRIVER_PENDING, "current_trip_id": trip_id},
            {"$set": {"driver_status": statuses.DRIVER_AVAILABLE, "current_trip_id": None,
                      "updated_at": utcnow()}},
        )
        if result.modified_count and undo is not None:
            undo.restore(
                self.drivers,
                {"_id": oid, "driver_status": statuses.DRIVER_AVAILABLE, "current_trip_id": None},
                {"driver_status": statuses.DRIVER_PENDING, "current_trip_id": trip_id},
            )

    def _reserve_vehicle(self, vehicle_oid: ObjectId, trip_id: str, undo) -> None:
        before = self.vehicles.find_one_and_update(
            {"_id": vehicle_oid, "status": statuses.VEHICLE_ACTIVE,
             "current_trip_id": {"$in": [None, trip_id]}},
            {"$set": {"current_trip_id": trip_id, "updated_at": utcnow()}},
        )
        if before is None:
            raise VehicleUnavailable("Vehicle was just reserved for another trip or taken out of service")
        if before.get("current_trip_id") is None:
            undo.restore(self.vehicles, {"_id": vehicle_oid, "current_trip_id": trip_id}, {"current_trip_id": None})

    def _release_vehicle(self, vehicle_id: str, trip_id: str, undo=None) -> None:
        if not ObjectId.is_valid(vehicle_id):
            return
        oid = ObjectId(vehicle_id)
        result = self.vehicles.update_one(
            {"_id": oid, "status": statuses.VEHICLE_ACTIVE, "current_trip_id": trip_id},
            {"$set": {"current_trip_id": None, "updated_at": utcnow()}},
        )
        if result.modified_count and undo is not None:
            undo.restore(self.vehicles, {"_id": oid, "current_trip_id": None}, {"current_trip_id": trip_id})

    def _claim_parcels(self, parcels: List[dict], trip: Trip, undo) -> None:
        locations = {d.parcel_id: d for d in trip.delivery_destinations}
        now = utcnow()
        for parcel in parcels:
            pid = str(parcel["_id"])
            dest = locations[pid]
            before = self.parcels.find_one_and_update(
                {"_id": parcel["_id"], "status": {"$in": list(statuses.UNASSIGNED_PARCEL_STATUSES)}},
                {"$set": {
                    "status": statuses.PARCEL_PENDING,
                    "trip_id": trip.trip_id,
                    "assigned_driver": trip.driver_id,
                    "assigned_vehicle": trip.vehicle_id,
                    "delivery_location": {
                        "latitude": dest.latitude,
                        "longitude": dest.longitude,
                        "order": dest.order,
                        "location_name": dest.location_name,
                    },
                    "updated_at": now,
                }},
            )
            if before is None:
                raise ParcelAlreadyAssigned(
                    f"Parcel {parcel.get('tracking_id')} was just assigned to another trip"
                )
            undo.restore(
                self.parcels,
                {"_id": parcel["_id"], "trip_id": trip.trip_id},
                {
                    "status": before.get("status"),
                    "trip_id": before.get("trip_id"),
                    "assigned_driver": before.get("assigned_driver"),
                    "assigned_vehicle": before.get("assigned_vehicle"),
                    "delivery_location": before.get("delivery_location"),
                },
            )

    def _reclaim_declined_parcels(self, trip: dict, undo) -> None:
        """Pull a declined trip's parcels back out of the declined pool."""
        trip_id = trip["trip_id"]
        oids = [to_object_id(pid, "Parcel") for pid in trip["parcel_ids"]]
        result = self.parcels.update_many(
            {"_id": {"$in": oids}, "trip_id": trip_id, "status": statuses.PARCEL_DECLINED_POOL},
            {"$set": {"status": statuses.PARCEL_PENDING, "updated_at": utcnow()}},
        )
        undo.restore(
            self.parcels,
            {"_id": {"$in": oids}, "trip_id": trip_id, "status": statuses.PARCEL_PENDING},
            {"status": statuses.PARCEL_DECLINED_POOL},
        )
        if result.modified_count != len(oids):
            raise ParcelAlreadyAssigned(
                f"Some parcels of trip {trip_id} were put on another trip, create a new trip instead"
            )

    def _open_ongoing_trip(self, trip: dict, undo) -> None:
        trip_ref = str(trip["_id"])
        first_parcel = None
        if trip.get("parcel_ids"):
            first_parcel = self.parcels.find_one({"_id": to_object_id(trip["parcel_ids"][0], "Parcel")})
        ongoing = OngoingTrip(
            trip_ref=trip_ref,
            trip_id=trip["trip_id"],
            tracking_id=first_parcel.get("tracking_id") if first_parcel else None,
            driver_id=trip["driver_id"],
            vehicle_id=trip["vehicle_id"],
            status=statuses.ONGOING_IN_TRANSIT,
            started_at=trip.get("started_at"),
            progress=statuses.delivery_progress(trip.get("delivery_destinations", [])),
        ).model_dump()
        now = utcnow()
        ongoing["created_at"] = now
        ongoing["updated_at"] = now
        result = self.ongoing.update_one({"trip_ref": trip_ref}, {"$setOnInsert": ongoing}, upsert=True)
        if result.upserted_id is not None:
            undo.delete(self.ongoing, result.upserted_id)

    def _archive_ongoing_trip(self, trip: dict, undo) -> None:
        live = self.ongoing.find_one({"trip_ref": str(trip["_id"])})
        if live is None:
            return
        archived = dict(live)
        archived["status"] = trip["status"]
        archived["archived_at"] = utcnow()
        self.archive.insert_one(archived)
        undo.delete(self.archive, archived["_id"])
        self.ongoing.delete_one({"_id": live["_id"]})
        undo.record(lambda: self.ongoing.insert_one(live))
