"""
Notification dispatcher.

Notification documents are the durable record of trip offers to drivers and of
decline escalations to managers. Actual device delivery happens elsewhere; clients
poll these lists. Notifications only reference trips, drivers and vehicles by id and
are never cascade-deleted, so they double as an audit log.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import create_document, get_document, serialize, to_object_id, utcnow
from schemas import Notification
import statuses

logger = logging.getLogger(__name__)

COLLECTION = "notification"


def offer_expiry(now=None):
    if config.OFFER_TTL_MINUTES <= 0:
        return None
    return (now or utcnow()) + timedelta(minutes=config.OFFER_TTL_MINUTES)


def _newest_first(docs: List[dict]) -> List[dict]:
    # ObjectIds grow monotonically, which breaks ties within the same millisecond
    return sorted(docs, key=lambda n: (n.get("created_at"), n["_id"]), reverse=True)


def _destinations_payload(trip: dict) -> List[dict]:
    return [
        {
            "parcel_id": d.get("parcel_id"),
            "latitude": d.get("latitude"),
            "longitude": d.get("longitude"),
            "order": d.get("order"),
            "location_name": d.get("location_name"),
        }
        for d in trip.get("delivery_destinations", [])
    ]


class NotificationDispatcher:

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[COLLECTION]

    def create_offer(self, trip: dict, message: Optional[str] = None) -> dict:
        """One pending, unread trip_offer for the trip's current driver."""
        notification = Notification(
            type=statuses.NOTIFY_TRIP_OFFER,
            recipient_type=statuses.RECIPIENT_DRIVER,
            driver_id=trip["driver_id"],
            manager_id=trip.get("assigned_by"),
            trip_id=trip["trip_id"],
            vehicle_id=trip["vehicle_id"],
            parcel_ids=list(trip["parcel_ids"]),
            message=message or f"New trip assigned: {trip['trip_id']}",
            delivery_locations=_destinations_payload(trip),
            start_location=trip.get("start_location"),
            expires_at=trip.get("offer_expires_at"),
        )
        notification_id = create_document(self.db, COLLECTION, notification)
        logger.info(f"Trip offer {trip['trip_id']} sent to driver {trip['driver_id']}")
        return self.get(notification_id)

    def create_decline_escalation(self, trip: dict, declined_driver_id: str, reason: Optional[str] = None) -> dict:
        if reason == "expired":
            message = f"Trip {trip['trip_id']} offer expired without a response, reassign a driver"
        else:
            message = f"Driver declined trip {trip['trip_id']}, reassign a driver"
            if reason:
                message = f"{message}. Reason: {reason}"
        notification = Notification(
            type=statuses.NOTIFY_DRIVER_DECLINED,
            recipient_type=statuses.RECIPIENT_MANAGER,
            manager_id=trip.get("assigned_by"),
            declined_driver_id=declined_driver_id,
            trip_id=trip["trip_id"],
            vehicle_id=trip["vehicle_id"],
            parcel_ids=list(trip["parcel_ids"]),
            message=message,
            delivery_locations=_destinations_payload(trip),
            start_location=trip.get("start_location"),
        )
        notification_id = create_document(self.db, COLLECTION, notification)
        logger.info(f"Decline escalation for trip {trip['trip_id']} raised to manager {trip.get('assigned_by')}")
        return self.get(notification_id)

    def create_info(self, trip: dict, message: str, recipient_type: str = statuses.RECIPIENT_DRIVER) -> dict:
        notification = Notification(
            type=statuses.NOTIFY_INFO,
            recipient_type=recipient_type,
            driver_id=trip["driver_id"] if recipient_type == statuses.RECIPIENT_DRIVER else None,
            manager_id=trip.get("assigned_by"),
            trip_id=trip["trip_id"],
            vehicle_id=trip["vehicle_id"],
            parcel_ids=list(trip["parcel_ids"]),
            status=statuses.NOTIFY_RESOLVED,
            message=message,
        )
        return self.get(create_document(self.db, COLLECTION, notification))

    def settle_offers(self, trip_id: str, status: str, driver_id: Optional[str] = None) -> int:
        """Close every outstanding offer for a trip (optionally one driver's only)."""
        flt = {
            "trip_id": trip_id,
            "type": statuses.NOTIFY_TRIP_OFFER,
            "status": statuses.NOTIFY_PENDING,
        }
        if driver_id is not None:
            flt["driver_id"] = driver_id
        result = self.collection.update_many(
            flt, {"$set": {"status": status, "read": True, "updated_at": utcnow()}}
        )
        return result.modified_count

    def reopen_offers(self, trip_id: str, driver_id: str, from_status: str) -> None:
        """Undo for settle_offers."""
        self.collection.update_many(
            {"trip_id": trip_id, "driver_id": driver_id,
             "type": statuses.NOTIFY_TRIP_OFFER, "status": from_status},
            {"$set": {"status": statuses.NOTIFY_PENDING}},
        )

    def claim_escalation(self, notification_id: str) -> Optional[dict]:
        """Move a pending driver_declined escalation to resolved; None if someone beat us to it."""
        return self.collection.find_one_and_update(
            {
                "_id": to_object_id(notification_id, "Notification"),
                "type": statuses.NOTIFY_DRIVER_DECLINED,
                "status": statuses.NOTIFY_PENDING,
            },
            {"$set": {"status": statuses.NOTIFY_RESOLVED, "read": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def release_escalation(self, notification_id: str) -> None:
        self.collection.update_one(
            {"_id": to_object_id(notification_id, "Notification")},
            {"$set": {"status": statuses.NOTIFY_PENDING, "read": False}},
        )

    def resolve_escalations(self, trip_id: str) -> List[str]:
        """Close every pending driver_declined escalation for a trip. Returns their ids."""
        flt = {
            "trip_id": trip_id,
            "type": statuses.NOTIFY_DRIVER_DECLINED,
            "status": statuses.NOTIFY_PENDING,
        }
        oids = [d["_id"] for d in self.collection.find(flt, {"_id": 1})]
        if oids:
            flt["_id"] = {"$in": oids}
            self.collection.update_many(
                flt, {"$set": {"status": statuses.NOTIFY_RESOLVED, "read": True, "updated_at": utcnow()}}
            )
        return [str(oid) for oid in oids]

    def mark_read(self, notification_id: str) -> dict:
        doc = self.collection.find_one_and_update(
            {"_id": to_object_id(notification_id, "Notification")},
            {"$set": {"read": True}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return self.get(notification_id)  # raises NotFound
        return serialize(doc)

    def get(self, notification_id: str) -> dict:
        return serialize(get_document(self.db, COLLECTION, notification_id, "Notification"))

    def for_driver(self, driver_id: str, include_expired: bool = False) -> List[dict]:
        """A driver's inbox, newest first."""
        docs = list(self.collection.find({
            "driver_id": driver_id,
            "recipient_type": statuses.RECIPIENT_DRIVER,
        }))
        if not include_expired:
            now = utcnow()
            docs = [d for d in docs if d.get("expires_at") is None or d["expires_at"] > now]
        return [serialize(d) for d in _newest_first(docs)]

    def for_manager(self, manager_id: Optional[str] = None) -> List[dict]:
        """
        A manager's inbox. Pending decline escalations are actionable and always come
        first; everything else follows newest first.
        """
        flt = {"recipient_type": statuses.RECIPIENT_MANAGER}
        if manager_id is not None:
            flt["manager_id"] = manager_id
        docs = _newest_first(list(self.collection.find(flt)))
        actionable, rest = [], []
        for d in docs:
            if d["type"] == statuses.NOTIFY_DRIVER_DECLINED and d["status"] == statuses.NOTIFY_PENDING:
                actionable.append(d)
            else:
                rest.append(d)
        return [serialize(d) for d in actionable + rest]

    def unread_count(self, driver_id: str) -> int:
        flt = {
            "driver_id": driver_id,
            "recipient_type": statuses.RECIPIENT_DRIVER,
            "read": False,
            "status": statuses.NOTIFY_PENDING,
        }
        now = utcnow()
        return sum(
            1 for d in self.collection.find(flt)
            if d.get("expires_at") is None or d["expires_at"] > now
        )
