import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError
import jwt

import config
import database
from database import create_document, get_db, get_documents
from errors import FleetError, TransientError
from lifecycle import TripEngine
from notifications import NotificationDispatcher
from reassignment import ReassignmentResolver
from routing import RoutingClient
from schemas import Driver, Vehicle, Parcel, Location, DeliveryLocation
from tracking import ProgressTracker, compute_progress

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

security = HTTPBearer()
routing_client = RoutingClient()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a store")
    else:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as e:
            logger.error(f"Could not create indexes: {e}")
    yield


app = FastAPI(title=config.APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FleetError)
async def fleet_error_handler(request, exc: FleetError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(PyMongoError)
async def store_error_handler(request, exc: PyMongoError):
    logger.error(f"Store error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=TransientError.status_code,
        content={"detail": TransientError.default_message, "code": TransientError.code},
    )


# Auth: tokens come from the external auth service, we only verify them

def require_user(creds: HTTPAuthorizationCredentials = Depends(security)):
    token = creds.credentials
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
        return {"user_id": payload.get("sub"), "role": payload.get("role")}
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_role(current: dict, *roles: str) -> None:
    if current["role"] not in roles and current["role"] != "admin":
        raise HTTPException(status_code=403, detail="Unauthorized")


def require_self(current: dict, driver_id: str) -> None:
    """Drivers may only act for themselves; admins may act for anyone."""
    if current["role"] == "admin":
        return
    if current["role"] != "driver" or current["user_id"] != driver_id:
        raise HTTPException(status_code=403, detail="Drivers can only act on their own trips")


# Services

def get_routing() -> RoutingClient:
    return routing_client


def get_engine(db=Depends(get_db), routing: RoutingClient = Depends(get_routing)) -> TripEngine:
    return TripEngine(db, NotificationDispatcher(db), routing)


def get_tracker(engine: TripEngine = Depends(get_engine)) -> ProgressTracker:
    return ProgressTracker(engine.db, engine)


def get_resolver(engine: TripEngine = Depends(get_engine)) -> ReassignmentResolver:
    return ReassignmentResolver(engine.db, engine)


@app.get("/")
def read_root():
    return {"message": f"{config.APP_NAME} API is running"}


# Fleet records (thin CRUD, registration screens are outside this service)

class AvailabilityUpdate(BaseModel):
    is_available: bool


@app.post("/drivers")
def register_driver(payload: Driver, db=Depends(get_db), current=Depends(require_user)):
    require_role(current, "manager")
    if db["driver"].find_one({"mobile": payload.mobile}):
        raise HTTPException(status_code=400, detail="Mobile number already registered")
    data = payload.model_dump()
    # lifecycle fields are owned by the trip engine
    data.update({"driver_status": "available", "current_trip_id": None})
    driver_id = create_document(db, "driver", data)
    return {"driver_id": driver_id}


@app.get("/drivers")
def list_drivers(status: Optional[str] = None, db=Depends(get_db), current=Depends(require_user)):
    require_role(current, "manager")
    return {"drivers": get_documents(db, "driver", {"status": status} if status else {}, sort=[("name", 1)])}


@app.get("/drivers/eligible")
def eligible_drivers(exclude: Optional[str] = None, resolver: ReassignmentResolver = Depends(get_resolver),
                     current=Depends(require_user)):
    require_role(current, "manager")
    return {"drivers": resolver.list_eligible_drivers(exclude)}


@app.patch("/drivers/{driver_id}/availability")
def punch(driver_id: str, payload: AvailabilityUpdate, db=Depends(get_db), current=Depends(require_user)):
    require_self(current, driver_id)
    driver = db["driver"].find_one_and_update(
        {"_id": database.to_object_id(driver_id, "Driver")},
        {"$set": {"is_available": payload.is_available, "updated_at": database.utcnow()}},
    )
    if driver is None:
        raise HTTPException(status_code=404, detail="Driver not found")
    logger.info(f"Driver {driver_id} punched {'in' if payload.is_available else 'out'}")
    return {"ok": True, "is_available": payload.is_available}


@app.post("/vehicles")
def register_vehicle(payload: Vehicle, db=Depends(get_db), current=Depends(require_user)):
    require_role(current, "manager")
    if db["vehicle"].find_one({"reg_number": payload.reg_number}):
        raise HTTPException(status_code=400, detail="Vehicle already registered")
    data = payload.model_dump()
    data["current_trip_id"] = None
    if data["status"] == "On-trip":
        data["status"] = "Active"
    vehicle_id = create_document(db, "vehicle", data)
    return {"vehicle_id": vehicle_id}


@app.get("/vehicles")
def list_vehicles(status: Optional[str] = None, db=Depends(get_db), current=Depends(require_user)):
    require_role(current, "manager")
    return {"vehicles": get_documents(db, "vehicle", {"status": status} if status else {})}


@app.post("/parcels")
def book_parcel(payload: Parcel, db=Depends(get_db), current=Depends(require_user)):
    require_role(current, "manager")
    if db["parcel"].find_one({"tracking_id": payload.tracking_id}):
        raise HTTPException(status_code=400, detail="Tracking ID already exists")
    data = payload.model_dump()
    data.update({"status": "Booked", "trip_id": None, "assigned_driver": None, "assigned_vehicle": None})
    parcel_id = create_document(db, "parcel", data)
    return {"parcel_id": parcel_id}


@app.get("/parcels")
def list_parcels(status: Optional[str] = None, db=Depends(get_db), current=Depends(require_user)):
    require_role(current, "manager")
    return {"parcels": get_documents(db, "parcel", {"status": status} if status else {})}


@app.get("/parcels/declined")
def declined_parcels(resolver: ReassignmentResolver = Depends(get_resolver), current=Depends(require_user)):
    require_role(current, "manager")
    return {"parcels": resolver.declined_parcels()}


# Trip lifecycle

class DestinationIn(BaseModel):
    parcel_id: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    location_name: Optional[str] = None
    order: Optional[int] = None


class TripCreate(BaseModel):
    parcel_ids: List[str]
    driver_id: str
    vehicle_id: str
    start_location: Optional[Location] = None
    delivery_destinations: List[DestinationIn] = []
    notes: Optional[str] = None
    trip_id: Optional[str] = None


class TripDecision(BaseModel):
    driver_id: str
    reason: Optional[str] = None


class TripResourcesUpdate(BaseModel):
    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None


class DeliveryUpdate(BaseModel):
    delivery_status: str
    notes: Optional[str] = None


class LocationReport(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None


class SOSToggle(BaseModel):
    sos: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None


@app.post("/trips", status_code=201)
def create_trip(payload: TripCreate, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_role(current, "manager")
    return engine.create_trip(
        parcel_ids=payload.parcel_ids,
        driver_id=payload.driver_id,
        vehicle_id=payload.vehicle_id,
        start_location=payload.start_location.model_dump() if payload.start_location else None,
        destinations=[d.model_dump() for d in payload.delivery_destinations],
        assigned_by=current["user_id"],
        notes=payload.notes,
        trip_id=payload.trip_id,
    )


@app.get("/trips")
def list_trips(status: Optional[str] = None, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_role(current, "manager")
    return {"trips": engine.list_trips(status)}


@app.post("/trips/expire-offers")
def expire_offers(engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_role(current, "admin")
    expired = engine.expire_stale_offers()
    return {"expired": [t["trip_id"] for t in expired]}


@app.get("/trips/driver/{driver_id}")
def driver_trips(driver_id: str, status: Optional[str] = None, engine: TripEngine = Depends(get_engine),
                 current=Depends(require_user)):
    if current["role"] == "driver":
        require_self(current, driver_id)
    return {"trips": engine.trips_for_driver(driver_id, status)}


@app.get("/trips/driver/{driver_id}/active")
def driver_active_trip(driver_id: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    if current["role"] == "driver":
        require_self(current, driver_id)
    return engine.active_trip_for_driver(driver_id)


@app.get("/trips/{trip_ref}")
def get_trip(trip_ref: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    return engine.get_trip(trip_ref)


@app.post("/trips/{trip_ref}/accept")
def accept_trip(trip_ref: str, payload: TripDecision, engine: TripEngine = Depends(get_engine),
                current=Depends(require_user)):
    require_self(current, payload.driver_id)
    return engine.accept_trip(trip_ref, payload.driver_id)


@app.post("/trips/{trip_ref}/decline")
def decline_trip(trip_ref: str, payload: TripDecision, engine: TripEngine = Depends(get_engine),
                 current=Depends(require_user)):
    require_self(current, payload.driver_id)
    return engine.decline_trip(trip_ref, payload.driver_id, payload.reason)


@app.patch("/trips/{trip_ref}/resources")
def update_trip_resources(trip_ref: str, payload: TripResourcesUpdate, engine: TripEngine = Depends(get_engine),
                          current=Depends(require_user)):
    require_role(current, "manager")
    return engine.update_trip_resources(trip_ref, payload.driver_id, payload.vehicle_id, current["user_id"])


@app.patch("/trips/{trip_ref}/delivery/{parcel_id}")
def update_delivery(trip_ref: str, parcel_id: str, payload: DeliveryUpdate,
                    tracker: ProgressTracker = Depends(get_tracker), current=Depends(require_user)):
    require_role(current, "driver", "manager")
    if current["role"] == "driver":
        require_self(current, tracker.engine.find_trip(trip_ref)["driver_id"])
    return tracker.update_delivery_status(trip_ref, parcel_id, payload.delivery_status, payload.notes)


@app.post("/trips/{trip_ref}/complete")
def complete_trip(trip_ref: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_role(current, "driver", "manager")
    if current["role"] == "driver":
        require_self(current, engine.find_trip(trip_ref)["driver_id"])
    return engine.complete_trip(trip_ref)


@app.delete("/trips/{trip_ref}")
def delete_trip(trip_ref: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_role(current, "manager")
    deleted = engine.delete_trip(trip_ref)
    return {"message": "Trip deleted", "trip_id": deleted["trip_id"]}


@app.get("/trips/{trip_ref}/progress")
def trip_progress(trip_ref: str, tracker: ProgressTracker = Depends(get_tracker), current=Depends(require_user)):
    trip = tracker.engine.find_trip(trip_ref)
    return {"trip_id": trip["trip_id"], "progress": compute_progress(trip)}


# Live tracking (polled by driver, manager and SOS screens)

@app.post("/trips/{trip_ref}/location")
def report_location(trip_ref: str, payload: LocationReport, tracker: ProgressTracker = Depends(get_tracker),
                    current=Depends(require_user)):
    require_role(current, "driver")
    if current["role"] == "driver":
        require_self(current, tracker.engine.find_trip(trip_ref)["driver_id"])
    updated = tracker.report_location(trip_ref, payload.latitude, payload.longitude, payload.address)
    return {"accepted": updated is not None, "ongoing": updated}


@app.post("/trips/{trip_ref}/sos")
def toggle_sos(trip_ref: str, payload: SOSToggle, tracker: ProgressTracker = Depends(get_tracker),
               current=Depends(require_user)):
    require_role(current, "driver", "manager")
    if current["role"] == "driver":
        require_self(current, tracker.engine.find_trip(trip_ref)["driver_id"])
    location = None
    if payload.latitude is not None and payload.longitude is not None:
        location = {"latitude": payload.latitude, "longitude": payload.longitude, "address": payload.address}
    trip = tracker.toggle_sos(trip_ref, payload.sos, location)
    return {"message": f"SOS status updated to {payload.sos}", "trip": trip}


@app.get("/trips/{trip_ref}/ongoing")
def ongoing_trip(trip_ref: str, tracker: ProgressTracker = Depends(get_tracker), current=Depends(require_user)):
    return tracker.get_ongoing_trip(trip_ref)


@app.get("/ongoing-trips")
def ongoing_trips(tracker: ProgressTracker = Depends(get_tracker), current=Depends(require_user)):
    require_role(current, "manager")
    return {"ongoing": tracker.list_ongoing_trips()}


# Notifications

class ReassignRequest(BaseModel):
    driver_id: str


@app.get("/notifications/driver/{driver_id}")
def driver_notifications(driver_id: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_self(current, driver_id)
    # offers have no scheduler, inbox reads sweep expired ones (writes) before listing
    engine.expire_stale_offers()
    return {"notifications": engine.dispatcher.for_driver(driver_id)}


@app.get("/notifications/driver/{driver_id}/unread-count")
def driver_unread_count(driver_id: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_self(current, driver_id)
    engine.expire_stale_offers()
    return {"count": engine.dispatcher.unread_count(driver_id)}


@app.get("/notifications/manager/{manager_id}")
def manager_notifications(manager_id: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    require_role(current, "manager")
    engine.expire_stale_offers()
    return {"notifications": engine.dispatcher.for_manager(manager_id)}


@app.get("/notifications/{notification_id}")
def get_notification(notification_id: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    return engine.dispatcher.get(notification_id)


@app.patch("/notifications/{notification_id}/read")
def mark_read(notification_id: str, engine: TripEngine = Depends(get_engine), current=Depends(require_user)):
    return engine.dispatcher.mark_read(notification_id)


@app.post("/notifications/{notification_id}/reassign")
def reassign(notification_id: str, payload: ReassignRequest, resolver: ReassignmentResolver = Depends(get_resolver),
             current=Depends(require_user)):
    require_role(current, "manager")
    return resolver.reassign(notification_id, payload.driver_id, current["user_id"])


@app.post("/notifications/{notification_id}/dismiss")
def dismiss(notification_id: str, resolver: ReassignmentResolver = Depends(get_resolver),
            current=Depends(require_user)):
    require_role(current, "manager")
    return resolver.dismiss(notification_id, current["user_id"])


# Routing provider passthrough (best-effort)

class RouteRequest(BaseModel):
    points: List[DeliveryLocation]


@app.get("/routing/search")
def search_address(q: str = Query(..., min_length=2), limit: int = 5,
                   routing: RoutingClient = Depends(get_routing), current=Depends(require_user)):
    return {"results": routing.search_address(q, limit)}


@app.post("/routing/estimate")
def estimate_route(payload: RouteRequest, routing: RoutingClient = Depends(get_routing),
                   current=Depends(require_user)):
    estimate = routing.estimate_route([(p.latitude, p.longitude) for p in payload.points])
    if estimate is None:
        raise HTTPException(status_code=400, detail="At least two points are needed for a route")
    return {
        "distance_km": estimate.distance_km,
        "duration_min": estimate.duration_min,
        "geometry": estimate.geometry,
        "source": estimate.source,
    }


@app.get("/health")
def health():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": [],
    }

    if database.db is not None:
        try:
            database.db.command("ping")
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
    response["database_name"] = "✅ Set" if config.DATABASE_NAME else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
