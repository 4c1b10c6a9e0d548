"""
FleetTrack Database Schemas

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
"""
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime


# Embedded values
class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None


class DeliveryLocation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    order: Optional[int] = None
    location_name: Optional[str] = None


class DeliveryDestination(BaseModel):
    parcel_id: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    location_name: str
    order: int
    delivery_status: Literal["pending", "in-transit", "delivered"] = "pending"
    delivered_at: Optional[datetime] = None
    notes: Optional[str] = None


# Fleet
class Driver(BaseModel):
    name: str
    mobile: str
    email: Optional[EmailStr] = None
    license: Optional[str] = None
    status: Literal["Active", "Resigned"] = "Active"
    is_available: bool = False  # punch-in flag
    driver_status: Literal["available", "pending", "Accepted", "On-trip"] = "available"
    current_trip_id: Optional[str] = None


class Vehicle(BaseModel):
    reg_number: str
    model: str
    type: str  # Truck, Van, etc.
    capacity: float = Field(..., ge=0)  # kg
    status: Literal["Active", "On-trip", "In-Service", "Sold"] = "Active"
    current_trip_id: Optional[str] = None


class Parcel(BaseModel):
    tracking_id: str
    weight: float = Field(..., gt=0)  # kg
    type: Optional[str] = None  # Document, Parcel, etc.
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    status: Literal[
        "Booked", "Pending", "Confirmed", "In Transit", "Delivered", "Declined-pool"
    ] = "Booked"
    delivery_location: Optional[DeliveryLocation] = None
    trip_id: Optional[str] = None
    assigned_driver: Optional[str] = None
    assigned_vehicle: Optional[str] = None


# Trips
class Trip(BaseModel):
    trip_id: str
    driver_id: str
    vehicle_id: str
    parcel_ids: List[str]
    delivery_destinations: List[DeliveryDestination] = []
    status: Literal["pending", "accepted", "in-progress", "declined", "completed"] = "pending"
    sos: bool = False
    start_location: Optional[Location] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    declined_by: Optional[str] = None
    decline_reason: Optional[str] = None
    offer_expires_at: Optional[datetime] = None
    total_weight: float = 0
    total_distance: Optional[float] = None  # km
    estimated_duration: Optional[float] = None  # minutes
    route_source: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0


class OngoingTrip(BaseModel):
    trip_ref: str
    trip_id: str
    tracking_id: Optional[str] = None
    driver_id: str
    vehicle_id: str
    status: str = "in-transit"
    started_at: Optional[datetime] = None
    last_known_location: Optional[dict] = None
    progress: float = 0


class Notification(BaseModel):
    type: Literal["trip_offer", "driver_declined", "info"]
    recipient_type: Literal["driver", "manager"] = "driver"
    driver_id: Optional[str] = None
    manager_id: Optional[str] = None
    declined_driver_id: Optional[str] = None
    trip_id: str
    vehicle_id: Optional[str] = None
    parcel_ids: List[str] = []
    status: Literal["pending", "accepted", "declined", "resolved"] = "pending"
    read: bool = False
    message: str
    delivery_locations: List[dict] = []
    start_location: Optional[dict] = None
    expires_at: Optional[datetime] = None
