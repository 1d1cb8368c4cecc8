"""
Database Schemas for the Waste-Collection Dispatch API

Each Pydantic model represents a MongoDB collection (lowercased class name):
- WasteRequest -> "wasterequest"
- Bin -> "bin"
- Collector -> "collector"
- Truck -> "truck"

Cross-collection references are plain string ids (e.g. Bin.assigned_to holds a
collector id); they are resolved through the store, never embedded.

The *Create / *Update models are the request bodies accepted by the API.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

WasteCategory = Literal["Organic", "Recyclable", "Other"]
RequestStatus = Literal["pending", "confirmed", "in-progress", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["cash", "card", "online", "bank_transfer"]

BinStatus = Literal["Pending", "Assigned", "Collected", "Skipped"]
BinOutcome = Literal["Collected", "Skipped"]
BinPriority = Literal["low", "medium", "high", "urgent"]
BinType = Literal["household", "commercial", "industrial", "recycling"]

CollectorStatus = Literal["active", "idle", "offline", "on-duty"]
# operator-set and informational; pairing only looks at Truck.assigned_to
TruckStatus = Literal["active", "maintenance", "inactive", "in-use"]
FuelType = Literal["diesel", "petrol", "electric", "hybrid"]

PHONE_PATTERN = r"^\+?[0-9]\d{0,15}$"
CITY_MAX_LENGTH = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def city_from_address(address: Optional[str]) -> str:
    """Last non-empty comma-separated segment of the address."""
    segments = [s.strip() for s in (address or "").split(",")]
    segments = [s for s in segments if s]
    if not segments:
        return "Unknown"
    return segments[-1]


def _address_city_fits(address: str) -> str:
    if len(city_from_address(address)) > CITY_MAX_LENGTH:
        raise ValueError(f"City (last address segment) must be at most {CITY_MAX_LENGTH} characters")
    return address


class Document(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class Coordinates(Document):
    latitude: Optional[float] = Field(None, ge=-90, le=90, description="Latitude")
    longitude: Optional[float] = Field(None, ge=-180, le=180, description="Longitude")

    def is_complete(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# ------------------------
# Waste requests
# ------------------------
class WasteRequest(Document):
    """
    Citizen pickup requests
    Collection name: "wasterequest"
    """
    user_id: Optional[str] = Field(None, description="Submitting user id; anonymous when null")
    name: str = Field(..., min_length=1, max_length=100, description="Requester full name")
    email: EmailStr = Field(..., description="Requester email")
    phone: str = Field(..., pattern=PHONE_PATTERN, description="Requester mobile number")
    address: str = Field(..., min_length=1, max_length=500, description="Pickup address; last comma segment is the city")
    coordinates: Optional[Coordinates] = None
    category: WasteCategory = Field("Other", description="Waste category")
    description: str = Field(..., min_length=1, max_length=1000)
    type_price: float = Field(..., ge=0, description="Price for the waste category")
    delivery_fee: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0, description="type_price + delivery_fee")
    status: RequestStatus = "pending"
    scheduled_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod = "cash"
    rating: Optional[int] = Field(None, ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=500)

    @field_validator("address")
    @classmethod
    def _city_fits(cls, v: str) -> str:
        return _address_city_fits(v)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.lower()


class WasteRequestCreate(Document):
    user_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: str = Field(..., min_length=1, max_length=500)
    coordinates: Optional[Coordinates] = None
    category: WasteCategory = "Other"
    description: str = Field(..., min_length=1, max_length=1000)
    type_price: float = Field(..., ge=0)
    delivery_fee: float = Field(..., ge=0)
    scheduled_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)
    payment_method: PaymentMethod = "cash"

    @field_validator("address")
    @classmethod
    def _city_fits(cls, v: str) -> str:
        return _address_city_fits(v)


class WasteRequestUpdate(Document):
    """Fields the requester may change."""
    notes: Optional[str] = Field(None, max_length=500)
    rating: Optional[int] = Field(None, ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=500)


class RequestStatusUpdate(Document):
    status: RequestStatus
    notes: Optional[str] = Field(None, max_length=500)


class ApproveRequestBody(Document):
    notes: Optional[str] = Field(None, max_length=500)


# ------------------------
# Bins
# ------------------------
class Bin(Document):
    """
    Dispatchable collection tasks
    Collection name: "bin"
    """
    location: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1, max_length=CITY_MAX_LENGTH)
    coordinates: Optional[Coordinates] = None
    status: BinStatus = "Pending"
    priority: BinPriority = "medium"
    bin_type: BinType = "household"
    assigned_to: Optional[str] = Field(None, description="Collector id")
    request_id: Optional[str] = Field(None, description="Originating waste request id")
    reported_by: Optional[str] = Field(None, description="Reporting user id")
    reported_at: datetime = Field(default_factory=utcnow)
    assigned_at: Optional[datetime] = None
    collected_at: Optional[datetime] = None
    skipped_at: Optional[datetime] = None
    notes: str = Field("", max_length=500)


class BinCreate(Document):
    location: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1, max_length=CITY_MAX_LENGTH)
    coordinates: Optional[Coordinates] = None
    priority: BinPriority = "medium"
    bin_type: BinType = "household"
    reported_by: Optional[str] = None
    notes: str = Field("", max_length=500)


class BinUpdate(Document):
    location: Optional[str] = Field(None, min_length=1, max_length=500)
    city: Optional[str] = Field(None, min_length=1, max_length=CITY_MAX_LENGTH)
    coordinates: Optional[Coordinates] = None
    priority: Optional[BinPriority] = None
    bin_type: Optional[BinType] = None
    notes: Optional[str] = Field(None, max_length=500)


class AssignCollectorBody(Document):
    collector_id: str


class OutcomeBody(Document):
    outcome: BinOutcome
    collector_id: Optional[str] = Field(None, description="Reporting collector; must match the bin's collector")


# ------------------------
# Collectors
# ------------------------
class Performance(Document):
    total_collections: int = Field(0, ge=0)
    total_skipped: int = Field(0, ge=0)
    average_rating: float = Field(0, ge=0, le=5)


class Collector(Document):
    """
    Field staff / drivers
    Collection name: "collector"
    """
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=20)
    city: str = Field(..., min_length=1, max_length=CITY_MAX_LENGTH)
    driver_license: str = Field(..., min_length=1, max_length=50)
    status: CollectorStatus = "active"
    truck: Optional[str] = Field(None, description="Paired truck id")
    assigned_bins: List[str] = Field(default_factory=list, description="Bin ids ever assigned")
    current_location: str = Field("", max_length=200)
    coordinates: Optional[Coordinates] = None
    last_location_update: Optional[datetime] = None
    hire_date: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    performance: Performance = Field(default_factory=Performance)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.lower()


class CollectorCreate(Document):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=20)
    city: str = Field(..., min_length=1, max_length=CITY_MAX_LENGTH)
    driver_license: str = Field(..., min_length=1, max_length=50)
    status: CollectorStatus = "active"
    truck_id: Optional[str] = None


class CollectorUpdate(Document):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, min_length=1, max_length=20)
    city: Optional[str] = Field(None, min_length=1, max_length=CITY_MAX_LENGTH)
    status: Optional[CollectorStatus] = None
    is_active: Optional[bool] = None


class LocationUpdate(Document):
    current_location: str = Field(..., min_length=1, max_length=200)
    coordinates: Optional[Coordinates] = None


class BindTruckBody(Document):
    truck_id: str


# ------------------------
# Trucks
# ------------------------
class Truck(Document):
    """
    Vehicles
    Collection name: "truck"
    """
    plate_number: str = Field(..., min_length=1, max_length=20, description="Unique, stored upper-case")
    capacity: str = Field(..., min_length=1, max_length=50, description="e.g. '5 tons'")
    capacity_kg: Optional[float] = Field(None, ge=0, le=50000)
    status: TruckStatus = "active"
    assigned_to: Optional[str] = Field(None, description="Collector id holding the truck")
    current_location: str = Field("", max_length=200)
    coordinates: Optional[Coordinates] = None
    last_location_update: Optional[datetime] = None
    fuel_type: FuelType = "diesel"
    manufacturer: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    year: Optional[int] = Field(None, ge=1990)
    mileage: float = Field(0, ge=0)

    @field_validator("plate_number")
    @classmethod
    def _upper_plate(cls, v: str) -> str:
        return v.upper()

    @field_validator("year")
    @classmethod
    def _not_future_model(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v > utcnow().year + 1:
            raise ValueError("Invalid year")
        return v


class TruckCreate(Document):
    plate_number: str = Field(..., min_length=1, max_length=20)
    capacity: str = Field(..., min_length=1, max_length=50)
    capacity_kg: Optional[float] = Field(None, ge=0, le=50000)
    status: TruckStatus = "active"
    current_location: str = Field("", max_length=200)
    coordinates: Optional[Coordinates] = None
    fuel_type: FuelType = "diesel"
    manufacturer: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    year: Optional[int] = Field(None, ge=1990)
    mileage: float = Field(0, ge=0)


class TruckUpdate(Document):
    plate_number: Optional[str] = Field(None, min_length=1, max_length=20)
    capacity: Optional[str] = Field(None, min_length=1, max_length=50)
    capacity_kg: Optional[float] = Field(None, ge=0, le=50000)
    status: Optional[TruckStatus] = None
    current_location: Optional[str] = Field(None, max_length=200)
    coordinates: Optional[Coordinates] = None
    fuel_type: Optional[FuelType] = None
    manufacturer: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    year: Optional[int] = Field(None, ge=1990)
    mileage: Optional[float] = Field(None, ge=0)
