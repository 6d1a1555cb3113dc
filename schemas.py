from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from geo import Coordinate


def _pair(lat, lng, label):
    if (lat is None) != (lng is None):
        raise ValueError(f"{label}_lat and {label}_lng must be given together")
    if lat is not None:
        Coordinate.of(lat, lng)


class Via(BaseModel):
    address: str = Field(min_length=1)


class PriceQuoteRequest(BaseModel):
    tenant_id: int
    pickup: str = Field(min_length=1)
    dropoff: str = Field(min_length=1)
    vias: list[Via] = Field(default_factory=list)
    distance: Optional[float] = Field(default=None, ge=0)
    pickup_time: Optional[datetime] = None
    vehicle_type: str = "Saloon"
    is_wait_and_return: bool = False
    waiting_time: int = Field(default=0, ge=0)
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None

    @model_validator(mode="after")
    def check_coordinates(self):
        _pair(self.pickup_lat, self.pickup_lng, "pickup")
        _pair(self.dropoff_lat, self.dropoff_lng, "dropoff")
        return self


class BookingRequest(BaseModel):
    tenant_id: int
    passenger_name: str = "Unknown"
    passenger_phone: Optional[str] = None
    passengers: int = Field(default=1, ge=1)
    notes: Optional[str] = None
    pickup_address: str = Field(min_length=1)
    dropoff_address: str = Field(min_length=1)
    vias: list[Via] = Field(default_factory=list)
    pickup_time: Optional[datetime] = None
    vehicle_type: str = "Saloon"
    fare: Optional[float] = Field(default=None, ge=0)
    distance: Optional[float] = Field(default=None, ge=0)
    is_wait_and_return: bool = False
    waiting_time: int = Field(default=0, ge=0)
    return_time: Optional[datetime] = None
    pre_assigned_driver_id: Optional[int] = None
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None

    @model_validator(mode="after")
    def check_coordinates(self):
        _pair(self.pickup_lat, self.pickup_lng, "pickup")
        _pair(self.dropoff_lat, self.dropoff_lng, "dropoff")
        return self


class AssignRequest(BaseModel):
    driver_id: int


class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class JobStatusUpdate(BaseModel):
    status: str
    driver_id: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    @field_validator("status")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_coordinates(self):
        _pair(self.lat, self.lng, "location")
        return self


class DriverStatusUpdate(BaseModel):
    status: str
    version: Optional[int] = None

    @field_validator("status")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()
