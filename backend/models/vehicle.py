from datetime import datetime
from typing import Optional
from pydantic import BaseModel
from models.common import VehicleStatus


class Vehicle(BaseModel):
    vehicle_id:   str              # "VEH-3F9A1C"
    name:         str
    type:         str              # "Truck", "Van", "Pickup", "Motorcycle", "Car"
    plate_number: str              # unique, majuscules
    model:        Optional[str] = None
    capacity_kg:  float = 0.0
    status:       VehicleStatus = VehicleStatus.AVAILABLE
    # Livraison qui tient le véhicule (écrit uniquement par le coordinateur)
    held_by:      Optional[str] = None
    current_location: Optional[dict] = None   # {"lat", "lng", "last_updated"}
    is_active:    bool = True
    created_at:   datetime
    updated_at:   datetime


class VehicleCreate(BaseModel):
    name:         str
    type:         str
    plate_number: str
    model:        Optional[str] = None
    capacity_kg:  float = 0.0


class VehicleStatusUpdate(BaseModel):
    status: VehicleStatus
