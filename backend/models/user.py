from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel
from models.common import UserRole, DriverStatus


class Actor(BaseModel):
    """Appelant tel que fourni par la couche d'auth."""
    user_id: str
    role:    UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class DriverPerformance(BaseModel):
    total_trips:     int   = 0
    completed_trips: int   = 0
    cancelled_trips: int   = 0
    average_rating:  float = 0.0


class DriverRating(BaseModel):
    delivery_id: str
    stars:       int
    feedback:    Optional[str] = None
    customer_id: str
    created_at:  datetime


class DriverProfile(BaseModel):
    license_number: Optional[str] = None
    vehicle_type:   Optional[str] = None
    status:         DriverStatus = DriverStatus.ACTIVE
    performance:    DriverPerformance = DriverPerformance()
    ratings:        List[DriverRating] = []


class User(BaseModel):
    user_id:    str
    name:       str
    email:      Optional[str] = None
    phone:      Optional[str] = None
    role:       UserRole = UserRole.CUSTOMER
    is_active:  bool = True
    # Livreurs seulement
    driver_profile: Optional[DriverProfile] = None
    created_at: datetime
    updated_at: datetime


class DriverStatusUpdate(BaseModel):
    status: DriverStatus
