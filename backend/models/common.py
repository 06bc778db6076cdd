from enum import Enum
from typing import Optional
from pydantic import BaseModel


class DeliveryStatus(str, Enum):
    PENDING   = "Pending"
    APPROVED  = "Approved"
    ASSIGNED  = "Assigned"
    ACCEPTED  = "Accepted"
    ON_ROUTE  = "On Route"
    DELIVERED = "Delivered"
    REJECTED  = "Rejected"    # refus livreur, ré-assignable
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = {DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}

# Statuts qui « tiennent » un véhicule et un livreur
ACTIVE_STATUSES = {DeliveryStatus.ASSIGNED, DeliveryStatus.ACCEPTED, DeliveryStatus.ON_ROUTE}


class UserRole(str, Enum):
    ADMIN    = "Admin"
    DRIVER   = "Driver"
    CUSTOMER = "Customer"


class DriverStatus(str, Enum):
    ACTIVE    = "Active"
    ON_LEAVE  = "On Leave"
    SUSPENDED = "Suspended"
    INACTIVE  = "Inactive"


class VehicleStatus(str, Enum):
    AVAILABLE      = "Available"
    ASSIGNED       = "Assigned"
    ON_ROUTE       = "On Route"
    MAINTENANCE    = "Maintenance"
    OUT_OF_SERVICE = "Out of Service"


class PaymentStatus(str, Enum):
    PENDING    = "Pending"
    PROCESSING = "Processing"   # débit wallet en cours
    PAID       = "Paid"


class PaymentMethod(str, Enum):
    CASH   = "Cash"
    WALLET = "Wallet"


class Location(BaseModel):
    address: str             = ""
    lat:     Optional[float] = None
    lng:     Optional[float] = None
