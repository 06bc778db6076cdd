from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict
from pydantic import BaseModel, Field
from models.common import DeliveryStatus, PaymentStatus, PaymentMethod, Location


class PackageDetails(BaseModel):
    weight:       Optional[float] = None   # kg, > 0 obligatoire
    cluster:      str             = "Small"  # "Small" | "Medium" | "Large" | "Extra Large"
    dimensions:   Optional[str]   = None
    description:  Optional[str]   = None
    package_type: Optional[str]   = None


class Pricing(BaseModel):
    base_price:      Decimal
    weight_charge:   Decimal
    distance_charge: Decimal
    cluster_charge:  Decimal
    total_price:     Decimal
    currency:        str = "INR"


class DriverEarnings(BaseModel):
    amount:         Decimal              # prix total sur lequel porte la commission
    commission:     Decimal              # taux, 0.7 par défaut
    net_earnings:   Decimal
    paid_to_driver: bool = False
    paid_at:        Optional[datetime] = None


class StatusEntry(BaseModel):
    status:     DeliveryStatus
    updated_by: Optional[str] = None
    notes:      Optional[str] = None
    timestamp:  datetime


class Rating(BaseModel):
    stars:    int
    feedback: Optional[str] = None
    rated_at: datetime


class Cancellation(BaseModel):
    cancelled_by:      str
    cancelled_at:      datetime
    reason:            str
    refund_percentage: Decimal
    refund_amount:     Decimal
    refund_status:     str = "Pending"   # "Pending" | "Processed" | "Failed" | "NotApplicable"


class Delivery(BaseModel):
    delivery_id:          str
    customer_id:          str
    pickup_location:      Location
    drop_location:        Location
    package_details:      PackageDetails
    contact_number:       str
    preferred_date:       Optional[datetime] = None
    preferred_time:       Optional[str] = None
    special_instructions: Optional[str] = None
    estimated_distance:   Decimal
    estimated_duration:   Optional[int] = None   # minutes
    # Affectation
    assigned_driver_id:   Optional[str] = None
    assigned_vehicle_id:  Optional[str] = None
    status:               DeliveryStatus = DeliveryStatus.PENDING
    admin_approved:       bool = False
    driver_accepted:      bool = False
    driver_rejected_reason: Optional[str] = None
    start_time:           Optional[datetime] = None
    end_time:             Optional[datetime] = None
    # Argent
    pricing:              Pricing
    driver_earnings:      DriverEarnings
    payment_status:       PaymentStatus = PaymentStatus.PENDING
    payment_method:       Optional[PaymentMethod] = None
    paid_at:              Optional[datetime] = None
    # Après coup
    rating:               Optional[Rating] = None
    cancellation:         Optional[Cancellation] = None
    current_location:     Optional[Dict] = None
    status_history:       List[StatusEntry] = []
    # Compare-and-set
    version:              int = 0
    created_at:           datetime
    updated_at:           datetime


# ── Corps de requêtes ─────────────────────────────────────────────────────────

class BookingCreate(BaseModel):
    pickup_location:      Location = Location()
    drop_location:        Location = Location()
    package_details:      PackageDetails = PackageDetails()
    estimated_distance:   Optional[float] = None   # km, fourni par l'appelant
    contact_number:       Optional[str] = None
    preferred_date:       Optional[datetime] = None
    preferred_time:       Optional[str] = None
    special_instructions: Optional[str] = None


class AssignRequest(BaseModel):
    driver_id:          Optional[str] = None
    vehicle_id:         Optional[str] = None
    estimated_distance: Optional[float] = None
    estimated_duration: Optional[int] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RatingCreate(BaseModel):
    stars:      int
    feedback:   Optional[str] = None
    categories: Dict[str, int] = {}    # ex: {"punctuality": 5, "care": 4}
    tags:       List[str] = []


class LocationUpdate(BaseModel):
    lat: float
    lng: float


class QuoteRequest(BaseModel):
    weight:             float = Field(gt=0)
    estimated_distance: float = Field(gt=0)
    cluster:            str = "Small"
