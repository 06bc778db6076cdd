"""
Service véhicules : flotte, statut manuel, position.
Les statuts Assigned / On Route ne s'écrivent pas ici (voir resource_service).
"""
import logging
import uuid
from typing import Optional

from pymongo.errors import DuplicateKeyError

from core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from core.utils import encode_doc, decode_doc, utcnow
from database import db
from models.common import UserRole, VehicleStatus
from models.user import Actor
from models.vehicle import Vehicle, VehicleCreate

logger = logging.getLogger(__name__)

MANUAL_STATUSES = {VehicleStatus.AVAILABLE, VehicleStatus.MAINTENANCE, VehicleStatus.OUT_OF_SERVICE}


def _vehicle_id() -> str:
    return f"VEH-{uuid.uuid4().hex[:6].upper()}"


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise AuthorizationError("Réservé aux administrateurs")


async def add_vehicle(actor: Actor, data: VehicleCreate) -> dict:
    _require_admin(actor)
    plate = data.plate_number.strip().upper()
    if not plate or not data.name.strip() or not data.type.strip():
        raise ValidationError("Nom, type et immatriculation obligatoires")
    if await db.vehicles.find_one({"plate_number": plate}, {"_id": 1}):
        raise ConflictError("Immatriculation déjà enregistrée", plate_number=plate)

    now = utcnow()
    doc = encode_doc(Vehicle(
        vehicle_id=_vehicle_id(),
        name=data.name.strip(),
        type=data.type.strip(),
        plate_number=plate,
        model=data.model,
        capacity_kg=data.capacity_kg,
        created_at=now,
        updated_at=now,
    ).model_dump())
    try:
        await db.vehicles.insert_one(doc)
    except DuplicateKeyError as exc:
        raise ConflictError("Immatriculation déjà enregistrée", plate_number=plate) from exc

    logger.info(f"Véhicule {doc['vehicle_id']} ({plate}) ajouté")
    return decode_doc(doc)


async def get_vehicle(vehicle_id: str) -> dict:
    vehicle = await db.vehicles.find_one({"vehicle_id": vehicle_id})
    if not vehicle:
        raise NotFoundError("Véhicule", vehicle_id=vehicle_id)
    return decode_doc(vehicle)


async def list_vehicles(status: Optional[VehicleStatus] = None, skip: int = 0, limit: int = 50) -> dict:
    query = {"status": status.value} if status else {}
    cursor = db.vehicles.find(query).sort("vehicle_id", 1).skip(skip).limit(limit)
    vehicles = [decode_doc(v) for v in await cursor.to_list(length=limit)]
    total = await db.vehicles.count_documents(query)
    return {"vehicles": vehicles, "total": total}


async def update_vehicle_status(actor: Actor, vehicle_id: str, status: VehicleStatus) -> dict:
    """Available / Maintenance / Out of Service, et seulement si aucune livraison ne le tient."""
    _require_admin(actor)
    status = VehicleStatus(status)
    if status not in MANUAL_STATUSES:
        raise ValidationError(
            f"Le statut {status.value} est géré par le cycle de livraison",
            status=status.value,
        )

    result = await db.vehicles.update_one(
        {"vehicle_id": vehicle_id, "held_by": None},
        {"$set": {"status": status.value, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        vehicle = await get_vehicle(vehicle_id)
        raise ConflictError(
            "Véhicule tenu par une livraison en cours",
            vehicle_id=vehicle_id,
            delivery_id=vehicle.get("held_by"),
        )
    logger.info(f"Véhicule {vehicle_id} → {status.value} (par {actor.user_id})")
    return await get_vehicle(vehicle_id)


async def update_vehicle_location(actor: Actor, vehicle_id: str, lat: float, lng: float) -> dict:
    """Position seule, le statut n'est jamais modifié."""
    if actor.role not in (UserRole.ADMIN, UserRole.DRIVER):
        raise AuthorizationError("Accès refusé")
    result = await db.vehicles.update_one(
        {"vehicle_id": vehicle_id},
        {"$set": {"current_location": {"lat": lat, "lng": lng, "last_updated": utcnow()}}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Véhicule", vehicle_id=vehicle_id)
    return await get_vehicle(vehicle_id)
