"""
Coordinateur des ressources : un véhicule n'est tenu que par une livraison à
la fois, un livreur n'a qu'une livraison active à la fois.

Le véhicule porte `held_by` (delivery_id) : la prise et la libération sont
des compare-and-set sur ce champ, jamais un read-then-write. Seul ce module
écrit `held_by` et le statut Assigned / On Route d'un véhicule.
"""
import logging
from typing import Optional

from pymongo import ReturnDocument

from core.exceptions import (
    AuthorizationError, ConflictError, InvalidDriverError, InvalidVehicleError, NotFoundError,
)
from core.utils import decode_doc, utcnow
from database import db
from models.common import ACTIVE_STATUSES, DriverStatus, UserRole, VehicleStatus
from models.user import Actor

logger = logging.getLogger(__name__)

UNUSABLE_VEHICLE_STATUSES = [VehicleStatus.MAINTENANCE.value, VehicleStatus.OUT_OF_SERVICE.value]


async def get_assignable_driver(driver_id: str) -> dict:
    driver = await db.users.find_one({"user_id": driver_id}, {"_id": 0})
    if not driver or driver.get("role") != UserRole.DRIVER.value:
        raise InvalidDriverError("Livreur inexistant", driver_id=driver_id)
    if not driver.get("is_active", True):
        raise InvalidDriverError("Livreur inactif", driver_id=driver_id)
    return driver


async def get_assignable_vehicle(vehicle_id: str) -> dict:
    vehicle = await db.vehicles.find_one({"vehicle_id": vehicle_id}, {"_id": 0})
    if not vehicle or not vehicle.get("is_active", True):
        raise InvalidVehicleError("Véhicule inexistant", vehicle_id=vehicle_id)
    if vehicle.get("status") in UNUSABLE_VEHICLE_STATUSES:
        raise InvalidVehicleError(
            f"Véhicule indisponible ({vehicle['status']})", vehicle_id=vehicle_id
        )
    return vehicle


async def ensure_driver_free(driver_id: str, delivery_id: str) -> None:
    """ConflictError si le livreur a déjà une autre livraison active."""
    other = await db.deliveries.find_one(
        {
            "assigned_driver_id": driver_id,
            "status":             {"$in": [s.value for s in ACTIVE_STATUSES]},
            "delivery_id":        {"$ne": delivery_id},
        },
        {"_id": 0, "delivery_id": 1},
    )
    if other:
        raise ConflictError(
            "Ce livreur a déjà une livraison en cours",
            driver_id=driver_id,
            active_delivery_id=other["delivery_id"],
        )


async def hold_vehicle(vehicle_id: str, delivery_id: str) -> dict:
    """
    Prend le véhicule pour `delivery_id`. Idempotent si la livraison le tient
    déjà. ConflictError s'il est tenu ailleurs ou passé hors service entre-temps.
    """
    held = await db.vehicles.find_one_and_update(
        {
            "vehicle_id": vehicle_id,
            "held_by":    {"$in": [None, delivery_id]},
            "status":     {"$nin": UNUSABLE_VEHICLE_STATUSES},
        },
        {"$set": {
            "held_by":    delivery_id,
            "status":     VehicleStatus.ASSIGNED.value,
            "updated_at": utcnow(),
        }},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not held:
        raise ConflictError("Véhicule déjà affecté à une autre livraison", vehicle_id=vehicle_id)
    logger.info(f"Véhicule {vehicle_id} tenu par {delivery_id}")
    return decode_doc(held)


async def mark_vehicle_on_route(vehicle_id: Optional[str], delivery_id: str) -> None:
    if not vehicle_id:
        return
    await db.vehicles.update_one(
        {"vehicle_id": vehicle_id, "held_by": delivery_id},
        {"$set": {"status": VehicleStatus.ON_ROUTE.value, "updated_at": utcnow()}},
    )


async def release_vehicle(vehicle_id: Optional[str], delivery_id: str) -> bool:
    """
    Rend le véhicule disponible s'il est encore tenu par `delivery_id`.
    Sans effet sinon (déjà libéré, ou repris par une autre livraison).
    """
    if not vehicle_id:
        return False
    result = await db.vehicles.update_one(
        {"vehicle_id": vehicle_id, "held_by": delivery_id},
        {"$set": {
            "held_by":    None,
            "status":     VehicleStatus.AVAILABLE.value,
            "updated_at": utcnow(),
        }},
    )
    if result.modified_count:
        logger.info(f"Véhicule {vehicle_id} libéré par {delivery_id}")
    return bool(result.modified_count)


async def update_driver_status(actor: Actor, driver_id: str, status: DriverStatus) -> dict:
    """
    Admin : statut d'un livreur. `is_active` suit le statut (seul Active
    est affectable), les livraisons déjà en cours ne sont pas touchées.
    """
    if not actor.is_admin:
        raise AuthorizationError("Réservé à l'administration")
    status = DriverStatus(status)
    driver = await db.users.find_one_and_update(
        {"user_id": driver_id, "role": UserRole.DRIVER.value},
        {"$set": {
            "driver_profile.status": status.value,
            "is_active":             status == DriverStatus.ACTIVE,
            "updated_at":            utcnow(),
        }},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not driver:
        raise NotFoundError("Livreur", driver_id=driver_id)
    logger.info(f"Livreur {driver_id} passé en {status.value} par {actor.user_id}")
    return decode_doc(driver)
