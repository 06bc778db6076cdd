"""
Router vehicles : flotte (admin), position (admin ou livreur).
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from core.dependencies import require_admin, require_role
from models.common import UserRole, VehicleStatus
from models.delivery import LocationUpdate
from models.user import Actor
from models.vehicle import VehicleCreate, VehicleStatusUpdate
from services import vehicle_service

router = APIRouter()

require_fleet_user = require_role(UserRole.ADMIN, UserRole.DRIVER)


@router.post("", status_code=status.HTTP_201_CREATED, summary="Ajouter un véhicule")
async def add_vehicle(body: VehicleCreate, actor: Actor = Depends(require_admin)):
    return await vehicle_service.add_vehicle(actor, body)


@router.get("", summary="Liste des véhicules")
async def list_vehicles(
    status: Optional[VehicleStatus] = None,
    skip:   int = Query(0, ge=0),
    limit:  int = Query(50, ge=1, le=200),
    _actor: Actor = Depends(require_fleet_user),
):
    return await vehicle_service.list_vehicles(status=status, skip=skip, limit=limit)


@router.get("/{vehicle_id}", summary="Détail d'un véhicule")
async def get_vehicle(vehicle_id: str, _actor: Actor = Depends(require_fleet_user)):
    return await vehicle_service.get_vehicle(vehicle_id)


@router.put("/{vehicle_id}/status", summary="Changer le statut (maintenance, hors service)")
async def update_status(
    vehicle_id: str,
    body: VehicleStatusUpdate,
    actor: Actor = Depends(require_admin),
):
    return await vehicle_service.update_vehicle_status(actor, vehicle_id, body.status)


@router.put("/{vehicle_id}/location", summary="Mettre à jour la position")
async def update_location(
    vehicle_id: str,
    body: LocationUpdate,
    actor: Actor = Depends(require_fleet_user),
):
    return await vehicle_service.update_vehicle_location(actor, vehicle_id, body.lat, body.lng)
