"""
Router deliveries : réservation, cycle de vie, annulation, notation.
Les règles métier sont dans DeliveryStateMachine ; ici on ne fait que router.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from core.dependencies import (
    get_current_actor, get_delivery_service, require_role,
    require_admin, require_driver, require_customer,
)
from models.common import DeliveryStatus, UserRole
from models.delivery import (
    BookingCreate, AssignRequest, RejectRequest, CancelRequest,
    RatingCreate, LocationUpdate, QuoteRequest,
)
from models.user import Actor
from services.delivery_service import DeliveryStateMachine
from services.pricing_service import calculate_price, calculate_driver_earnings

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, summary="Réserver une livraison")
async def book_delivery(
    body: BookingCreate,
    actor: Actor = Depends(require_customer),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.book(actor, body)


@router.post("/quote", summary="Devis sans réservation")
async def quote(body: QuoteRequest, _actor: Actor = Depends(get_current_actor)):
    pricing = calculate_price(body.weight, body.estimated_distance, body.cluster)
    return {
        "pricing":         pricing.model_dump(),
        "driver_earnings": calculate_driver_earnings(pricing.total_price).model_dump(),
    }


@router.get("", summary="Mes livraisons (toutes pour l'admin)")
async def list_deliveries(
    status: Optional[DeliveryStatus] = None,
    skip:   int = Query(0, ge=0),
    limit:  int = Query(20, ge=1, le=100),
    actor:  Actor = Depends(get_current_actor),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.list_deliveries(actor, status=status, skip=skip, limit=limit)


@router.get("/{delivery_id}", summary="Détail d'une livraison")
async def get_delivery(
    delivery_id: str,
    actor: Actor = Depends(get_current_actor),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.get_delivery(actor, delivery_id)


@router.get("/{delivery_id}/timeline", summary="Historique des statuts")
async def get_timeline(
    delivery_id: str,
    actor: Actor = Depends(get_current_actor),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return {"delivery_id": delivery_id, "timeline": await service.timeline(actor, delivery_id)}


# ── Admin ─────────────────────────────────────────────────────────────────────

@router.put("/{delivery_id}/approve", summary="Approuver (admin)")
async def approve_delivery(
    delivery_id: str,
    actor: Actor = Depends(require_admin),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.approve(actor, delivery_id)


@router.put("/{delivery_id}/assign", summary="Affecter livreur + véhicule (admin)")
async def assign_delivery(
    delivery_id: str,
    body: AssignRequest,
    actor: Actor = Depends(require_admin),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.assign(
        actor, delivery_id,
        driver_id=body.driver_id,
        vehicle_id=body.vehicle_id,
        estimated_distance=body.estimated_distance,
        estimated_duration=body.estimated_duration,
    )


@router.delete("/{delivery_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Supprimer (admin)")
async def delete_delivery(
    delivery_id: str,
    actor: Actor = Depends(require_admin),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    await service.delete_delivery(actor, delivery_id)


# ── Livreur ───────────────────────────────────────────────────────────────────

@router.put("/{delivery_id}/accept", summary="Accepter (livreur affecté)")
async def accept_delivery(
    delivery_id: str,
    actor: Actor = Depends(require_driver),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.accept(actor, delivery_id)


@router.put("/{delivery_id}/reject", summary="Refuser (livreur affecté)")
async def reject_delivery(
    delivery_id: str,
    body: RejectRequest,
    actor: Actor = Depends(require_driver),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.reject(actor, delivery_id, body.reason)


@router.put("/{delivery_id}/start", summary="Démarrer (livreur affecté)")
async def start_delivery(
    delivery_id: str,
    actor: Actor = Depends(require_driver),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.start(actor, delivery_id)


@router.put("/{delivery_id}/complete", summary="Terminer (livreur affecté)")
async def complete_delivery(
    delivery_id: str,
    actor: Actor = Depends(require_driver),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.complete(actor, delivery_id)


@router.put("/{delivery_id}/location", summary="Position temps réel (livreur affecté)")
async def update_location(
    delivery_id: str,
    body: LocationUpdate,
    actor: Actor = Depends(require_driver),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.update_location(actor, delivery_id, body.lat, body.lng)


# ── Client ────────────────────────────────────────────────────────────────────

@router.put("/{delivery_id}/cancel", summary="Annuler avec remboursement")
async def cancel_delivery(
    delivery_id: str,
    body: CancelRequest,
    actor: Actor = Depends(require_role(UserRole.CUSTOMER, UserRole.ADMIN)),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.cancel(actor, delivery_id, body.reason)


@router.put(
    "/{delivery_id}/cancel-booking",
    summary="Annuler sans remboursement (obsolète)",
    deprecated=True,
)
async def cancel_booking(
    delivery_id: str,
    body: CancelRequest,
    actor: Actor = Depends(require_customer),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.cancel_booking(actor, delivery_id, body.reason)


@router.post("/{delivery_id}/rate", summary="Noter la livraison")
async def rate_delivery(
    delivery_id: str,
    body: RatingCreate,
    actor: Actor = Depends(require_customer),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    delivery = await service.rate(actor, delivery_id, body)
    return {"message": "Merci pour votre retour !", "rating": delivery["rating"]}
