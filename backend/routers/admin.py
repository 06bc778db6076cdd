"""
Router admin : tableau de bord, wallets, versements et statut des livreurs,
réconciliation.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from config import settings
from core.dependencies import get_delivery_service, require_admin
from core.exceptions import NotFoundError
from core.utils import decode_doc
from database import db
from models.common import DeliveryStatus, UserRole
from models.user import Actor, DriverStatusUpdate
from models.wallet import PayoutRequest
from services import ledger_service, resource_service
from services.delivery_service import DeliveryStateMachine
from services.reconciliation_service import run_reconciliation

router = APIRouter()


@router.get("/dashboard", summary="KPIs temps réel")
async def dashboard(_admin: Actor = Depends(require_admin)):
    by_status = {
        s.value: await db.deliveries.count_documents({"status": s.value})
        for s in DeliveryStatus
    }
    total = sum(by_status.values())
    delivered = by_status[DeliveryStatus.DELIVERED.value]
    platform = await ledger_service.get_platform_wallet()

    return {
        "total_deliveries": total,
        "by_status":        by_status,
        "success_rate":     round(delivered / total * 100, 1) if total else 0.0,
        "active_drivers":   await db.users.count_documents({"role": UserRole.DRIVER.value, "is_active": True}),
        "platform_balance": platform["balance"],
        "total_revenue":    platform["total_revenue"],
        "currency":         settings.CURRENCY,
    }


@router.get("/wallets/platform", summary="Wallet plateforme")
async def platform_wallet(_admin: Actor = Depends(require_admin)):
    return await ledger_service.get_platform_wallet()


@router.get("/wallets/{owner_id}", summary="Wallet d'un utilisateur")
async def user_wallet(owner_id: str, _admin: Actor = Depends(require_admin)):
    return await ledger_service.get_wallet(owner_id)


@router.get("/wallets/{owner_id}/transactions", summary="Transactions d'un utilisateur")
async def user_transactions(
    owner_id: str,
    skip:  int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    _admin: Actor = Depends(require_admin),
):
    return await ledger_service.list_transactions(owner_id, skip=skip, limit=limit)


@router.get("/wallets/{owner_id}/replay", summary="Rejouer le journal d'un wallet")
async def replay(owner_id: str, _admin: Actor = Depends(require_admin)):
    wallet = await ledger_service.get_wallet(owner_id)
    return await ledger_service.replay_wallet(wallet["wallet_id"])


@router.post("/payouts", summary="Verser de l'argent à un livreur")
async def payout(body: PayoutRequest, actor: Actor = Depends(require_admin)):
    return await ledger_service.payout_to_driver(
        actor, body.driver_id, body.amount,
        delivery_id=body.delivery_id, description=body.description,
    )


@router.get("/reconciliation", summary="Anomalies ledger à traiter")
async def reconciliation(_admin: Actor = Depends(require_admin)):
    return await run_reconciliation()


@router.post("/deliveries/{delivery_id}/settle-earnings", summary="Créditer des gains non versés")
async def settle_earnings(
    delivery_id: str,
    actor: Actor = Depends(require_admin),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    return await service.settle_driver_earnings(actor, delivery_id)


@router.get("/feedbacks", summary="Retours clients")
async def feedbacks(
    driver_id: Optional[str] = None,
    skip:  int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    _admin: Actor = Depends(require_admin),
):
    query = {"driver_id": driver_id} if driver_id else {}
    cursor = db.feedbacks.find(query).sort("created_at", -1).skip(skip).limit(limit)
    items = [decode_doc(f) for f in await cursor.to_list(length=limit)]
    return {"feedbacks": items, "total": await db.feedbacks.count_documents(query)}


@router.get("/drivers/{driver_id}", summary="Profil et performance d'un livreur")
async def driver_profile(driver_id: str, _admin: Actor = Depends(require_admin)):
    driver = await db.users.find_one({"user_id": driver_id, "role": UserRole.DRIVER.value})
    if not driver:
        raise NotFoundError("Livreur", driver_id=driver_id)
    return decode_doc(driver)


@router.put("/drivers/{driver_id}/status", summary="Changer le statut d'un livreur")
async def update_driver_status(
    driver_id: str,
    body: DriverStatusUpdate,
    actor: Actor = Depends(require_admin),
):
    return await resource_service.update_driver_status(actor, driver_id, body.status)
