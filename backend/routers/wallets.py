"""
Router wallets : wallet personnel, transactions, recharge, retrait, paiement.
"""
from fastapi import APIRouter, Depends, Query

from core.dependencies import get_delivery_service, require_role, require_customer, require_driver
from models.common import UserRole
from models.user import Actor
from models.wallet import AddMoneyRequest, PayDeliveryRequest, WithdrawRequest
from services import ledger_service
from services.delivery_service import DeliveryStateMachine

router = APIRouter()

_OWNER_TYPES = {
    UserRole.CUSTOMER: "customer",
    UserRole.DRIVER:   "driver",
}

require_wallet_owner = require_role(UserRole.CUSTOMER, UserRole.DRIVER)


@router.get("/me", summary="Mon wallet")
async def get_my_wallet(actor: Actor = Depends(require_wallet_owner)):
    await ledger_service.get_or_create_wallet(actor.user_id, _OWNER_TYPES[actor.role])
    return await ledger_service.get_wallet(actor.user_id)


@router.get("/me/transactions", summary="Historique des transactions")
async def get_my_transactions(
    skip:  int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(require_wallet_owner),
):
    return await ledger_service.list_transactions(actor.user_id, skip=skip, limit=limit)


@router.post("/me/add-money", summary="Recharger mon wallet")
async def add_money(body: AddMoneyRequest, actor: Actor = Depends(require_customer)):
    return await ledger_service.add_money(actor, body.amount, body.payment_method)


@router.post("/me/withdraw", summary="Retirer mes gains")
async def withdraw(body: WithdrawRequest, actor: Actor = Depends(require_driver)):
    return await ledger_service.withdraw_driver_earnings(actor, body.amount)


@router.post("/pay-delivery", summary="Payer une livraison avec le wallet")
async def pay_delivery(
    body: PayDeliveryRequest,
    actor: Actor = Depends(require_customer),
    service: DeliveryStateMachine = Depends(get_delivery_service),
):
    delivery = await service.pay_with_wallet(actor, body.delivery_id)
    return {
        "delivery_id":    delivery["delivery_id"],
        "payment_status": delivery["payment_status"],
        "wallet":         await ledger_service.get_wallet(actor.user_id),
    }
