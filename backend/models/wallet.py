from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel


class TransactionType(str, Enum):
    CREDIT        = "Credit"         # gains, recharge, encaissement
    REFUND        = "Refund"         # remboursement client
    DEBIT         = "Debit"          # paiement
    WITHDRAWAL    = "Withdrawal"     # retrait livreur
    DRIVER_PAYOUT = "DriverPayout"   # versement plateforme → livreur


INBOUND_TYPES  = {TransactionType.CREDIT, TransactionType.REFUND}
OUTBOUND_TYPES = {TransactionType.DEBIT, TransactionType.WITHDRAWAL, TransactionType.DRIVER_PAYOUT}


class OwnerType(str, Enum):
    CUSTOMER = "customer"
    DRIVER   = "driver"
    PLATFORM = "platform"


class Wallet(BaseModel):
    wallet_id:  str
    owner_id:   str
    owner_type: OwnerType
    balance:    Decimal = Decimal("0")
    seq:        int = 0              # numéro de la dernière écriture appliquée
    total_earnings: Decimal = Decimal("0")   # livreur
    total_revenue:  Decimal = Decimal("0")   # plateforme
    currency:   str = "INR"
    created_at: datetime
    updated_at: datetime


class WalletTransaction(BaseModel):
    tx_id:           str
    wallet_id:       str
    owner_id:        str
    seq:             int
    tx_type:         TransactionType
    amount:          Decimal          # toujours positif, le signe vient du type
    balance_after:   Decimal
    description:     str
    delivery_id:     Optional[str] = None
    transfer_id:     Optional[str] = None
    idempotency_key: Optional[str] = None
    tally:           Optional[str] = None   # compteur cumulé du wallet à incrémenter
    created_at:      datetime


class TransferStatus(str, Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    FAILED    = "failed"     # premier mouvement refusé ou absent du journal, rien d'écrit
    PARTIAL   = "partial"    # premier mouvement écrit, second en échec


class Transfer(BaseModel):
    transfer_id:   str
    kind:          str              # "delivery_payment" | "driver_payout"
    from_owner_id: str
    to_owner_id:   str
    amount:        Decimal
    delivery_id:   Optional[str] = None
    status:        TransferStatus = TransferStatus.PENDING
    debit_tx_id:   Optional[str] = None
    credit_tx_id:  Optional[str] = None
    error:         Optional[str] = None
    created_at:    datetime
    updated_at:    datetime


# ── Corps de requêtes ─────────────────────────────────────────────────────────

class AddMoneyRequest(BaseModel):
    amount:         float
    payment_method: Optional[str] = None


class PayDeliveryRequest(BaseModel):
    delivery_id: str


class WithdrawRequest(BaseModel):
    amount:       float


class PayoutRequest(BaseModel):
    driver_id:   str
    amount:      float
    delivery_id: Optional[str] = None
    description: Optional[str] = None
