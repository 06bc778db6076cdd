"""
Ledger : journal append-only par wallet (collection wallet_transactions) et
solde matérialisé dans wallets.

Une écriture :
  1. lit le wallet (seq n, solde b) et le rattrape si le journal est en avance ;
  2. refuse tout découvert avant d'écrire ;
  3. insère la ligne seq n+1 avec balance_after ; l'index unique
     (wallet_id, seq) en fait le point de commit ;
  4. avance le solde matérialisé par compare-and-set sur seq.

Un crash entre 3 et 4 laisse un wallet en retard sur son journal, jamais
l'inverse ; la lecture suivante le rattrape. Un transfert entre deux comptes
= deux écritures indépendantes suivies dans `transfers`.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional

from pymongo.errors import DuplicateKeyError

from config import settings
from core.exceptions import (
    ValidationError, NotFoundError, AuthorizationError, InsufficientBalanceError,
    ConcurrentModificationError, InconsistentLedgerError,
)
from core.locks import wallet_locks
from core.utils import encode_doc, decode_doc, money, utcnow
from database import db
from models.common import UserRole
from models.user import Actor
from models.wallet import (
    TransactionType, INBOUND_TYPES, OUTBOUND_TYPES, OwnerType, Wallet, WalletTransaction,
    Transfer, TransferStatus,
)

logger = logging.getLogger(__name__)

TALLY_FIELDS = {"total_earnings", "total_revenue"}

# Refus levés par post() avant toute écriture dans le journal
REFUSED_BEFORE_WRITE = (InsufficientBalanceError, ValidationError, ConcurrentModificationError)


def _wallet_id() -> str:
    return f"wlt_{uuid.uuid4().hex[:12]}"


def _tx_id() -> str:
    return f"wtx_{uuid.uuid4().hex[:12]}"


def _transfer_id() -> str:
    return f"trf_{uuid.uuid4().hex[:12]}"


def signed_amount(tx_type: TransactionType, amount: Decimal) -> Decimal:
    tx_type = TransactionType(tx_type)
    if tx_type in INBOUND_TYPES:
        return amount
    if tx_type in OUTBOUND_TYPES:
        return -amount
    raise ValidationError(f"Type de transaction sans sens : {tx_type.value}")


def _positive_amount(amount) -> Decimal:
    try:
        value = money(amount)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if value <= 0:
        raise ValidationError("Le montant doit être strictement positif")
    return value


# ── Wallets ───────────────────────────────────────────────────────────────────

async def get_or_create_wallet(owner_id: str, owner_type: str) -> dict:
    """Retourne le wallet existant ou en crée un nouveau."""
    wallet = await db.wallets.find_one({"owner_id": owner_id})
    if wallet:
        return decode_doc(wallet)

    now = utcnow()
    doc = encode_doc(Wallet(
        wallet_id=_wallet_id(),
        owner_id=owner_id,
        owner_type=OwnerType(owner_type),
        currency=settings.CURRENCY,
        created_at=now,
        updated_at=now,
    ).model_dump())
    try:
        await db.wallets.insert_one(doc)
    except DuplicateKeyError:
        # Créé en parallèle par une autre requête
        wallet = await db.wallets.find_one({"owner_id": owner_id})
        return decode_doc(wallet)
    return decode_doc(doc)


async def get_wallet(owner_id: str) -> dict:
    wallet = await db.wallets.find_one({"owner_id": owner_id})
    if not wallet:
        raise NotFoundError("Wallet")
    return await _roll_forward(decode_doc(wallet))


async def get_platform_wallet() -> dict:
    wallet = await get_or_create_wallet(settings.PLATFORM_ACCOUNT_ID, OwnerType.PLATFORM.value)
    return await _roll_forward(wallet)


async def _roll_forward(wallet: dict) -> dict:
    """Applique au solde matérialisé les lignes du journal qu'il n'a pas encore vues."""
    cursor = db.wallet_transactions.find(
        {"wallet_id": wallet["wallet_id"], "seq": {"$gt": wallet["seq"]}},
    ).sort("seq", 1)
    behind = [decode_doc(tx) for tx in await cursor.to_list(length=None)]
    if not behind:
        return wallet

    updates = {
        "balance":    behind[-1]["balance_after"],
        "seq":        behind[-1]["seq"],
        "updated_at": utcnow(),
    }
    for tx in behind:
        if tx.get("tally"):
            updates[tx["tally"]] = updates.get(tx["tally"], wallet.get(tx["tally"], Decimal("0"))) + tx["amount"]

    await db.wallets.update_one(
        {"wallet_id": wallet["wallet_id"], "seq": wallet["seq"]},
        {"$set": encode_doc(updates)},
    )
    logger.warning(
        "Wallet %s rattrapé depuis le journal : seq %s → %s",
        wallet["wallet_id"], wallet["seq"], updates["seq"],
    )
    return decode_doc(await db.wallets.find_one({"wallet_id": wallet["wallet_id"]}))


async def _materialize(wallet: dict, updates: dict) -> None:
    """Avance le solde matérialisé par compare-and-set sur seq."""
    result = await db.wallets.update_one(
        {"wallet_id": wallet["wallet_id"], "seq": wallet["seq"]},
        {"$set": encode_doc(updates)},
    )
    if result.matched_count == 0:
        logger.warning("Solde de %s déjà avancé par un rattrapage concurrent", wallet["wallet_id"])


# ── Écritures ─────────────────────────────────────────────────────────────────

async def post(
    owner_id: str,
    owner_type: str,
    tx_type: TransactionType,
    amount,
    description: str,
    delivery_id: Optional[str] = None,
    transfer_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    tally: Optional[str] = None,
) -> dict:
    """
    Écrit une transaction et avance le solde. Les sorties (Debit, Withdrawal,
    DriverPayout) échouent avec InsufficientBalanceError avant toute écriture
    si le solde ne couvre pas le montant.

    Avec une idempotency_key déjà présente sur ce wallet, la transaction
    existante est renvoyée et rien n'est écrit.
    """
    tx_type = TransactionType(tx_type)
    amount = _positive_amount(amount)
    if tally is not None and tally not in TALLY_FIELDS:
        raise ValidationError(f"Compteur inconnu : {tally}")

    async with wallet_locks.hold(owner_id):
        wallet = await get_or_create_wallet(owner_id, owner_type)
        wallet = await _roll_forward(wallet)

        if idempotency_key:
            existing = await db.wallet_transactions.find_one(
                {"wallet_id": wallet["wallet_id"], "idempotency_key": idempotency_key}
            )
            if existing:
                logger.info("Écriture %s déjà passée sur %s, ignorée", idempotency_key, owner_id)
                return decode_doc(existing)

        balance = wallet["balance"]
        new_balance = balance + signed_amount(tx_type, amount)
        if new_balance < 0:
            raise InsufficientBalanceError(
                "Solde insuffisant",
                available=str(balance),
                requested=str(amount),
            )

        now = utcnow()
        tx = encode_doc(WalletTransaction(
            tx_id=_tx_id(),
            wallet_id=wallet["wallet_id"],
            owner_id=owner_id,
            seq=wallet["seq"] + 1,
            tx_type=tx_type,
            amount=amount,
            balance_after=new_balance,
            description=description,
            delivery_id=delivery_id,
            transfer_id=transfer_id,
            idempotency_key=idempotency_key,
            tally=tally,
            created_at=now,
        ).model_dump())
        try:
            await db.wallet_transactions.insert_one(tx)
        except DuplicateKeyError as exc:
            # Un autre processus a pris ce numéro de séquence : rien n'a été écrit
            raise ConcurrentModificationError("Écriture concurrente sur ce wallet") from exc

        updates = {"balance": new_balance, "seq": tx["seq"], "updated_at": now}
        if tally:
            updates[tally] = wallet.get(tally, Decimal("0")) + amount
        # La ligne du journal est écrite : l'écriture est acquise, le solde
        # matérialisé en retard sera rattrapé à la prochaine lecture
        try:
            await _materialize(wallet, updates)
        except Exception as exc:
            logger.error(
                "Solde de %s non avancé après l'écriture seq %s (%s), rattrapage à la prochaine lecture",
                wallet["wallet_id"], tx["seq"], exc,
            )

    logger.info(
        "Wallet %s : %s %s %s → solde %s",
        owner_id, tx_type.value, amount, settings.CURRENCY, new_balance,
    )
    return decode_doc(tx)


async def credit(owner_id: str, owner_type: str, amount, description: str, **kwargs) -> dict:
    return await post(owner_id, owner_type, TransactionType.CREDIT, amount, description, **kwargs)


async def debit(owner_id: str, owner_type: str, amount, description: str, **kwargs) -> dict:
    return await post(owner_id, owner_type, TransactionType.DEBIT, amount, description, **kwargs)


async def refund(owner_id: str, amount, description: str, **kwargs) -> dict:
    return await post(owner_id, OwnerType.CUSTOMER.value, TransactionType.REFUND, amount, description, **kwargs)


async def withdraw(owner_id: str, amount, description: str = "Retrait vers compte bancaire") -> dict:
    return await post(owner_id, OwnerType.DRIVER.value, TransactionType.WITHDRAWAL, amount, description)


# ── Transferts entre deux comptes ─────────────────────────────────────────────

async def _mark_transfer(transfer_id: str, status: TransferStatus, **fields) -> None:
    # Si ce marquage échoue, le transfert reste "pending" et la réconciliation le signale
    try:
        await db.transfers.update_one(
            {"transfer_id": transfer_id},
            {"$set": {"status": status.value, "updated_at": utcnow(), **fields}},
        )
    except Exception as exc:
        logger.error("Impossible de marquer le transfert %s en %s : %s", transfer_id, status.value, exc)


async def _written_leg(transfer_id: str, leg: str) -> Optional[dict]:
    """Ligne du journal d'un mouvement ("out" ou "in") du transfert, ou None."""
    tx = await db.wallet_transactions.find_one(
        {"transfer_id": transfer_id, "idempotency_key": f"{transfer_id}:{leg}"}
    )
    return decode_doc(tx) if tx else None


async def transfer(
    kind: str,
    from_owner: tuple,
    to_owner: tuple,
    amount,
    description: str,
    debit_type: TransactionType = TransactionType.DEBIT,
    delivery_id: Optional[str] = None,
    credit_tally: Optional[str] = None,
) -> dict:
    """
    Déplace `amount` de from_owner=(id, type) vers to_owner=(id, type).

    Premier mouvement refusé → transfert "failed", erreur d'origine propagée.
    Second mouvement en échec → transfert "partial", InconsistentLedgerError.
    Jamais de nouvelle tentative automatique.
    """
    amount = _positive_amount(amount)
    now = utcnow()
    record = encode_doc(Transfer(
        transfer_id=_transfer_id(),
        kind=kind,
        from_owner_id=from_owner[0],
        to_owner_id=to_owner[0],
        amount=amount,
        delivery_id=delivery_id,
        created_at=now,
        updated_at=now,
    ).model_dump())
    await db.transfers.insert_one(record)
    transfer_id = record["transfer_id"]

    try:
        debit_tx = await post(
            from_owner[0], from_owner[1], debit_type, amount, description,
            delivery_id=delivery_id, transfer_id=transfer_id,
            idempotency_key=f"{transfer_id}:out",
        )
    except REFUSED_BEFORE_WRITE as exc:
        await _mark_transfer(transfer_id, TransferStatus.FAILED, error=str(exc))
        raise
    except Exception as exc:
        # Échec d'issue inconnue (timeout...) : le journal dit si le débit a eu lieu
        try:
            written = await _written_leg(transfer_id, "out")
        except Exception as lookup_exc:
            logger.error(
                "Transfert %s : débit d'issue inconnue (%s), journal illisible (%s), laissé pending",
                transfer_id, exc, lookup_exc,
            )
            raise exc
        if written is None:
            await _mark_transfer(transfer_id, TransferStatus.FAILED, error=str(exc))
            raise
        await _mark_transfer(
            transfer_id, TransferStatus.PARTIAL,
            debit_tx_id=written["tx_id"], error=str(exc),
        )
        logger.error(
            "Transfert %s PARTIEL : %s débité de %s malgré l'erreur (%s), crédit de %s non tenté",
            transfer_id, from_owner[0], amount, exc, to_owner[0],
        )
        raise InconsistentLedgerError(
            "Débit écrit mais transfert interrompu, réconciliation requise",
            transfer_id=transfer_id,
        ) from exc

    try:
        credit_tx = await post(
            to_owner[0], to_owner[1], TransactionType.CREDIT, amount, description,
            delivery_id=delivery_id, transfer_id=transfer_id,
            idempotency_key=f"{transfer_id}:in", tally=credit_tally,
        )
    except Exception as exc:
        await _mark_transfer(
            transfer_id, TransferStatus.PARTIAL,
            debit_tx_id=debit_tx["tx_id"], error=str(exc),
        )
        logger.error(
            "Transfert %s PARTIEL : %s débité de %s, crédit de %s en échec (%s)",
            transfer_id, from_owner[0], amount, to_owner[0], exc,
        )
        raise InconsistentLedgerError(
            "Transfert partiellement appliqué, réconciliation requise",
            transfer_id=transfer_id,
        ) from exc

    await _mark_transfer(
        transfer_id, TransferStatus.COMPLETED,
        debit_tx_id=debit_tx["tx_id"], credit_tx_id=credit_tx["tx_id"],
    )
    record = decode_doc(await db.transfers.find_one({"transfer_id": transfer_id}))
    return {"transfer": record, "debit": debit_tx, "credit": credit_tx}


# ── Opérations exposées ───────────────────────────────────────────────────────

async def add_money(actor: Actor, amount, payment_method: Optional[str] = None) -> dict:
    if actor.role != UserRole.CUSTOMER:
        raise AuthorizationError("Seuls les clients rechargent leur wallet")
    tx = await credit(
        actor.user_id, OwnerType.CUSTOMER.value, amount,
        f"Recharge via {payment_method or 'passerelle de paiement'}",
    )
    return {"transaction": tx, "wallet": await get_wallet(actor.user_id)}


async def withdraw_driver_earnings(actor: Actor, amount) -> dict:
    if actor.role != UserRole.DRIVER:
        raise AuthorizationError("Seuls les livreurs retirent leurs gains")
    # Aucun wallet = solde nul : le refus doit être InsufficientBalance, pas NotFound
    await get_or_create_wallet(actor.user_id, OwnerType.DRIVER.value)
    tx = await withdraw(actor.user_id, amount)
    return {"transaction": tx, "wallet": await get_wallet(actor.user_id)}


async def payout_to_driver(
    actor: Actor,
    driver_id: str,
    amount,
    delivery_id: Optional[str] = None,
    description: Optional[str] = None,
) -> dict:
    """Versement plateforme → livreur (deux écritures suivies par un transfert)."""
    if not actor.is_admin:
        raise AuthorizationError("Réservé aux administrateurs")
    driver = await db.users.find_one({"user_id": driver_id})
    if not driver or driver.get("role") != UserRole.DRIVER.value:
        raise NotFoundError("Livreur")

    return await transfer(
        kind="driver_payout",
        from_owner=(settings.PLATFORM_ACCOUNT_ID, OwnerType.PLATFORM.value),
        to_owner=(driver_id, OwnerType.DRIVER.value),
        amount=amount,
        description=description or f"Versement au livreur {driver.get('name', driver_id)}",
        debit_type=TransactionType.DRIVER_PAYOUT,
        delivery_id=delivery_id,
        credit_tally="total_earnings",
    )


async def list_transactions(owner_id: str, skip: int = 0, limit: int = 50) -> dict:
    wallet = await db.wallets.find_one({"owner_id": owner_id}, {"wallet_id": 1})
    if not wallet:
        return {"transactions": [], "total": 0}

    cursor = db.wallet_transactions.find(
        {"wallet_id": wallet["wallet_id"]},
    ).sort("seq", -1).skip(skip).limit(limit)
    txs = [decode_doc(tx) for tx in await cursor.to_list(length=limit)]
    total = await db.wallet_transactions.count_documents({"wallet_id": wallet["wallet_id"]})
    return {"transactions": txs, "total": total}


async def replay_wallet(wallet_id: str) -> dict:
    """
    Rejoue le journal depuis 0 et compare à chaque balance_after, puis au
    solde matérialisé. Lecture seule.
    """
    wallet = await db.wallets.find_one({"wallet_id": wallet_id})
    if not wallet:
        raise NotFoundError("Wallet")
    wallet = decode_doc(wallet)

    cursor = db.wallet_transactions.find({"wallet_id": wallet_id}).sort("seq", 1)
    running = Decimal("0")
    expected_seq = 1
    mismatches = []
    last_seq = 0
    async for raw in cursor:
        tx = decode_doc(raw)
        running += signed_amount(tx["tx_type"], tx["amount"])
        if tx["seq"] != expected_seq:
            mismatches.append({"seq": tx["seq"], "problem": "gap", "expected_seq": expected_seq})
        if tx["balance_after"] != running:
            mismatches.append({
                "seq": tx["seq"], "problem": "balance_after",
                "stored": str(tx["balance_after"]), "replayed": str(running),
            })
        expected_seq = tx["seq"] + 1
        last_seq = tx["seq"]

    return {
        "wallet_id":        wallet_id,
        "owner_id":         wallet["owner_id"],
        "balance":          wallet["balance"],
        "replayed_balance": running,
        "seq":              wallet["seq"],
        "journal_seq":      last_seq,
        "mismatches":       mismatches,
        "consistent":       not mismatches and running == wallet["balance"] and last_seq == wallet["seq"],
    }
