"""
Réconciliation : repère les séquences d'écritures incomplètes sans jamais
rien ré-écrire. Le rapport sert à l'intervention manuelle (endpoint admin) et
est journalisé périodiquement par la tâche de fond.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import settings
from core.utils import decode_doc, utcnow
from database import db
from models.common import DeliveryStatus
from models.wallet import TransferStatus
from services.ledger_service import replay_wallet

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Motor renvoie des datetime naïfs (UTC) sauf tz_aware=True
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _cutoff() -> datetime:
    return utcnow() - timedelta(minutes=settings.STALE_TRANSFER_MINUTES)


async def find_broken_transfers() -> dict:
    """
    Transferts partiels, transferts encore pending au-delà du délai, et
    transferts marqués failed alors que le journal porte une de leurs lignes.
    """
    partial = [
        decode_doc(t) async for t in db.transfers.find({"status": TransferStatus.PARTIAL.value})
    ]
    cutoff = _cutoff()
    stale = [
        decode_doc(t) async for t in db.transfers.find({"status": TransferStatus.PENDING.value})
        if _as_utc(t.get("created_at")) < cutoff
    ]
    failed_with_writes = []
    async for t in db.transfers.find({"status": TransferStatus.FAILED.value}):
        legs = await db.wallet_transactions.count_documents({"transfer_id": t["transfer_id"]})
        if legs:
            failed_with_writes.append(decode_doc(t))
    return {"partial": partial, "stale_pending": stale, "failed_with_writes": failed_with_writes}


async def find_unpaid_earnings() -> list:
    """Livraisons effectuées dont les gains n'ont pas été crédités au livreur."""
    cursor = db.deliveries.find(
        {"status": DeliveryStatus.DELIVERED.value, "driver_earnings.paid_to_driver": False},
        {"_id": 0, "delivery_id": 1, "assigned_driver_id": 1, "driver_earnings": 1, "end_time": 1},
    )
    return [decode_doc(d) async for d in cursor]


async def find_unprocessed_refunds() -> list:
    cutoff = _cutoff()
    cursor = db.deliveries.find(
        {
            "status": DeliveryStatus.CANCELLED.value,
            "cancellation.refund_status": {"$in": ["Pending", "Failed"]},
        },
        {"_id": 0, "delivery_id": 1, "customer_id": 1, "cancellation": 1},
    )
    refunds = []
    async for d in cursor:
        cancellation = d["cancellation"]
        if cancellation["refund_status"] == "Failed" or _as_utc(cancellation.get("cancelled_at")) < cutoff:
            refunds.append(decode_doc(d))
    return refunds


async def find_wallet_mismatches() -> list:
    mismatches = []
    async for wallet in db.wallets.find({}, {"_id": 0, "wallet_id": 1}):
        report = await replay_wallet(wallet["wallet_id"])
        if not report["consistent"]:
            mismatches.append(report)
    return mismatches


async def run_reconciliation() -> dict:
    transfers = await find_broken_transfers()
    report = {
        "checked_at":        utcnow(),
        "partial_transfers": transfers["partial"],
        "stale_transfers":   transfers["stale_pending"],
        "failed_transfers_with_writes": transfers["failed_with_writes"],
        "unpaid_earnings":   await find_unpaid_earnings(),
        "pending_refunds":   await find_unprocessed_refunds(),
        "wallet_mismatches": await find_wallet_mismatches(),
    }
    report["issues"] = sum(
        len(report[key]) for key in (
            "partial_transfers", "stale_transfers", "failed_transfers_with_writes", "unpaid_earnings",
            "pending_refunds", "wallet_mismatches",
        )
    )
    return report


async def reconcile_forever() -> None:
    """Tâche de fond : rapport seulement, aucune écriture."""
    while True:
        await asyncio.sleep(settings.RECONCILE_INTERVAL_SECONDS)
        try:
            report = await run_reconciliation()
            if report["issues"]:
                logger.error(
                    f"Réconciliation : {report['issues']} anomalie(s) "
                    f"(transferts partiels {len(report['partial_transfers'])}, "
                    f"pending {len(report['stale_transfers'])}, "
                    f"failed avec écritures {len(report['failed_transfers_with_writes'])}, "
                    f"gains non crédités {len(report['unpaid_earnings'])}, "
                    f"remboursements {len(report['pending_refunds'])}, "
                    f"wallets {len(report['wallet_mismatches'])})"
                )
            else:
                logger.info("Réconciliation : aucune anomalie")
        except Exception as exc:
            logger.error(f"Erreur réconciliation : {exc}")
