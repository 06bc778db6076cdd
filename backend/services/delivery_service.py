"""
Service livraisons : machine d'états, tarification à l'affectation, écritures
ledger au paiement, à la livraison et à l'annulation.

Chaque transition :
  - vérifie l'appelant puis le statut courant (jamais de no-op silencieux) ;
  - s'écrit par compare-and-set sur (delivery_id, version) avec, dans la même
    mise à jour, le nouveau statut et l'entrée d'historique correspondante ;
  - émet un DeliveryEvent vers le sink injecté, sans jamais attendre la diffusion.
"""
import logging
import warnings
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import settings
from core.exceptions import (
    ValidationError, InvalidStateError, AuthorizationError, NotFoundError,
    ConflictError, NotApprovedError, AlreadyRatedError,
    ConcurrentModificationError, InconsistentLedgerError,
)
from core.locks import delivery_locks, driver_locks
from core.security import generate_delivery_code
from core.utils import encode_doc, decode_doc, money, utcnow
from database import db
from models.common import (
    DeliveryStatus, TERMINAL_STATUSES, UserRole, DriverStatus,
    PaymentStatus, PaymentMethod,
)
from models.delivery import (
    Delivery, BookingCreate, StatusEntry, Rating, Cancellation, RatingCreate,
)
from models.event import DeliveryEvent
from models.user import Actor
from models.wallet import OwnerType
from services import ledger_service, resource_service
from services.event_sink import EventSink, NullEventSink, safe_emit
from services.pricing_service import calculate_price, calculate_driver_earnings, refund_rate

logger = logging.getLogger(__name__)

# ── Machine d'états ───────────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[DeliveryStatus, list[DeliveryStatus]] = {
    DeliveryStatus.PENDING: [
        DeliveryStatus.APPROVED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.APPROVED: [
        DeliveryStatus.ASSIGNED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.ASSIGNED: [
        DeliveryStatus.ASSIGNED,     # réaffectation avant acceptation
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.REJECTED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.ACCEPTED: [
        DeliveryStatus.ON_ROUTE,
        DeliveryStatus.REJECTED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.ON_ROUTE: [
        DeliveryStatus.DELIVERED,
        DeliveryStatus.REJECTED,
        DeliveryStatus.CANCELLED,
    ],
    DeliveryStatus.REJECTED: [
        DeliveryStatus.ASSIGNED,
        DeliveryStatus.CANCELLED,
    ],
    # États terminaux
    DeliveryStatus.DELIVERED: [],
    DeliveryStatus.CANCELLED: [],
}

LOCATION_STATUSES = [DeliveryStatus.ACCEPTED.value, DeliveryStatus.ON_ROUTE.value]


def _require_role(actor: Actor, *roles: UserRole) -> None:
    if actor.role not in roles:
        raise AuthorizationError("Accès refusé pour ce rôle", role=actor.role.value)


def _require_assigned_driver(actor: Actor, delivery: dict) -> None:
    if actor.role != UserRole.DRIVER or delivery.get("assigned_driver_id") != actor.user_id:
        raise AuthorizationError("Vous n'êtes pas le livreur affecté à cette livraison")


def _require_owner(actor: Actor, delivery: dict) -> None:
    if actor.role != UserRole.CUSTOMER or delivery["customer_id"] != actor.user_id:
        raise AuthorizationError("Cette livraison ne vous appartient pas")


class DeliveryStateMachine:
    """
    Opérations du cycle de vie d'une livraison.
    Construite une fois au démarrage avec l'EventSink à utiliser.
    """

    def __init__(self, events: Optional[EventSink] = None, commission_rate=None):
        self.events = events or NullEventSink()
        self.commission_rate = commission_rate

    # ── Lecture / écriture ──────────────────────────────────────────────────

    async def _load(self, delivery_id: str) -> dict:
        delivery = await db.deliveries.find_one({"delivery_id": delivery_id})
        if not delivery:
            raise NotFoundError("Livraison", delivery_id=delivery_id)
        return decode_doc(delivery)

    @staticmethod
    def _check_transition(delivery: dict, target: DeliveryStatus) -> None:
        current = DeliveryStatus(delivery["status"])
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateError(
                f"Transition interdite : {current.value} → {target.value}",
                delivery_id=delivery["delivery_id"],
                status=current.value,
            )

    async def _commit(
        self,
        delivery: dict,
        actor: Actor,
        status: Optional[DeliveryStatus] = None,
        notes: Optional[str] = None,
        fields: Optional[dict] = None,
        event_type: str = "status",
        extra: Optional[dict] = None,
    ) -> dict:
        """
        Applique `fields` (et le nouveau statut + son entrée d'historique) si
        la livraison est toujours à la version lue. Sinon
        ConcurrentModificationError et rien n'est écrit.
        """
        now = utcnow()
        to_set = dict(fields or {})
        to_set["updated_at"] = now
        update = {"$inc": {"version": 1}}
        if status is not None:
            to_set["status"] = status
            update["$push"] = {"status_history": encode_doc(StatusEntry(
                status=status,
                updated_by=actor.user_id,
                notes=notes,
                timestamp=now,
            ).model_dump())}
        update["$set"] = encode_doc(to_set)

        updated = await db.deliveries.find_one_and_update(
            {"delivery_id": delivery["delivery_id"], "version": delivery["version"]},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise ConcurrentModificationError(
                "Livraison modifiée entre-temps, rechargez-la",
                delivery_id=delivery["delivery_id"],
            )
        updated = decode_doc(updated)

        if status is not None:
            logger.info(
                f"Livraison {delivery['delivery_id']} : {delivery['status']} → {status.value} "
                f"(par {actor.role.value} {actor.user_id})"
            )
        safe_emit(self.events, DeliveryEvent(
            event_type=event_type,
            delivery_id=delivery["delivery_id"],
            status=updated["status"],
            actor=actor.user_id,
            timestamp=now,
            extra=extra or {},
        ))
        return updated

    async def _patch(self, delivery_id: str, fields: dict) -> dict:
        """Suivi comptable après un statut terminal : pas de transition, pas de CAS."""
        updated = await db.deliveries.find_one_and_update(
            {"delivery_id": delivery_id},
            {"$set": encode_doc({**fields, "updated_at": utcnow()}), "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return decode_doc(updated)

    # ── Réservation ─────────────────────────────────────────────────────────

    async def book(self, actor: Actor, data: BookingCreate) -> dict:
        """Customer : nouvelle livraison en Pending, prix calculé."""
        _require_role(actor, UserRole.CUSTOMER)

        missing = []
        if not (data.pickup_location.address or "").strip():
            missing.append("pickup_location.address")
        if not (data.drop_location.address or "").strip():
            missing.append("drop_location.address")
        if data.package_details.weight is None or data.package_details.weight <= 0:
            missing.append("package_details.weight")
        if data.estimated_distance is None or data.estimated_distance <= 0:
            missing.append("estimated_distance")
        if not (data.contact_number or "").strip():
            missing.append("contact_number")
        if missing:
            raise ValidationError("Champs obligatoires manquants ou invalides", fields=missing)

        pricing  = calculate_price(
            data.package_details.weight, data.estimated_distance, data.package_details.cluster,
        )
        earnings = calculate_driver_earnings(pricing.total_price, self.commission_rate)

        now = utcnow()
        delivery = Delivery(
            delivery_id=generate_delivery_code(),
            customer_id=actor.user_id,
            pickup_location=data.pickup_location,
            drop_location=data.drop_location,
            package_details=data.package_details,
            contact_number=data.contact_number.strip(),
            preferred_date=data.preferred_date,
            preferred_time=data.preferred_time,
            special_instructions=data.special_instructions,
            estimated_distance=money(data.estimated_distance),
            pricing=pricing,
            driver_earnings=earnings,
            status_history=[StatusEntry(
                status=DeliveryStatus.PENDING,
                updated_by=actor.user_id,
                notes="Réservation créée",
                timestamp=now,
            )],
            created_at=now,
            updated_at=now,
        )
        doc = encode_doc(delivery.model_dump())
        await db.deliveries.insert_one(doc)
        logger.info(f"Livraison {delivery.delivery_id} réservée par {actor.user_id} ({pricing.total_price} {pricing.currency})")

        safe_emit(self.events, DeliveryEvent(
            delivery_id=delivery.delivery_id,
            status=DeliveryStatus.PENDING.value,
            actor=actor.user_id,
            timestamp=now,
        ))
        return decode_doc(doc)

    # ── Admin ───────────────────────────────────────────────────────────────

    async def approve(self, actor: Actor, delivery_id: str, notes: Optional[str] = None) -> dict:
        _require_role(actor, UserRole.ADMIN)
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            self._check_transition(delivery, DeliveryStatus.APPROVED)
            return await self._commit(
                delivery, actor, DeliveryStatus.APPROVED,
                notes=notes or "Approuvée par l'administration",
                fields={"admin_approved": True},
            )

    async def assign(
        self,
        actor: Actor,
        delivery_id: str,
        driver_id: Optional[str],
        vehicle_id: Optional[str],
        estimated_distance,
        estimated_duration: Optional[int] = None,
    ) -> dict:
        """
        Approved / Rejected / Assigned → Assigned.
        Le prix et les gains sont entièrement recalculés avec la distance reçue.
        """
        _require_role(actor, UserRole.ADMIN)
        missing = [name for name, value in (
            ("driver_id", driver_id), ("vehicle_id", vehicle_id),
        ) if not value]
        if estimated_distance is None or estimated_distance <= 0:
            missing.append("estimated_distance")
        if missing:
            raise ValidationError("Champs obligatoires manquants ou invalides", fields=missing)

        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            if not delivery.get("admin_approved"):
                raise NotApprovedError("Livraison non approuvée par l'administration", delivery_id=delivery_id)
            self._check_transition(delivery, DeliveryStatus.ASSIGNED)

            driver = await resource_service.get_assignable_driver(driver_id)
            await resource_service.get_assignable_vehicle(vehicle_id)

            async with driver_locks.hold(driver_id):
                await resource_service.ensure_driver_free(driver_id, delivery_id)

                old_vehicle = delivery.get("assigned_vehicle_id")
                switching = bool(old_vehicle) and old_vehicle != vehicle_id
                if switching:
                    await resource_service.release_vehicle(old_vehicle, delivery_id)
                try:
                    await resource_service.hold_vehicle(vehicle_id, delivery_id)
                except ConflictError:
                    if switching:
                        await self._rehold(old_vehicle, delivery_id)
                    raise

                package  = delivery["package_details"]
                pricing  = calculate_price(package["weight"], estimated_distance, package.get("cluster"))
                earnings = calculate_driver_earnings(pricing.total_price, self.commission_rate)
                try:
                    return await self._commit(
                        delivery, actor, DeliveryStatus.ASSIGNED,
                        notes=f"Affectée à {driver.get('name', driver_id)} ({vehicle_id})",
                        fields={
                            "assigned_driver_id":     driver_id,
                            "assigned_vehicle_id":    vehicle_id,
                            "driver_accepted":        False,
                            "driver_rejected_reason": None,
                            "estimated_distance":     money(estimated_distance),
                            "estimated_duration":     estimated_duration or settings.DEFAULT_ESTIMATED_DURATION_MIN,
                            "pricing":                pricing.model_dump(),
                            "driver_earnings":        earnings.model_dump(),
                        },
                        extra={"driver_id": driver_id, "vehicle_id": vehicle_id},
                    )
                except ConcurrentModificationError:
                    if vehicle_id != old_vehicle:
                        await resource_service.release_vehicle(vehicle_id, delivery_id)
                    if switching:
                        await self._rehold(old_vehicle, delivery_id)
                    raise

    async def _rehold(self, vehicle_id: str, delivery_id: str) -> None:
        try:
            await resource_service.hold_vehicle(vehicle_id, delivery_id)
        except ConflictError:
            logger.warning(f"Véhicule {vehicle_id} repris entre-temps, {delivery_id} le perd")

    async def delete_delivery(self, actor: Actor, delivery_id: str) -> None:
        _require_role(actor, UserRole.ADMIN)
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            await resource_service.release_vehicle(delivery.get("assigned_vehicle_id"), delivery_id)
            await db.deliveries.delete_one({"delivery_id": delivery_id})
        logger.info(f"Livraison {delivery_id} supprimée par {actor.user_id}")

    # ── Livreur ─────────────────────────────────────────────────────────────

    async def accept(self, actor: Actor, delivery_id: str) -> dict:
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            _require_assigned_driver(actor, delivery)
            if delivery["status"] != DeliveryStatus.ASSIGNED.value:
                raise InvalidStateError(
                    "Seule une livraison affectée peut être acceptée",
                    delivery_id=delivery_id, status=delivery["status"],
                )
            updated = await self._commit(
                delivery, actor, DeliveryStatus.ACCEPTED,
                notes="Acceptée par le livreur",
                fields={"driver_accepted": True},
            )
            await resource_service.mark_vehicle_on_route(updated.get("assigned_vehicle_id"), delivery_id)
            return updated

    async def reject(self, actor: Actor, delivery_id: str, reason: Optional[str] = None) -> dict:
        """Le livreur rend la livraison : elle redevient ré-affectable."""
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            _require_assigned_driver(actor, delivery)
            self._check_transition(delivery, DeliveryStatus.REJECTED)
            reason = reason or "Aucune raison fournie"
            updated = await self._commit(
                delivery, actor, DeliveryStatus.REJECTED,
                notes=f"Refusée : {reason}",
                fields={
                    "assigned_driver_id":     None,
                    "assigned_vehicle_id":    None,
                    "driver_accepted":        False,
                    "driver_rejected_reason": reason,
                },
            )
            await resource_service.release_vehicle(delivery.get("assigned_vehicle_id"), delivery_id)
            return updated

    async def start(self, actor: Actor, delivery_id: str) -> dict:
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            _require_assigned_driver(actor, delivery)
            self._check_transition(delivery, DeliveryStatus.ON_ROUTE)
            updated = await self._commit(
                delivery, actor, DeliveryStatus.ON_ROUTE,
                notes="Livraison démarrée",
                fields={"start_time": utcnow()},
            )
            await resource_service.mark_vehicle_on_route(updated.get("assigned_vehicle_id"), delivery_id)
            return updated

    async def complete(self, actor: Actor, delivery_id: str) -> dict:
        """
        On Route → Delivered, puis crédit des gains au livreur (une seule fois :
        clé d'idempotence par livraison), compteurs livreur, véhicule libéré.
        """
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            _require_assigned_driver(actor, delivery)
            self._check_transition(delivery, DeliveryStatus.DELIVERED)

            now = utcnow()
            earnings = calculate_driver_earnings(delivery["pricing"]["total_price"], self.commission_rate)
            fields = {"end_time": now, "driver_earnings": earnings.model_dump()}
            if delivery.get("payment_status") != PaymentStatus.PAID.value:
                fields["payment_status"] = PaymentStatus.PAID
                fields["payment_method"] = delivery.get("payment_method") or PaymentMethod.CASH
                fields["paid_at"] = now
            updated = await self._commit(
                delivery, actor, DeliveryStatus.DELIVERED,
                notes="Livraison effectuée",
                fields=fields,
            )

            await resource_service.release_vehicle(delivery.get("assigned_vehicle_id"), delivery_id)
            await db.users.update_one(
                {"user_id": actor.user_id},
                {"$inc": {
                    "driver_profile.performance.completed_trips": 1,
                    "driver_profile.performance.total_trips":     1,
                }},
            )
            return await self._credit_earnings(updated)

    async def _credit_earnings(self, delivery: dict) -> dict:
        delivery_id = delivery["delivery_id"]
        driver_id   = delivery["assigned_driver_id"]
        net         = delivery["driver_earnings"]["net_earnings"]
        try:
            await ledger_service.credit(
                driver_id, OwnerType.DRIVER.value, net,
                f"Livraison {delivery_id} effectuée",
                delivery_id=delivery_id,
                idempotency_key=f"earnings:{delivery_id}",
                tally="total_earnings",
            )
        except Exception as exc:
            logger.error(f"Gains de {delivery_id} non crédités à {driver_id} : {exc}")
            raise InconsistentLedgerError(
                "Livraison effectuée mais gains non crédités, réconciliation requise",
                delivery_id=delivery_id,
            ) from exc
        return await self._patch(delivery_id, {
            "driver_earnings.paid_to_driver": True,
            "driver_earnings.paid_at":        utcnow(),
        })

    async def settle_driver_earnings(self, actor: Actor, delivery_id: str) -> dict:
        """
        Admin : recrédite les gains d'une livraison effectuée dont le crédit a
        échoué. Même clé d'idempotence, donc jamais de double crédit.
        """
        _require_role(actor, UserRole.ADMIN)
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            if delivery["status"] != DeliveryStatus.DELIVERED.value:
                raise InvalidStateError("Livraison non effectuée", delivery_id=delivery_id)
            if delivery["driver_earnings"].get("paid_to_driver"):
                return delivery
            return await self._credit_earnings(delivery)

    async def update_location(self, actor: Actor, delivery_id: str, lat: float, lng: float) -> dict:
        """Position courante, sans transition ni changement de version."""
        delivery = await self._load(delivery_id)
        _require_assigned_driver(actor, delivery)

        now = utcnow()
        location = {"lat": lat, "lng": lng, "last_updated": now}
        updated = await db.deliveries.find_one_and_update(
            {
                "delivery_id":        delivery_id,
                "assigned_driver_id": actor.user_id,
                "status":             {"$in": LOCATION_STATUSES},
            },
            {"$set": {"current_location": location, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise InvalidStateError(
                "Position modifiable uniquement en Accepted ou On Route",
                delivery_id=delivery_id, status=delivery["status"],
            )
        if updated.get("assigned_vehicle_id"):
            await db.vehicles.update_one(
                {"vehicle_id": updated["assigned_vehicle_id"]},
                {"$set": {"current_location": location}},
            )

        safe_emit(self.events, DeliveryEvent(
            event_type="location",
            delivery_id=delivery_id,
            status=updated["status"],
            actor=actor.user_id,
            timestamp=now,
            extra={"lat": lat, "lng": lng},
        ))
        return decode_doc(updated)

    # ── Annulation ──────────────────────────────────────────────────────────

    async def cancel(self, actor: Actor, delivery_id: str, reason: Optional[str] = None) -> dict:
        """
        Annulation avec remboursement (Customer sur sa livraison, ou Admin).
        Taux selon le statut au moment de l'annulation : Pending / Approved
        100 %, Assigned 90 %, Accepted 80 %, On Route 50 %, sinon 0.
        """
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            if actor.role == UserRole.CUSTOMER:
                _require_owner(actor, delivery)
            elif not actor.is_admin:
                raise AuthorizationError("Annulation réservée au client ou à l'administration")
            if DeliveryStatus(delivery["status"]) in TERMINAL_STATUSES:
                raise InvalidStateError(
                    "Livraison déjà terminée",
                    delivery_id=delivery_id, status=delivery["status"],
                )

            rate   = refund_rate(delivery["status"])
            amount = money(delivery["pricing"]["total_price"] * rate)
            reason = reason or "Aucune raison fournie"
            cancellation = Cancellation(
                cancelled_by=actor.user_id,
                cancelled_at=utcnow(),
                reason=reason,
                refund_percentage=rate,
                refund_amount=amount,
                refund_status="Pending" if amount > 0 else "NotApplicable",
            )
            updated = await self._commit(
                delivery, actor, DeliveryStatus.CANCELLED,
                notes=f"Annulée : {reason}",
                fields={"cancellation": cancellation.model_dump()},
                extra={"refund_amount": str(amount)},
            )

            await resource_service.release_vehicle(delivery.get("assigned_vehicle_id"), delivery_id)
            driver_id = delivery.get("assigned_driver_id")
            if driver_id:
                await db.users.update_one(
                    {"user_id": driver_id},
                    {
                        "$inc": {"driver_profile.performance.cancelled_trips": 1},
                        "$set": {"driver_profile.status": DriverStatus.ACTIVE.value},
                    },
                )

            if amount <= 0:
                return updated
            try:
                await ledger_service.refund(
                    delivery["customer_id"], amount,
                    f"Remboursement de la livraison annulée {delivery_id}",
                    delivery_id=delivery_id,
                    idempotency_key=f"refund:{delivery_id}",
                )
            except Exception as exc:
                await self._patch(delivery_id, {"cancellation.refund_status": "Failed"})
                logger.error(f"Remboursement de {delivery_id} ({amount}) en échec : {exc}")
                raise InconsistentLedgerError(
                    "Livraison annulée mais remboursement non effectué, réconciliation requise",
                    delivery_id=delivery_id,
                ) from exc
            return await self._patch(delivery_id, {"cancellation.refund_status": "Processed"})

    async def cancel_booking(self, actor: Actor, delivery_id: str, reason: Optional[str] = None) -> dict:
        """Ancienne annulation client, sans remboursement. Utiliser cancel()."""
        warnings.warn(
            "cancel_booking() ne rembourse pas, utiliser cancel()",
            DeprecationWarning,
            stacklevel=2,
        )
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            _require_owner(actor, delivery)
            self._check_transition(delivery, DeliveryStatus.CANCELLED)
            updated = await self._commit(
                delivery, actor, DeliveryStatus.CANCELLED,
                notes=f"Annulée par le client : {reason or 'Aucune raison fournie'}",
            )
            await resource_service.release_vehicle(delivery.get("assigned_vehicle_id"), delivery_id)
            return updated

    # ── Paiement ────────────────────────────────────────────────────────────

    async def pay_with_wallet(self, actor: Actor, delivery_id: str) -> dict:
        """
        Customer : débit de son wallet puis crédit plateforme (un transfert).
        Le paiement est d'abord réservé (Processing) pour qu'un second appel
        concurrent échoue au lieu de débiter deux fois.
        """
        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            _require_owner(actor, delivery)
            if delivery["status"] == DeliveryStatus.CANCELLED.value:
                raise InvalidStateError("Livraison annulée", delivery_id=delivery_id)
            if delivery.get("payment_status") in (PaymentStatus.PAID.value, PaymentStatus.PROCESSING.value):
                raise ConflictError("Livraison déjà payée", delivery_id=delivery_id)

            claimed = await self._commit(
                delivery, actor,
                fields={"payment_status": PaymentStatus.PROCESSING},
                event_type="payment",
            )
            amount = delivery["pricing"]["total_price"]
            try:
                await ledger_service.transfer(
                    kind="delivery_payment",
                    from_owner=(actor.user_id, OwnerType.CUSTOMER.value),
                    to_owner=(settings.PLATFORM_ACCOUNT_ID, OwnerType.PLATFORM.value),
                    amount=amount,
                    description=f"Paiement de la livraison {delivery_id}",
                    delivery_id=delivery_id,
                    credit_tally="total_revenue",
                )
            except InconsistentLedgerError:
                # Le client a été débité : la livraison est payée de son point de vue
                await self._mark_paid(claimed, actor)
                raise
            except Exception:
                await self._commit(
                    claimed, actor,
                    fields={"payment_status": delivery.get("payment_status") or PaymentStatus.PENDING},
                    event_type="payment",
                )
                raise
            return await self._mark_paid(claimed, actor)

    async def _mark_paid(self, delivery: dict, actor: Actor) -> dict:
        return await self._commit(
            delivery, actor,
            fields={
                "payment_status": PaymentStatus.PAID,
                "payment_method": PaymentMethod.WALLET,
                "paid_at":        utcnow(),
            },
            event_type="payment",
        )

    # ── Notation ────────────────────────────────────────────────────────────

    async def rate(self, actor: Actor, delivery_id: str, data: RatingCreate) -> dict:
        if not 1 <= data.stars <= 5:
            raise ValidationError("La note doit être comprise entre 1 et 5", stars=data.stars)

        async with delivery_locks.hold(delivery_id):
            delivery = await self._load(delivery_id)
            _require_owner(actor, delivery)
            if delivery["status"] != DeliveryStatus.DELIVERED.value:
                raise InvalidStateError("Seule une livraison effectuée peut être notée", delivery_id=delivery_id)
            if delivery.get("rating"):
                raise AlreadyRatedError("Livraison déjà notée", delivery_id=delivery_id)

            now = utcnow()
            try:
                updated = await self._commit(
                    delivery, actor,
                    fields={"rating": Rating(stars=data.stars, feedback=data.feedback, rated_at=now).model_dump()},
                    event_type="rating",
                )
            except ConcurrentModificationError as exc:
                # Écriture concurrente : déjà notée seulement si elle porte maintenant une note
                current = await self._load(delivery_id)
                if current.get("rating"):
                    raise AlreadyRatedError("Livraison déjà notée", delivery_id=delivery_id) from exc
                raise

        driver_id = delivery.get("assigned_driver_id")
        try:
            await db.feedbacks.insert_one({
                "delivery_id": delivery_id,
                "customer_id": actor.user_id,
                "driver_id":   driver_id,
                "stars":       data.stars,
                "categories":  data.categories,
                "feedback":    data.feedback,
                "tags":        data.tags,
                "created_at":  now,
            })
        except DuplicateKeyError:
            logger.warning(f"Retour client déjà enregistré pour {delivery_id}")

        if driver_id:
            await self._add_driver_rating(driver_id, {
                "delivery_id": delivery_id,
                "stars":       data.stars,
                "feedback":    data.feedback,
                "customer_id": actor.user_id,
                "created_at":  now,
            })
        return updated

    async def _add_driver_rating(self, driver_id: str, rating: dict) -> None:
        """Moyenne simple de toutes les notes du livreur, recalculée à chaque ajout."""
        async with driver_locks.hold(driver_id):
            driver = await db.users.find_one_and_update(
                {"user_id": driver_id},
                {"$push": {"driver_profile.ratings": rating}},
                return_document=ReturnDocument.AFTER,
            )
            if not driver:
                logger.warning(f"Livreur {driver_id} introuvable, note non reportée")
                return
            ratings = driver["driver_profile"]["ratings"]
            average = sum(r["stars"] for r in ratings) / len(ratings)
            await db.users.update_one(
                {"user_id": driver_id},
                {"$set": {"driver_profile.performance.average_rating": average}},
            )

    # ── Consultation ────────────────────────────────────────────────────────

    async def get_delivery(self, actor: Actor, delivery_id: str) -> dict:
        delivery = await self._load(delivery_id)
        if actor.is_admin:
            return delivery
        if actor.role == UserRole.CUSTOMER and delivery["customer_id"] == actor.user_id:
            return delivery
        if actor.role == UserRole.DRIVER and delivery.get("assigned_driver_id") == actor.user_id:
            return delivery
        raise AuthorizationError("Accès refusé à cette livraison")

    async def timeline(self, actor: Actor, delivery_id: str) -> list:
        delivery = await self.get_delivery(actor, delivery_id)
        return delivery.get("status_history", [])

    async def list_deliveries(
        self,
        actor: Actor,
        status: Optional[DeliveryStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> dict:
        query: dict = {}
        if actor.role == UserRole.CUSTOMER:
            query["customer_id"] = actor.user_id
        elif actor.role == UserRole.DRIVER:
            query["assigned_driver_id"] = actor.user_id
        if status:
            query["status"] = status.value

        cursor = db.deliveries.find(query).sort("created_at", -1).skip(skip).limit(limit)
        deliveries = [decode_doc(d) for d in await cursor.to_list(length=limit)]
        total = await db.deliveries.count_documents(query)
        return {"deliveries": deliveries, "total": total}
