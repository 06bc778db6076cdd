import asyncio
from decimal import Decimal

import pytest

from core.exceptions import (
    AlreadyRatedError, AuthorizationError, ConcurrentModificationError,
    ConflictError, InconsistentLedgerError, InsufficientBalanceError,
    InvalidDriverError, InvalidStateError, InvalidVehicleError,
    NotApprovedError, NotFoundError, ValidationError,
)
from models.common import DriverStatus, Location, UserRole
from models.delivery import PackageDetails, RatingCreate
from services import ledger_service, resource_service
from services.delivery_service import DeliveryStateMachine
from services.reconciliation_service import run_reconciliation
from conftest import FailingEventSink, insert_user, insert_vehicle, make_booking


async def _vehicle(db, vehicle_id):
    return await db.vehicles.find_one({"vehicle_id": vehicle_id})


async def _driver(db, driver_id):
    return await db.users.find_one({"user_id": driver_id})


def _history_matches(delivery):
    return delivery["status_history"][-1]["status"] == delivery["status"]


# ── Réservation ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_book_creates_pending_delivery_with_pricing(mock_db, machine, events, customer):
    delivery = await machine.book(customer, make_booking())

    assert delivery["status"] == "Pending"
    assert delivery["delivery_id"].startswith("DEL-")
    assert delivery["pricing"]["total_price"] == Decimal("360.00")
    assert delivery["driver_earnings"]["net_earnings"] == Decimal("252.00")
    assert delivery["package_details"]["cluster"] == "Medium"
    assert _history_matches(delivery)
    assert events.statuses(delivery["delivery_id"]) == ["Pending"]


@pytest.mark.asyncio
async def test_book_defaults_cluster_to_small(mock_db, machine, customer):
    delivery = await machine.book(customer, make_booking(package_details=PackageDetails(weight=10)))

    assert delivery["package_details"]["cluster"] == "Small"
    assert delivery["pricing"]["total_price"] == Decimal("310.00")


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"weight": 0},
    {"distance": -1},
    {"contact_number": "  "},
    {"pickup_location": Location(address="")},
    {"drop_location": Location()},
])
async def test_book_rejects_invalid_input_without_persisting(mock_db, machine, customer, overrides):
    with pytest.raises(ValidationError):
        await machine.book(customer, make_booking(**overrides))

    assert await mock_db.deliveries.count_documents({}) == 0


@pytest.mark.asyncio
async def test_only_customers_book(mock_db, machine, driver):
    with pytest.raises(AuthorizationError):
        await machine.book(driver, make_booking())


# ── Approbation / affectation ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_requires_admin_and_pending(mock_db, machine, admin, customer, booked):
    with pytest.raises(AuthorizationError):
        await machine.approve(customer, booked["delivery_id"])

    approved = await machine.approve(admin, booked["delivery_id"])
    assert approved["status"] == "Approved"
    assert approved["admin_approved"] is True

    with pytest.raises(InvalidStateError):
        await machine.approve(admin, booked["delivery_id"])


@pytest.mark.asyncio
async def test_unknown_delivery(mock_db, machine, admin):
    with pytest.raises(NotFoundError):
        await machine.approve(admin, "DEL-00000000-NOPE00")


@pytest.mark.asyncio
async def test_assign_unapproved_delivery_fails(mock_db, machine, admin, driver, vehicle, booked):
    with pytest.raises(NotApprovedError):
        await machine.assign(admin, booked["delivery_id"], driver.user_id, vehicle["vehicle_id"], 20)

    doc = await _vehicle(mock_db, vehicle["vehicle_id"])
    assert doc["held_by"] is None


@pytest.mark.asyncio
async def test_assign_requires_ids_and_distance(mock_db, machine, admin, approved):
    with pytest.raises(ValidationError):
        await machine.assign(admin, approved["delivery_id"], None, "VEH-AAA001", 20)
    with pytest.raises(ValidationError):
        await machine.assign(admin, approved["delivery_id"], "usr_drv1", "VEH-AAA001", 0)


@pytest.mark.asyncio
async def test_assign_validates_driver_and_vehicle(mock_db, machine, admin, customer, driver, vehicle, approved):
    with pytest.raises(InvalidDriverError):
        await machine.assign(admin, approved["delivery_id"], customer.user_id, vehicle["vehicle_id"], 20)
    with pytest.raises(InvalidVehicleError):
        await machine.assign(admin, approved["delivery_id"], driver.user_id, "VEH-NOPE00", 20)

    await insert_user(mock_db, "usr_drv_off", UserRole.DRIVER, "Inactif", is_active=False)
    with pytest.raises(InvalidDriverError):
        await machine.assign(admin, approved["delivery_id"], "usr_drv_off", vehicle["vehicle_id"], 20)


@pytest.mark.asyncio
async def test_driver_on_leave_cannot_be_assigned(mock_db, machine, admin, driver, vehicle, approved):
    await resource_service.update_driver_status(admin, driver.user_id, DriverStatus.ON_LEAVE)

    with pytest.raises(InvalidDriverError):
        await machine.assign(admin, approved["delivery_id"], driver.user_id, vehicle["vehicle_id"], 20)

    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["held_by"] is None


@pytest.mark.asyncio
async def test_assign_recomputes_pricing_from_new_distance(mock_db, machine, admin, driver, vehicle, approved):
    assigned = await machine.assign(admin, approved["delivery_id"], driver.user_id, vehicle["vehicle_id"], 30)

    assert assigned["status"] == "Assigned"
    assert assigned["pricing"]["distance_charge"] == Decimal("240.00")
    assert assigned["pricing"]["total_price"] == Decimal("440.00")
    assert assigned["driver_earnings"]["net_earnings"] == Decimal("308.00")
    assert assigned["estimated_duration"] == 30
    assert assigned["driver_accepted"] is False
    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["status"] == "Assigned"


@pytest.mark.asyncio
async def test_reassign_to_other_vehicle_releases_the_first(
    mock_db, machine, admin, driver, vehicle, other_vehicle, assigned,
):
    delivery_id = assigned["delivery_id"]
    updated = await machine.assign(admin, delivery_id, driver.user_id, other_vehicle["vehicle_id"], 20, 45)

    first = await _vehicle(mock_db, vehicle["vehicle_id"])
    second = await _vehicle(mock_db, other_vehicle["vehicle_id"])
    assert first["status"] == "Available" and first["held_by"] is None
    assert second["status"] == "Assigned" and second["held_by"] == delivery_id
    assert updated["assigned_vehicle_id"] == other_vehicle["vehicle_id"]
    assert updated["estimated_duration"] == 45
    assert await mock_db.vehicles.count_documents({"held_by": delivery_id}) == 1


@pytest.mark.asyncio
async def test_vehicle_held_by_another_delivery_conflicts(
    mock_db, machine, admin, customer, other_driver, vehicle, assigned,
):
    second = await machine.book(customer, make_booking())
    await machine.approve(admin, second["delivery_id"])

    with pytest.raises(ConflictError):
        await machine.assign(admin, second["delivery_id"], other_driver.user_id, vehicle["vehicle_id"], 20)

    doc = await mock_db.deliveries.find_one({"delivery_id": second["delivery_id"]})
    assert doc["status"] == "Approved"
    assert doc["assigned_driver_id"] is None


@pytest.mark.asyncio
async def test_busy_driver_conflicts(mock_db, machine, admin, customer, driver, other_vehicle, assigned):
    second = await machine.book(customer, make_booking())
    await machine.approve(admin, second["delivery_id"])

    with pytest.raises(ConflictError):
        await machine.assign(admin, second["delivery_id"], driver.user_id, other_vehicle["vehicle_id"], 20)

    assert (await _vehicle(mock_db, other_vehicle["vehicle_id"]))["held_by"] is None


@pytest.mark.asyncio
async def test_failed_vehicle_switch_keeps_the_old_vehicle(
    mock_db, machine, admin, customer, driver, other_driver, vehicle, other_vehicle, assigned,
):
    # other_vehicle est pris par une autre livraison
    second = await machine.book(customer, make_booking())
    await machine.approve(admin, second["delivery_id"])
    await machine.assign(admin, second["delivery_id"], other_driver.user_id, other_vehicle["vehicle_id"], 20)

    with pytest.raises(ConflictError):
        await machine.assign(admin, assigned["delivery_id"], driver.user_id, other_vehicle["vehicle_id"], 20)

    first = await _vehicle(mock_db, vehicle["vehicle_id"])
    assert first["held_by"] == assigned["delivery_id"]


# ── Livreur ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_accept_only_by_assigned_driver(mock_db, machine, other_driver, driver, vehicle, assigned):
    with pytest.raises(AuthorizationError):
        await machine.accept(other_driver, assigned["delivery_id"])

    accepted = await machine.accept(driver, assigned["delivery_id"])
    assert accepted["status"] == "Accepted"
    assert accepted["driver_accepted"] is True
    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["status"] == "On Route"

    with pytest.raises(InvalidStateError):
        await machine.accept(driver, assigned["delivery_id"])


@pytest.mark.asyncio
async def test_start_requires_accepted(mock_db, machine, driver, assigned):
    with pytest.raises(InvalidStateError):
        await machine.start(driver, assigned["delivery_id"])


@pytest.mark.asyncio
async def test_start_records_start_time(mock_db, machine, driver, accepted):
    started = await machine.start(driver, accepted["delivery_id"])

    assert started["status"] == "On Route"
    assert started["start_time"] is not None


@pytest.mark.asyncio
async def test_reject_frees_delivery_for_reassignment(
    mock_db, machine, admin, driver, other_driver, vehicle, accepted,
):
    delivery_id = accepted["delivery_id"]
    rejected = await machine.reject(driver, delivery_id, "Panne moteur")

    assert rejected["status"] == "Rejected"
    assert rejected["assigned_driver_id"] is None
    assert rejected["assigned_vehicle_id"] is None
    assert rejected["driver_rejected_reason"] == "Panne moteur"
    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["status"] == "Available"

    reassigned = await machine.assign(admin, delivery_id, other_driver.user_id, vehicle["vehicle_id"], 20)
    assert reassigned["status"] == "Assigned"
    assert reassigned["driver_rejected_reason"] is None


@pytest.mark.asyncio
async def test_reject_by_other_driver_is_forbidden(mock_db, machine, other_driver, assigned):
    with pytest.raises(AuthorizationError):
        await machine.reject(other_driver, assigned["delivery_id"])


@pytest.mark.asyncio
async def test_complete_credits_driver_once_and_frees_vehicle(mock_db, machine, driver, vehicle, on_route):
    delivery_id = on_route["delivery_id"]
    done = await machine.complete(driver, delivery_id)

    assert done["status"] == "Delivered"
    assert done["end_time"] is not None
    assert done["payment_status"] == "Paid"
    assert done["payment_method"] == "Cash"
    assert done["driver_earnings"]["paid_to_driver"] is True
    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["status"] == "Available"

    wallet = await ledger_service.get_wallet(driver.user_id)
    assert wallet["balance"] == Decimal("252.00")
    assert wallet["total_earnings"] == Decimal("252.00")

    performance = (await _driver(mock_db, driver.user_id))["driver_profile"]["performance"]
    assert performance["completed_trips"] == 1
    assert performance["total_trips"] == 1

    with pytest.raises(InvalidStateError):
        await machine.complete(driver, delivery_id)
    assert (await ledger_service.get_wallet(driver.user_id))["balance"] == Decimal("252.00")


@pytest.mark.asyncio
async def test_failed_earnings_credit_is_reported_then_settled_once(
    mock_db, machine, admin, driver, on_route, monkeypatch,
):
    delivery_id = on_route["delivery_id"]
    real_credit = ledger_service.credit

    async def broken_credit(*args, **kwargs):
        raise TimeoutError("mongo injoignable")

    monkeypatch.setattr(ledger_service, "credit", broken_credit)
    with pytest.raises(InconsistentLedgerError):
        await machine.complete(driver, delivery_id)

    doc = await machine.get_delivery(admin, delivery_id)
    assert doc["status"] == "Delivered"
    assert doc["driver_earnings"]["paid_to_driver"] is False

    monkeypatch.setattr(ledger_service, "credit", real_credit)
    settled = await machine.settle_driver_earnings(admin, delivery_id)
    await machine.settle_driver_earnings(admin, delivery_id)

    assert settled["driver_earnings"]["paid_to_driver"] is True
    assert (await ledger_service.get_wallet(driver.user_id))["balance"] == Decimal("252.00")


@pytest.mark.asyncio
async def test_update_location_moves_delivery_and_vehicle(mock_db, machine, events, driver, vehicle, accepted):
    updated = await machine.update_location(driver, accepted["delivery_id"], 18.6, 73.9)

    assert updated["current_location"]["lat"] == 18.6
    moved = await _vehicle(mock_db, vehicle["vehicle_id"])
    assert moved["current_location"]["lng"] == 73.9
    assert moved["status"] == "On Route"
    assert events.events[-1].event_type == "location"


@pytest.mark.asyncio
async def test_update_location_outside_transit_is_refused(mock_db, machine, driver, assigned):
    with pytest.raises(InvalidStateError):
        await machine.update_location(driver, assigned["delivery_id"], 18.6, 73.9)


# ── Annulation ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_pending_refunds_everything(mock_db, machine, customer, booked):
    cancelled = await machine.cancel(customer, booked["delivery_id"], "Plus besoin")

    assert cancelled["status"] == "Cancelled"
    assert cancelled["cancellation"]["refund_amount"] == Decimal("360.00")
    assert cancelled["cancellation"]["refund_status"] == "Processed"
    assert (await ledger_service.get_wallet(customer.user_id))["balance"] == Decimal("360.00")


@pytest.mark.asyncio
async def test_cancel_accepted_refunds_eighty_percent(mock_db, machine, customer, driver, vehicle, accepted):
    cancelled = await machine.cancel(customer, accepted["delivery_id"])

    assert cancelled["cancellation"]["refund_amount"] == Decimal("288.00")
    assert (await ledger_service.get_wallet(customer.user_id))["balance"] == Decimal("288.00")
    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["status"] == "Available"

    profile = (await _driver(mock_db, driver.user_id))["driver_profile"]
    assert profile["performance"]["cancelled_trips"] == 1
    assert profile["status"] == "Active"


@pytest.mark.asyncio
async def test_admin_cancel_on_route_refunds_half(mock_db, machine, admin, customer, on_route):
    cancelled = await machine.cancel(admin, on_route["delivery_id"], "Adresse introuvable")

    assert cancelled["cancellation"]["refund_amount"] == Decimal("180.00")
    assert cancelled["cancellation"]["cancelled_by"] == admin.user_id


@pytest.mark.asyncio
async def test_cancel_rejected_delivery_refunds_nothing(mock_db, machine, customer, driver, assigned):
    await machine.reject(driver, assigned["delivery_id"])
    cancelled = await machine.cancel(customer, assigned["delivery_id"])

    assert cancelled["cancellation"]["refund_amount"] == Decimal("0.00")
    assert cancelled["cancellation"]["refund_status"] == "NotApplicable"
    assert await mock_db.wallet_transactions.count_documents({}) == 0


@pytest.mark.asyncio
async def test_cancel_permissions_and_terminal_states(mock_db, machine, other_customer, driver, customer, booked):
    with pytest.raises(AuthorizationError):
        await machine.cancel(other_customer, booked["delivery_id"])
    with pytest.raises(AuthorizationError):
        await machine.cancel(driver, booked["delivery_id"])

    await machine.cancel(customer, booked["delivery_id"])
    with pytest.raises(InvalidStateError):
        await machine.cancel(customer, booked["delivery_id"])


@pytest.mark.asyncio
async def test_deprecated_cancel_booking_does_not_refund(mock_db, machine, customer, vehicle, assigned):
    with pytest.warns(DeprecationWarning):
        cancelled = await machine.cancel_booking(customer, assigned["delivery_id"])

    assert cancelled["status"] == "Cancelled"
    assert cancelled.get("cancellation") is None
    assert await mock_db.wallet_transactions.count_documents({}) == 0
    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["held_by"] is None


# ── Paiement wallet ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pay_with_wallet(mock_db, machine, customer, booked):
    await ledger_service.add_money(customer, 500)

    paid = await machine.pay_with_wallet(customer, booked["delivery_id"])

    assert paid["payment_status"] == "Paid"
    assert paid["payment_method"] == "Wallet"
    assert paid["paid_at"] is not None
    assert (await ledger_service.get_wallet(customer.user_id))["balance"] == Decimal("140.00")
    assert (await ledger_service.get_platform_wallet())["total_revenue"] == Decimal("360.00")

    with pytest.raises(ConflictError):
        await machine.pay_with_wallet(customer, booked["delivery_id"])


@pytest.mark.asyncio
async def test_pay_with_insufficient_wallet_leaves_payment_pending(mock_db, machine, customer, booked):
    await ledger_service.add_money(customer, 100)

    with pytest.raises(InsufficientBalanceError):
        await machine.pay_with_wallet(customer, booked["delivery_id"])

    doc = await machine.get_delivery(customer, booked["delivery_id"])
    assert doc["payment_status"] == "Pending"
    assert (await ledger_service.get_wallet(customer.user_id))["balance"] == Decimal("100.00")


@pytest.mark.asyncio
async def test_debited_payment_interrupted_by_timeout_is_paid_and_reported(
    mock_db, machine, customer, booked, monkeypatch,
):
    await ledger_service.add_money(customer, 500)
    real_post = ledger_service.post

    async def post_then_timeout(*args, **kwargs):
        tx = await real_post(*args, **kwargs)
        if (kwargs.get("idempotency_key") or "").endswith(":out"):
            raise TimeoutError("réponse perdue")
        return tx

    monkeypatch.setattr(ledger_service, "post", post_then_timeout)

    with pytest.raises(InconsistentLedgerError):
        await machine.pay_with_wallet(customer, booked["delivery_id"])

    doc = await machine.get_delivery(customer, booked["delivery_id"])
    assert doc["payment_status"] == "Paid"
    assert (await ledger_service.get_wallet(customer.user_id))["balance"] == Decimal("140.00")

    report = await run_reconciliation()
    assert len(report["partial_transfers"]) == 1
    assert report["partial_transfers"][0]["delivery_id"] == booked["delivery_id"]


@pytest.mark.asyncio
async def test_completed_wallet_payment_stays_wallet(mock_db, machine, customer, driver, on_route):
    await ledger_service.add_money(customer, 400)
    await machine.pay_with_wallet(customer, on_route["delivery_id"])

    done = await machine.complete(driver, on_route["delivery_id"])

    assert done["payment_method"] == "Wallet"


# ── Notation ──────────────────────────────────────────────────────────────────

async def _deliver(machine, admin, customer, driver, vehicle_id):
    delivery = await machine.book(customer, make_booking())
    delivery_id = delivery["delivery_id"]
    await machine.approve(admin, delivery_id)
    await machine.assign(admin, delivery_id, driver.user_id, vehicle_id, 20)
    await machine.accept(driver, delivery_id)
    await machine.start(driver, delivery_id)
    await machine.complete(driver, delivery_id)
    return delivery_id


@pytest.mark.asyncio
async def test_rating_average_is_simple_mean(mock_db, machine, admin, customer, driver, vehicle):
    first = await _deliver(machine, admin, customer, driver, vehicle["vehicle_id"])
    second = await _deliver(machine, admin, customer, driver, vehicle["vehicle_id"])

    await machine.rate(customer, first, RatingCreate(stars=5, feedback="Parfait", categories={"punctuality": 5}))
    await machine.rate(customer, second, RatingCreate(stars=2, tags=["retard"]))

    profile = (await _driver(mock_db, driver.user_id))["driver_profile"]
    assert profile["performance"]["average_rating"] == 3.5
    assert len(profile["ratings"]) == 2
    assert await mock_db.feedbacks.count_documents({"driver_id": driver.user_id}) == 2


@pytest.mark.asyncio
async def test_rating_twice_fails(mock_db, machine, admin, customer, driver, vehicle):
    delivery_id = await _deliver(machine, admin, customer, driver, vehicle["vehicle_id"])
    await machine.rate(customer, delivery_id, RatingCreate(stars=4))

    with pytest.raises(AlreadyRatedError):
        await machine.rate(customer, delivery_id, RatingCreate(stars=1))


def _write_between_read_and_commit(machine, mock_db, monkeypatch, concurrent_update):
    real_load = machine._load
    done = []

    async def load_then_concurrent_write(delivery_id):
        delivery = await real_load(delivery_id)
        if not done:
            done.append(delivery_id)
            await mock_db.deliveries.update_one(
                {"delivery_id": delivery_id}, {**concurrent_update, "$inc": {"version": 1}},
            )
        return delivery

    monkeypatch.setattr(machine, "_load", load_then_concurrent_write)


@pytest.mark.asyncio
async def test_rating_losing_to_an_unrelated_write_is_not_already_rated(
    mock_db, machine, admin, customer, driver, vehicle, monkeypatch,
):
    delivery_id = await _deliver(machine, admin, customer, driver, vehicle["vehicle_id"])
    _write_between_read_and_commit(
        machine, mock_db, monkeypatch, {"$set": {"driver_earnings.paid_to_driver": True}},
    )

    with pytest.raises(ConcurrentModificationError) as info:
        await machine.rate(customer, delivery_id, RatingCreate(stars=4))

    assert not isinstance(info.value, AlreadyRatedError)
    assert (await mock_db.deliveries.find_one({"delivery_id": delivery_id})).get("rating") is None


@pytest.mark.asyncio
async def test_rating_losing_to_a_concurrent_rating_is_already_rated(
    mock_db, machine, admin, customer, driver, vehicle, monkeypatch,
):
    delivery_id = await _deliver(machine, admin, customer, driver, vehicle["vehicle_id"])
    _write_between_read_and_commit(
        machine, mock_db, monkeypatch, {"$set": {"rating": {"stars": 5, "feedback": None, "rated_at": None}}},
    )

    with pytest.raises(AlreadyRatedError):
        await machine.rate(customer, delivery_id, RatingCreate(stars=1))


@pytest.mark.asyncio
async def test_rating_rules(mock_db, machine, customer, other_customer, booked):
    with pytest.raises(ValidationError):
        await machine.rate(customer, booked["delivery_id"], RatingCreate(stars=6))
    with pytest.raises(InvalidStateError):
        await machine.rate(customer, booked["delivery_id"], RatingCreate(stars=5))
    with pytest.raises(AuthorizationError):
        await machine.rate(other_customer, booked["delivery_id"], RatingCreate(stars=5))


# ── Invariants transverses ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_history_tracks_every_transition(mock_db, machine, events, admin, customer, driver, vehicle):
    delivery = await machine.book(customer, make_booking())
    delivery_id = delivery["delivery_id"]
    steps = [
        machine.approve(admin, delivery_id),
        machine.assign(admin, delivery_id, driver.user_id, vehicle["vehicle_id"], 20),
        machine.accept(driver, delivery_id),
        machine.start(driver, delivery_id),
        machine.complete(driver, delivery_id),
    ]
    for step in steps:
        assert _history_matches(await step)

    final = await machine.get_delivery(admin, delivery_id)
    assert [h["status"] for h in final["status_history"]] == [
        "Pending", "Approved", "Assigned", "Accepted", "On Route", "Delivered",
    ]
    assert all(h["updated_by"] for h in final["status_history"])
    assert events.statuses(delivery_id) == [h["status"] for h in final["status_history"]]


@pytest.mark.asyncio
async def test_failing_event_sink_never_blocks_transitions(mock_db, admin, customer):
    machine = DeliveryStateMachine(FailingEventSink())

    delivery = await machine.book(customer, make_booking())
    approved = await machine.approve(admin, delivery["delivery_id"])

    assert approved["status"] == "Approved"


@pytest.mark.asyncio
async def test_concurrent_approvals_apply_once(mock_db, machine, admin, booked):
    results = await asyncio.gather(
        machine.approve(admin, booked["delivery_id"]),
        machine.approve(admin, booked["delivery_id"]),
        return_exceptions=True,
    )

    assert sum(isinstance(r, InvalidStateError) for r in results) == 1
    doc = await machine.get_delivery(admin, booked["delivery_id"])
    assert len(doc["status_history"]) == 2


@pytest.mark.asyncio
async def test_stale_write_is_rejected(mock_db, machine, admin, booked):
    await machine.approve(admin, booked["delivery_id"])

    with pytest.raises(ConcurrentModificationError):
        await machine._commit(booked, admin, fields={"special_instructions": "stale"})


@pytest.mark.asyncio
async def test_access_control_on_read(mock_db, machine, admin, other_customer, other_driver, customer, booked):
    assert (await machine.get_delivery(customer, booked["delivery_id"]))["delivery_id"] == booked["delivery_id"]
    assert await machine.timeline(admin, booked["delivery_id"])
    with pytest.raises(AuthorizationError):
        await machine.get_delivery(other_customer, booked["delivery_id"])
    with pytest.raises(AuthorizationError):
        await machine.get_delivery(other_driver, booked["delivery_id"])


@pytest.mark.asyncio
async def test_list_is_scoped_to_the_caller(mock_db, machine, admin, customer, other_customer, booked):
    await machine.book(other_customer, make_booking())

    mine = await machine.list_deliveries(customer)
    everything = await machine.list_deliveries(admin)

    assert mine["total"] == 1
    assert everything["total"] == 2


@pytest.mark.asyncio
async def test_delete_releases_vehicle(mock_db, machine, admin, customer, vehicle, assigned):
    with pytest.raises(AuthorizationError):
        await machine.delete_delivery(customer, assigned["delivery_id"])

    await machine.delete_delivery(admin, assigned["delivery_id"])

    assert await mock_db.deliveries.count_documents({}) == 0
    assert (await _vehicle(mock_db, vehicle["vehicle_id"]))["status"] == "Available"


@pytest.mark.asyncio
async def test_vehicle_out_of_service_cannot_be_assigned(mock_db, machine, admin, driver, approved):
    await insert_vehicle(mock_db, "VEH-OOS001", "GJ05XY0001", status="Out of Service")

    with pytest.raises(InvalidVehicleError):
        await machine.assign(admin, approved["delivery_id"], driver.user_id, "VEH-OOS001", 20)
