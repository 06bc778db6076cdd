"""Fixtures pytest : base Mongo en mémoire, utilisateurs, véhicules, livraisons."""
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

import database
from core.utils import encode_doc, utcnow
from models.common import Location, UserRole
from models.delivery import BookingCreate, PackageDetails
from models.event import DeliveryEvent
from models.user import Actor, User, DriverProfile
from models.vehicle import Vehicle
from services.delivery_service import DeliveryStateMachine
from services.event_sink import EventSink


class RecordingEventSink(EventSink):
    """Garde les événements émis pour les assertions."""

    def __init__(self) -> None:
        self.events: list[DeliveryEvent] = []

    def emit(self, event: DeliveryEvent) -> None:
        self.events.append(event)

    def statuses(self, delivery_id: str) -> list[str]:
        return [
            e.status for e in self.events
            if e.delivery_id == delivery_id and e.event_type == "status"
        ]


class FailingEventSink(EventSink):
    def emit(self, event: DeliveryEvent) -> None:
        raise RuntimeError("fan-out indisponible")


@pytest_asyncio.fixture
async def mock_db() -> AsyncGenerator:
    """Base neuve par test, attachée au proxy `database.db`."""
    client = AsyncMongoMockClient()
    instance = client[f"fleetline_test_{uuid.uuid4().hex[:8]}"]
    database.bind_db(instance)
    await database.create_indexes(instance)
    yield instance
    database.bind_db(None)


async def insert_user(db, user_id: str, role: UserRole, name: str, **extra) -> Actor:
    now = utcnow()
    user = User(
        user_id=user_id,
        name=name,
        role=role,
        driver_profile=DriverProfile() if role == UserRole.DRIVER else None,
        created_at=now,
        updated_at=now,
        **extra,
    )
    await db.users.insert_one(encode_doc(user.model_dump()))
    return Actor(user_id=user_id, role=role)


async def insert_vehicle(db, vehicle_id: str, plate: str, **extra) -> dict:
    now = utcnow()
    vehicle = Vehicle(
        vehicle_id=vehicle_id,
        name=f"Camion {plate}",
        type="Truck",
        plate_number=plate,
        capacity_kg=1000,
        created_at=now,
        updated_at=now,
        **extra,
    )
    doc = encode_doc(vehicle.model_dump())
    await db.vehicles.insert_one(doc)
    return vehicle.model_dump()


@pytest_asyncio.fixture
async def admin(mock_db) -> Actor:
    return await insert_user(mock_db, "usr_admin", UserRole.ADMIN, "Asha Admin")


@pytest_asyncio.fixture
async def customer(mock_db) -> Actor:
    return await insert_user(mock_db, "usr_cust1", UserRole.CUSTOMER, "Ravi Kumar")


@pytest_asyncio.fixture
async def other_customer(mock_db) -> Actor:
    return await insert_user(mock_db, "usr_cust2", UserRole.CUSTOMER, "Meera Shah")


@pytest_asyncio.fixture
async def driver(mock_db) -> Actor:
    return await insert_user(mock_db, "usr_drv1", UserRole.DRIVER, "Arjun Singh")


@pytest_asyncio.fixture
async def other_driver(mock_db) -> Actor:
    return await insert_user(mock_db, "usr_drv2", UserRole.DRIVER, "Kiran Rao")


@pytest_asyncio.fixture
async def vehicle(mock_db) -> dict:
    return await insert_vehicle(mock_db, "VEH-AAA001", "MH12AB1234")


@pytest_asyncio.fixture
async def other_vehicle(mock_db) -> dict:
    return await insert_vehicle(mock_db, "VEH-BBB002", "MH12CD5678")


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def machine(events) -> DeliveryStateMachine:
    return DeliveryStateMachine(events)


def make_booking(weight=10, distance=20, cluster="Medium", **overrides) -> BookingCreate:
    data = dict(
        pickup_location=Location(address="12 MG Road, Pune", lat=18.52, lng=73.85),
        drop_location=Location(address="4 FC Road, Pune", lat=18.53, lng=73.84),
        package_details=PackageDetails(weight=weight, cluster=cluster, description="Cartons"),
        estimated_distance=distance,
        contact_number="+919800000000",
    )
    data.update(overrides)
    return BookingCreate(**data)


@pytest_asyncio.fixture
async def booked(mock_db, machine, customer) -> dict:
    return await machine.book(customer, make_booking())


@pytest_asyncio.fixture
async def approved(machine, admin, booked) -> dict:
    return await machine.approve(admin, booked["delivery_id"])


@pytest_asyncio.fixture
async def assigned(machine, admin, driver, vehicle, approved) -> dict:
    return await machine.assign(
        admin, approved["delivery_id"], driver.user_id, vehicle["vehicle_id"], 20,
    )


@pytest_asyncio.fixture
async def accepted(machine, driver, assigned) -> dict:
    return await machine.accept(driver, assigned["delivery_id"])


@pytest_asyncio.fixture
async def on_route(machine, driver, accepted) -> dict:
    return await machine.start(driver, accepted["delivery_id"])
