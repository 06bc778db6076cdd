import asyncio

import database
from core.security import create_access_token
from core.utils import encode_doc, utcnow
from models.common import UserRole
from models.user import User, DriverProfile
from models.vehicle import Vehicle
from services import ledger_service

# Comptes de test, les tokens affichés servent directement dans Swagger (/docs)
TEST_USERS = [
    {"user_id": "usr_admin_demo", "name": "Asha (Admin)",    "role": UserRole.ADMIN,    "email": "admin@fleetline.in"},
    {"user_id": "usr_drv_demo",   "name": "Arjun (Livreur)", "role": UserRole.DRIVER,   "email": "driver@fleetline.in"},
    {"user_id": "usr_cust_demo",  "name": "Ravi (Client)",   "role": UserRole.CUSTOMER, "email": "client@fleetline.in"},
]

TEST_VEHICLE = {
    "vehicle_id":   "VEH-DEMO01",
    "name":         "Tata Ace",
    "type":         "Van",
    "plate_number": "MH12AB1234",
    "capacity_kg":  750,
}


async def seed_test_accounts():
    await database.connect_db()
    db = database.get_db()
    now = utcnow()

    print("\n---------- CRÉATION DES COMPTES ------------")
    for u in TEST_USERS:
        existing = await db.users.find_one({"user_id": u["user_id"]})
        if existing:
            print(f"⏩ {u['role'].value.upper()} ({u['user_id']}) existe déjà.")
        else:
            user = User(
                **u,
                driver_profile=DriverProfile(vehicle_type="Van") if u["role"] == UserRole.DRIVER else None,
                created_at=now,
                updated_at=now,
            )
            await db.users.insert_one(encode_doc(user.model_dump()))
            print(f"✅ Créé : {u['role'].value.upper():<10} -> {u['user_id']} ({u['name']})")

        token = create_access_token({"sub": u["user_id"], "role": u["role"].value})
        print(f"   token : {token}")

    if not await db.vehicles.find_one({"vehicle_id": TEST_VEHICLE["vehicle_id"]}):
        vehicle = Vehicle(**TEST_VEHICLE, created_at=now, updated_at=now)
        await db.vehicles.insert_one(encode_doc(vehicle.model_dump()))
        print(f"✅ Véhicule {TEST_VEHICLE['plate_number']} créé")

    await ledger_service.get_platform_wallet()
    print("✅ Wallet plateforme prêt")

    print("\n-------------------------------------------")
    print("🚀 TERMINÉ ! COMPTES DE TEST CRÉÉS OU MIS À JOUR.")
    await database.close_db()


if __name__ == "__main__":
    asyncio.run(seed_test_accounts())
