from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "Fleetline"
    DB_TIMEOUT_MS: int = 5000   # selection serveur + socket, jamais de blocage infini

    # JWT (émis par le service d'auth externe, seulement vérifié ici)
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120

    # Tarification (INR)
    CURRENCY:      str   = "INR"
    BASE_PRICE:    float = 50.0
    PRICE_PER_KG:  float = 10.0
    PRICE_PER_KM:  float = 8.0
    CLUSTER_CHARGES: Dict[str, float] = {
        "Small":       0.0,
        "Medium":      50.0,
        "Large":       100.0,
        "Extra Large": 200.0,
    }

    # Part du prix reversée au livreur
    DRIVER_COMMISSION_RATE: float = 0.70

    # Remboursement à l'annulation, selon le statut au moment de l'annulation
    REFUND_RATES: Dict[str, float] = {
        "Pending":  1.0,
        "Approved": 1.0,
        "Assigned": 0.9,
        "Accepted": 0.8,
        "On Route": 0.5,
    }

    # Compte plateforme (wallet unique, encaisse les paiements)
    PLATFORM_ACCOUNT_ID: str = "platform"

    DEFAULT_ESTIMATED_DURATION_MIN: int = 30

    # Réconciliation : détection seulement, jamais de re-jeu automatique
    RECONCILE_INTERVAL_SECONDS: int = 300
    STALE_TRANSFER_MINUTES:     int = 10

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],  # cherche dans backend/ puis dans la racine
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
