"""
Service de tarification.

Formule :
  prix = BASE_PRICE
       + poids_kg    × PRICE_PER_KG
       + distance_km × PRICE_PER_KM
       + supplément gabarit (Small 0, Medium 50, Large 100, Extra Large 200)

Gains livreur = prix × taux de commission (0.7 par défaut).

Fonctions pures : aucun accès base, aucun état caché. Le prix est toujours
recalculé entièrement à partir des entrées courantes, jamais ajusté.
"""
from decimal import Decimal
from typing import Optional

from config import settings
from core.utils import money, to_decimal
from models.delivery import Pricing, DriverEarnings


def _cluster_key(cluster: Optional[str]) -> str:
    # "Extra Large", "ExtraLarge" et "extra large" désignent le même gabarit
    return (cluster or "").replace(" ", "").replace("_", "").lower()


_CLUSTER_TABLE = {
    _cluster_key(name): to_decimal(charge)
    for name, charge in settings.CLUSTER_CHARGES.items()
}


def cluster_charge(cluster: Optional[str]) -> Decimal:
    """Supplément gabarit ; 0 pour un gabarit inconnu."""
    return _CLUSTER_TABLE.get(_cluster_key(cluster), Decimal("0"))


def calculate_price(weight_kg, distance_km, cluster: Optional[str] = "Small") -> Pricing:
    weight   = to_decimal(weight_kg)
    distance = to_decimal(distance_km)

    base            = money(settings.BASE_PRICE)
    weight_charge   = money(weight * to_decimal(settings.PRICE_PER_KG))
    distance_charge = money(distance * to_decimal(settings.PRICE_PER_KM))
    size_charge     = money(cluster_charge(cluster))

    return Pricing(
        base_price=base,
        weight_charge=weight_charge,
        distance_charge=distance_charge,
        cluster_charge=size_charge,
        total_price=base + weight_charge + distance_charge + size_charge,
        currency=settings.CURRENCY,
    )


def calculate_driver_earnings(total_price, commission_rate=None) -> DriverEarnings:
    rate  = to_decimal(settings.DRIVER_COMMISSION_RATE if commission_rate is None else commission_rate)
    total = money(total_price)
    return DriverEarnings(
        amount=total,
        commission=rate,
        net_earnings=money(total * rate),
    )


def refund_rate(status: str) -> Decimal:
    """Part remboursée selon le statut au moment de l'annulation (0 si absent du barème)."""
    key = status.value if hasattr(status, "value") else status
    return to_decimal(settings.REFUND_RATES.get(key, 0.0))
