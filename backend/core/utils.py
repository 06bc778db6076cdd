from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum

from bson.decimal128 import Decimal128

CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value) -> Decimal:
    """
    Convertit un montant (int, float, str, Decimal, Decimal128) en Decimal.
    Les float passent par str() pour éviter 0.1 → 0.1000000000000000055...
    Lève ValueError si la valeur n'est pas un nombre.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Montant invalide : {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Montant invalide : {value!r}") from exc


def money(value) -> Decimal:
    """Montant arrondi au centime (demi vers le haut)."""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def encode_doc(value):
    """Python → BSON : Decimal → Decimal128, Enum → valeur, récursif."""
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_doc(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_doc(v) for v in value]
    return value


def decode_doc(value):
    """BSON → Python : Decimal128 → Decimal, retire les _id Mongo."""
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: decode_doc(v) for k, v in value.items() if k != "_id"}
    if isinstance(value, list):
        return [decode_doc(v) for v in value]
    return value
