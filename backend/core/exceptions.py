"""
Erreurs métier. Chaque classe porte son code HTTP ; le handler de main.py
les convertit en réponse JSON {"error": <kind>, "detail": <message>}.
"""
from fastapi import status


class DomainError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    kind: str = "domain_error"

    def __init__(self, detail: str = "", **context):
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.kind, "detail": self.detail}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(DomainError):
    """Entrée manquante ou invalide (rien n'est persisté)."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    kind = "validation_error"


class InvalidStateError(DomainError):
    """Transition demandée depuis un statut qui ne la permet pas."""
    status_code = status.HTTP_409_CONFLICT
    kind = "invalid_state"


class AuthorizationError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "forbidden"


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"

    def __init__(self, resource: str = "Ressource", **context):
        super().__init__(f"{resource} introuvable", **context)


class InsufficientBalanceError(DomainError):
    kind = "insufficient_balance"


class ConflictError(DomainError):
    """Ressource déjà tenue (véhicule, livreur) ou opération déjà faite."""
    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"


class InconsistentLedgerError(DomainError):
    """Séquence d'écritures partiellement appliquée : à réconcilier, pas à rejouer."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind = "inconsistent_ledger"


# ── Sous-types précis ─────────────────────────────────────────────────────────

class NotApprovedError(InvalidStateError):
    kind = "not_approved"


class AlreadyRatedError(InvalidStateError):
    kind = "already_rated"


class InvalidDriverError(ValidationError):
    kind = "invalid_driver"


class InvalidVehicleError(ValidationError):
    kind = "invalid_vehicle"


class ConcurrentModificationError(ConflictError):
    """Le document a changé entre la lecture et l'écriture (compare-and-set perdu)."""
    kind = "concurrent_modification"
