from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.security import verify_access_token
from models.common import UserRole
from models.user import Actor

bearer_scheme = HTTPBearer(auto_error=False)


def credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Identifiants invalides ou token expiré",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """
    Identité + rôle fournis par la couche d'auth (JWT : sub + role).
    Aucune authentification n'est faite ici, seulement la lecture du token.
    """
    if not credentials:
        raise credentials_exception()
    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise credentials_exception()

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in [r.value for r in UserRole]:
        raise credentials_exception()
    return Actor(user_id=user_id, role=UserRole(role))


def require_role(*roles: UserRole):
    """
    Dépendance qui vérifie que l'appelant possède l'un des rôles donnés.
    Usage : Depends(require_role(UserRole.ADMIN))
    """
    async def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Accès refusé")
        return actor
    return _check


# Raccourcis pratiques
require_admin    = require_role(UserRole.ADMIN)
require_driver   = require_role(UserRole.DRIVER)
require_customer = require_role(UserRole.CUSTOMER)


def get_delivery_service(request: Request):
    """Machine d'états construite au démarrage (lifespan) avec son event sink."""
    return request.app.state.delivery_service
