import uuid

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError
from sqlalchemy.orm import Session

from storefront.core.security import decode_token
from storefront.db.session import get_db
from storefront.models.user import User

ACCESS_COOKIE = "access_token"

NOT_AUTHENTICATED = "Utilisateur non authentifié."


def _unauthorized(detail: str = NOT_AUTHENTICATED) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _read_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    auth = request.headers.get("authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = _read_token(request)
    if not token:
        raise _unauthorized()

    try:
        payload = decode_token(token)
    except JWTError:
        raise _unauthorized("Jeton d'accès invalide.")

    if payload.get("type") != "access":
        raise _unauthorized("Jeton d'accès invalide.")

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("Jeton d'accès invalide.")

    user = db.get(User, user_id)
    if not user:
        raise _unauthorized("Utilisateur introuvable.")

    return user
