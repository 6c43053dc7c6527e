from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.deps import ACCESS_COOKIE, get_current_user
from storefront.core.security import hash_password, make_access_token, verify_password
from storefront.db.session import get_db
from storefront.models.user import User
from storefront.schemas.auth import LoginIn, SignupIn, UserOut

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _set_auth_cookie(resp: Response, access: str):
    common = dict(
        httponly=True,
        secure=settings.COOKIE_SECURE or settings.is_prod,
        samesite="lax",
        path="/",
    )
    if settings.COOKIE_DOMAIN:
        common["domain"] = settings.COOKIE_DOMAIN

    resp.set_cookie(
        key=ACCESS_COOKIE,
        value=access,
        max_age=settings.ACCESS_TTL_MIN * 60,
        **common,
    )


def _clear_auth_cookie(resp: Response):
    common = dict(path="/")
    if settings.COOKIE_DOMAIN:
        common["domain"] = settings.COOKIE_DOMAIN
    resp.delete_cookie(ACCESS_COOKIE, **common)


def _user_out(user: User) -> UserOut:
    return UserOut(id=str(user.id), email=user.email, role=user.role.value)


@router.post("/signup", response_model=UserOut, status_code=201)
def signup(payload: SignupIn, response: Response, db: Session = Depends(get_db)):
    email = payload.email.lower().strip()

    existing = db.scalar(select(User).where(User.email == email))
    if existing:
        raise HTTPException(status_code=409, detail="Cet email est déjà utilisé.")

    user = User(
        email=email,
        password_hash=hash_password(payload.password),
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    _set_auth_cookie(response, make_access_token(str(user.id), user.role.value))
    return _user_out(user)


@router.post("/login", response_model=UserOut)
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    email = payload.email.lower().strip()
    user = db.scalar(select(User).where(User.email == email))

    if not user or not user.password_hash:
        raise HTTPException(status_code=401, detail="Identifiants invalides.")

    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Identifiants invalides.")

    _set_auth_cookie(response, make_access_token(str(user.id), user.role.value))
    return _user_out(user)


@router.post("/logout")
def logout(response: Response):
    _clear_auth_cookie(response)
    return {"ok": True}


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return _user_out(user)
