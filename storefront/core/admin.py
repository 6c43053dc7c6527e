from fastapi import Depends, HTTPException, status
from storefront.core.deps import get_current_user
from storefront.core.config import settings
from storefront.models.user import User, UserRole


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role == UserRole.ADMIN:
        return user
    if settings.ADMIN_EMAIL and user.email.lower() == settings.ADMIN_EMAIL.lower():
        return user
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Accès interdit")
