"""Request-scoped dependencies: the calling user, blob store and notifier."""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from treasury.config import settings
from treasury.database import get_db
from treasury.models.domain import User
from treasury.services.notifier import EmailNotifier, build_notifier
from treasury.services.storage import LocalBlobStore


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> User:
    """Resolve the `X-User-Id` header to a user profile."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "message": "Sign in required", "details": {}},
        )
    user = db.query(User).filter(User.id == x_user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "message": "Unknown user", "details": {}},
        )
    return user


def get_optional_user(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> Optional[User]:
    if not x_user_id:
        return None
    return db.query(User).filter(User.id == x_user_id).first()


def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(settings.STORAGE_ROOT, settings.STORAGE_BASE_URL)


def get_notifier() -> EmailNotifier:
    return build_notifier()
