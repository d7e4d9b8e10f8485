from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.orm import Session

from supportdesk.models.user_profile import UserProfile


def get_basic_profile_by_email(db: Session, email: str | None) -> UserProfile | None:
    """Return the staff profile for *email* (case-insensitive), or None."""
    if not email:
        return None
    return (
        db.query(UserProfile)
        .filter(func.lower(UserProfile.email) == email.strip().lower())
        .first()
    )
