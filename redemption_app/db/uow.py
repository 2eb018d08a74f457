from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from redemption_app.core.errors import ConflictError


def commit_or_conflict(db: Session, what: str) -> None:
    """
    Commit the unit of work. Optimistic version mismatches and unique
    constraint races surface as ConflictError after rollback.
    """
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError(f"{what} was modified concurrently; re-read and retry.") from exc
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(f"{what} conflicts with an existing record.") from exc
