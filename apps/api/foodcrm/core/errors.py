from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger("foodcrm.store")


@contextmanager
def store_errors(session: Session, operation: str) -> Iterator[None]:
    """Roll back and surface store failures as HTTP errors prefixed with the failed operation."""
    try:
        yield
    except HTTPException:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        logger.warning("store.integrity_error", extra={"status": operation, "error": str(exc.orig)})
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Failed to {operation}: conflicting record",
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("store.error", extra={"status": operation, "error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {operation}: {exc.__class__.__name__}",
        ) from exc
