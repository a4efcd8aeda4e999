"""Typed failures raised by the saved-item and collection stores."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class; `error` and `status_code` drive the HTTP error contract."""

    error: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, *, details: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidArgument(StoreError):
    """Bad pagination bounds, missing required field, malformed update set."""

    error = "invalid_argument"
    status_code = 400


class NotFound(StoreError):
    """Target does not exist, or is not owned by / visible to the caller."""

    error = "not_found"
    status_code = 404


class AlreadyExists(StoreError):
    """Uniqueness violation: active saved item, collection name, membership pair."""

    error = "already_exists"
    status_code = 409


class Internal(StoreError):
    error = "internal_error"
    status_code = 500


@contextmanager
def translate_store_errors(*, operation: str, conflict_message: str) -> Iterator[None]:
    """Map driver errors raised inside a store operation onto the typed taxonomy.

    A unique-constraint violation means a concurrent writer won the race that the
    in-transaction check lost; callers see it as AlreadyExists. Anything else from
    the database is logged and surfaced as Internal without the statement text.
    """
    try:
        yield
    except StoreError:
        raise
    except IntegrityError as exc:
        logger.info("constraint conflict operation=%s", operation)
        raise AlreadyExists(conflict_message) from exc
    except SQLAlchemyError as exc:
        logger.exception("store failure operation=%s", operation)
        raise Internal("internal store error") from exc
