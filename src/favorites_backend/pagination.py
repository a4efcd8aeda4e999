from __future__ import annotations

from favorites_backend.config import settings
from favorites_backend.errors import InvalidArgument
from favorites_backend.schemas_common import Pagination

MAX_PAGE_LIMIT = 100


def check_page_bounds(*, page: int, limit: int) -> int:
    """Validate page/limit and return the row offset."""
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise InvalidArgument(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    if page < 1:
        raise InvalidArgument("page must be greater than 0")
    return (page - 1) * limit


def build_pagination(*, total: int, page: int, limit: int) -> Pagination:
    total_pages = (total + limit - 1) // limit
    return Pagination(
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages,
        has_next_page=page < total_pages,
        has_prev_page=page > 1,
    )


def resolve_limit(limit: int | None) -> int:
    """Page size to use when the caller did not pass one."""
    return settings.default_page_limit if limit is None else limit
