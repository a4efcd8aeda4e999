from __future__ import annotations

from typing import cast

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from favorites_backend.services.collections_service import CollectionStore
from favorites_backend.services.saved_items_service import SavedItemStore

_bearer = HTTPBearer(auto_error=False)


async def get_owner_id(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> str:
    """Owner id issued by the authentication service, passed as the bearer credential.

    The credential is opaque here; verifying it is the issuer's job.
    """
    raw_token = creds.credentials if creds is not None else None
    owner_id = (raw_token or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer credential",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id


def get_saved_item_store(request: Request) -> SavedItemStore:
    return cast(SavedItemStore, request.app.state.saved_items)


def get_collection_store(request: Request) -> CollectionStore:
    return cast(CollectionStore, request.app.state.collections)
