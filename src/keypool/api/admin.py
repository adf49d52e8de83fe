"""Administrative JSON routes for managing pooled keys."""

import logging
from typing import Any

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, ConfigDict, Field

from keypool.api.routes import get_services
from keypool.quota.tracker import mask_credential

logger = logging.getLogger(__name__)
router = APIRouter()


class ApiKeyRequest(BaseModel):
    """Key reference posted by the admin client."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str | None = Field(
        default=None,
        alias="apiKey",
        description="Full key to add, or full key / display prefix to delete",
    )


@router.get("/keys")
async def list_keys(request: Request) -> dict[str, Any]:
    """Pooled keys with their current usage and 24h request statistics."""
    services = get_services(request)
    return {**await services.pool.status(), **services.stats.to_dict()}


@router.post("/keys", status_code=status.HTTP_201_CREATED)
async def add_key(request: Request, body: ApiKeyRequest) -> dict[str, Any]:
    """Append a key to the pool."""
    added = get_services(request).pool.add(body.api_key)
    return {
        "message": "API key added successfully",
        "key": mask_credential(added),
    }


async def _delete(request: Request, key_ref: str | None) -> dict[str, Any]:
    removed = await get_services(request).pool.remove(key_ref)
    masked = mask_credential(removed)
    return {
        "message": f"API key {masked} deleted successfully",
        "key": masked,
    }


@router.post("/keys/delete")
async def delete_key_form(request: Request, body: ApiKeyRequest) -> dict[str, Any]:
    """Remove a key given in the request body."""
    return await _delete(request, body.api_key)


@router.delete("/keys/{key_ref}")
async def delete_key(request: Request, key_ref: str) -> dict[str, Any]:
    """Remove a key by full value or display prefix."""
    return await _delete(request, key_ref)
