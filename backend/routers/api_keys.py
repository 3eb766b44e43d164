"""
Provider API key management (admin only)

Handles:
- GET    /api/admin/keys: list keys (secrets masked)
- POST   /api/admin/keys: add a key for a service
- PATCH  /api/admin/keys/{key_id}/toggle: activate / deactivate
- DELETE /api/admin/keys/{key_id}: remove a key
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path

from auth import verify_admin_key
from dependencies import get_key_store
from schemas import ApiKeyCreateRequest, ApiKeyListResponse, ApiKeyResponse, ErrorResponse
from services.key_store import SqlKeyStore

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/admin/keys",
    tags=["API Keys"],
    dependencies=[Depends(verify_admin_key)],
    responses={
        401: {"model": ErrorResponse, "description": "API key missing"},
        403: {"model": ErrorResponse, "description": "Admin access required"}
    },
)


def _key_not_found(key_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={
            "error": "NotFound",
            "message": "API key not found",
            "details": f"No API key with id '{key_id}'"
        }
    )


@router.get("", response_model=ApiKeyListResponse, summary="List API Keys")
async def list_keys(key_store: SqlKeyStore = Depends(get_key_store)):
    return {"keys": [key.to_dict() for key in key_store.list_all()]}


@router.post(
    "",
    response_model=ApiKeyResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse, "description": "Missing fields"}},
    summary="Add API Key"
)
async def add_key(request: ApiKeyCreateRequest, key_store: SqlKeyStore = Depends(get_key_store)):
    if not request.service or not request.service.strip() or not request.apiKey or not request.apiKey.strip():
        raise HTTPException(
            status_code=400,
            detail={
                "error": "ValidationError",
                "message": "Service and API key are required",
                "details": "Both 'service' and 'apiKey' must be provided"
            }
        )

    key = key_store.add(request.service, request.apiKey)
    return key.to_dict()


@router.patch(
    "/{key_id}/toggle",
    response_model=ApiKeyResponse,
    responses={404: {"model": ErrorResponse, "description": "Key not found"}},
    summary="Toggle API Key"
)
async def toggle_key(
    key_id: str = Path(..., description="API key identifier"),
    key_store: SqlKeyStore = Depends(get_key_store)
):
    key = key_store.toggle(key_id)
    if key is None:
        raise _key_not_found(key_id)
    return key.to_dict()


@router.delete(
    "/{key_id}",
    responses={404: {"model": ErrorResponse, "description": "Key not found"}},
    summary="Delete API Key"
)
async def delete_key(
    key_id: str = Path(..., description="API key identifier"),
    key_store: SqlKeyStore = Depends(get_key_store)
):
    if not key_store.delete(key_id):
        raise _key_not_found(key_id)
    return {"success": True}
