"""
AI connection management endpoints.

API keys are write-only: responses replace them with "***", and an update
that sends "***" back keeps the stored key.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from mcpchat.api.deps import get_current_user, http_error
from mcpchat.errors import StreamingError, Unauthenticated
from mcpchat.services.database import PROVIDERS
from mcpchat.services.store import ConnectionData, StoreError, store
from mcpchat.services.streaming import provider_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/ai-connections", tags=["ai-connections"])

MASK = "***"


class ConnectionResponse(BaseModel):
    id: int
    name: str
    provider: str
    description: str = ""
    config: dict[str, Any]
    is_active: bool
    status: str
    conversation_count: int = 0
    created_at: Optional[datetime] = None


class CreateConnectionRequest(BaseModel):
    name: str
    provider: str
    description: str = ""
    config: dict[str, Any] = {}
    is_active: bool = True


class UpdateConnectionRequest(BaseModel):
    name: Optional[str] = None
    provider: Optional[str] = None
    description: Optional[str] = None
    config: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None


def mask_config(config: dict[str, Any]) -> dict[str, Any]:
    masked = dict(config)
    if masked.get("apiKey"):
        masked["apiKey"] = MASK
    return masked


def _response(connection: ConnectionData) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        name=connection.name,
        provider=connection.provider,
        description=connection.description,
        config=mask_config(connection.config),
        is_active=connection.is_active,
        status=connection.status,
        conversation_count=connection.conversation_count,
        created_at=connection.created_at,
    )


def _check_provider(provider: str) -> None:
    if provider not in PROVIDERS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid provider. Must be one of: {', '.join(PROVIDERS)}",
        )


async def _get_or_404(connection_id: int) -> ConnectionData:
    try:
        connection = await store.get_connection(connection_id)
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    if connection is None:
        raise HTTPException(status_code=404, detail="AI connection not found")
    return connection


@router.get("", response_model=list[ConnectionResponse])
async def list_connections(user: dict = Depends(get_current_user)) -> list[ConnectionResponse]:
    try:
        connections = await store.list_connections()
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    return [_response(c) for c in connections]


@router.post("", response_model=ConnectionResponse, status_code=201)
async def create_connection(
    body: CreateConnectionRequest,
    user: dict = Depends(get_current_user),
) -> ConnectionResponse:
    if not body.name.strip():
        raise HTTPException(status_code=400, detail="Name is required")
    _check_provider(body.provider)

    try:
        connection = await store.create_connection(
            name=body.name,
            provider=body.provider,
            config=body.config,
            description=body.description,
            is_active=body.is_active,
        )
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    logger.info("Created %s connection %s (%s)", connection.provider, connection.id, connection.name)
    return _response(connection)


@router.put("/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    connection_id: int,
    body: UpdateConnectionRequest,
    user: dict = Depends(get_current_user),
) -> ConnectionResponse:
    existing = await _get_or_404(connection_id)
    updates = body.model_dump(exclude_none=True)
    if "provider" in updates:
        _check_provider(updates["provider"])
    if "config" in updates and updates["config"].get("apiKey") == MASK:
        updates["config"]["apiKey"] = existing.config.get("apiKey", "")

    try:
        connection = await store.update_connection(connection_id, updates)
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    if connection is None:
        raise HTTPException(status_code=404, detail="AI connection not found")
    return _response(connection)


@router.delete("/{connection_id}")
async def delete_connection(connection_id: int, user: dict = Depends(get_current_user)) -> dict:
    try:
        deleted = await store.delete_connection(connection_id)
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    if not deleted:
        raise HTTPException(status_code=404, detail="AI connection not found")
    return {"success": True}


@router.post("/{connection_id}/test")
async def test_connection(connection_id: int, user: dict = Depends(get_current_user)) -> dict:
    """Probe the provider and record the outcome as the connection status."""
    connection = await _get_or_404(connection_id)
    ok = await provider_client.probe(connection)
    status = "connected" if ok else "error"
    try:
        await store.set_connection_status(connection_id, status)
    except StoreError as e:
        logger.warning("Could not record status of connection %s: %s", connection_id, e.message)
    return {"success": ok, "status": status}


@router.get("/{connection_id}/models")
async def list_models(connection_id: int, user: dict = Depends(get_current_user)) -> dict:
    connection = await _get_or_404(connection_id)
    try:
        models = await provider_client.list_models(connection)
    except Unauthenticated as e:
        # Upstream rejected the stored key
        raise HTTPException(status_code=400, detail=e.message)
    except StreamingError as e:
        raise http_error(e)
    return {"models": models}
