"""
Tool registry endpoints.

Tools are stored definitions (an MCP server address, a script path, ...)
that clients can list and manage. The chat pipeline does not call them.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from mcpchat.api.deps import get_current_user
from mcpchat.services.store import StoreError, ToolData, store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/tools", tags=["tools"])


class ToolResponse(BaseModel):
    id: int
    name: str
    type: str
    description: str = ""
    config: dict[str, Any]
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CreateToolRequest(BaseModel):
    name: str = ""
    type: str = ""
    description: str = ""
    config: Optional[dict[str, Any]] = None


class UpdateToolRequest(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    config: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None


def _response(tool: ToolData) -> ToolResponse:
    return ToolResponse(
        id=tool.id,
        name=tool.name,
        type=tool.type,
        description=tool.description,
        config=tool.config,
        is_active=tool.is_active,
        created_at=tool.created_at,
        updated_at=tool.updated_at,
    )


@router.get("", response_model=list[ToolResponse])
async def list_tools(user: dict = Depends(get_current_user)) -> list[ToolResponse]:
    try:
        tools = await store.list_tools()
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    return [_response(t) for t in tools]


@router.post("", response_model=ToolResponse, status_code=201)
async def create_tool(body: CreateToolRequest, user: dict = Depends(get_current_user)) -> ToolResponse:
    if not body.name.strip() or not body.type.strip() or body.config is None:
        raise HTTPException(status_code=400, detail="Name, type and config are required")

    try:
        tool = await store.create_tool(
            name=body.name,
            type=body.type,
            config=body.config,
            description=body.description,
        )
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    logger.info("Created %s tool %s (%s)", tool.type, tool.id, tool.name)
    return _response(tool)


@router.put("/{tool_id}", response_model=ToolResponse)
async def update_tool(
    tool_id: int,
    body: UpdateToolRequest,
    user: dict = Depends(get_current_user),
) -> ToolResponse:
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    try:
        tool = await store.update_tool(tool_id, updates)
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    if tool is None:
        raise HTTPException(status_code=404, detail="Tool not found")
    logger.info("Updated tool %s", tool_id)
    return _response(tool)


@router.delete("/{tool_id}")
async def delete_tool(tool_id: int, user: dict = Depends(get_current_user)) -> dict:
    try:
        deleted = await store.delete_tool(tool_id)
    except StoreError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=e.message)
    if not deleted:
        raise HTTPException(status_code=404, detail="Tool not found")
    logger.info("Deleted tool %s", tool_id)
    return {"success": True}
