import json
import logging
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from node_schema import NodeValidationError
from services.broadcast import open_stream
from services.persistence import PersistenceError
from services.registry import NodeConflictError, NodeNotFoundError, NodeRegistry
from utils.auth import require_write_access

logger = logging.getLogger("agrinet.registry")

router = APIRouter(prefix="/api/nodes")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_registry(http_request: Request) -> NodeRegistry:
    return http_request.app.state.registry


async def read_json_body(request: Request) -> Any:
    """Decode the request body as JSON. Returns None for an empty body."""
    limit = request.app.state.settings.max_body_bytes

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=400, detail="Payload too large")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise HTTPException(status_code=400, detail="Payload too large")
        chunks.append(chunk)

    raw = b"".join(chunks)
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")


def _internal_error() -> HTTPException:
    return HTTPException(status_code=500, detail="Internal server error")


@router.get("")
async def list_nodes(registry: NodeRegistry = Depends(get_registry)):
    """Current FeatureCollection with `_isOnline` derived per request."""
    return registry.snapshot()


@router.get("/stream")
async def stream_nodes(request: Request, registry: NodeRegistry = Depends(get_registry)):
    """Server-Sent Events: the full snapshot now and after every write."""
    keepalive_ms = request.app.state.settings.sse_keepalive_ms
    return StreamingResponse(
        open_stream(
            registry.hub,
            registry.snapshot,
            keepalive_ms / 1000.0 if keepalive_ms else None,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@router.get("/{node_id}")
async def get_node(node_id: str, registry: NodeRegistry = Depends(get_registry)):
    try:
        return registry.get(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")


@router.post("", status_code=201)
async def register_node(
    request: Request,
    background_tasks: BackgroundTasks,
    registry: NodeRegistry = Depends(get_registry),
    _caller: str = Depends(require_write_access),
):
    """Register a node from a GeoJSON Feature or a flattened object.

    - 201 with the stored feature and a Location header
    - 400 for invalid payloads, 409 when an explicit id is already taken
    """
    body = await read_json_body(request)
    if body is None:
        raise HTTPException(status_code=400, detail="Missing request body")

    try:
        feature = await registry.register(body)
    except NodeValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NodeConflictError:
        raise HTTPException(status_code=409, detail="Node with that id already exists")
    except PersistenceError:
        raise _internal_error()

    # runs after the response has been sent
    background_tasks.add_task(registry.broadcast)

    node_id = feature["properties"]["id"]
    return JSONResponse(
        status_code=201,
        content=feature,
        headers={"Location": f"/api/nodes/{quote(node_id, safe='')}"},
    )


@router.put("/{node_id}/ping")
async def ping_node(
    node_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    registry: NodeRegistry = Depends(get_registry),
    _caller: str = Depends(require_write_access),
):
    """Heartbeat: refresh `last_seen` and merge optional property/geometry updates."""
    # unknown ids are reported before the body is read
    if node_id not in registry.store:
        raise HTTPException(status_code=404, detail="Node not found")
    body = await read_json_body(request)

    try:
        feature = await registry.heartbeat(node_id, body)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    except NodeValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError:
        raise _internal_error()

    background_tasks.add_task(registry.broadcast)
    return feature


@router.delete("/{node_id}", status_code=204)
async def delete_node(
    node_id: str,
    background_tasks: BackgroundTasks,
    registry: NodeRegistry = Depends(get_registry),
    _caller: str = Depends(require_write_access),
):
    try:
        await registry.delete(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    except PersistenceError:
        raise _internal_error()

    background_tasks.add_task(registry.broadcast)
    return Response(status_code=204)
