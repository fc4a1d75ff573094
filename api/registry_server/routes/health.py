from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
async def health(http_request: Request):
    registry = http_request.app.state.registry
    return JSONResponse(
        content={"status": "ok", "nodes": len(registry.store), "subscribers": len(registry.hub)},
        status_code=200,
    )
