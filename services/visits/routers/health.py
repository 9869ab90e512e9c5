"""Health check endpoint."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "service": request.app.state.settings.app_name,
            "version": request.app.state.settings.app_version,
        },
        "requestId": request.state.request_id,
    }
