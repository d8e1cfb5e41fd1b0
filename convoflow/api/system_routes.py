from fastapi import APIRouter

from convoflow.settings import settings

router = APIRouter(tags=["system"])


@router.get("/health")
async def health() -> dict:
    return {"status": "ok", "environment": settings.environment}
