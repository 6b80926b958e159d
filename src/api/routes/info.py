from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from api.dependencies import get_coordinator, get_settings
from app.coordinator import AppCoordinator
from config import Settings
from mcp_hub.models import SessionState

router = APIRouter()


@router.get(
    "",
    status_code=status.HTTP_200_OK,
    summary="Get system information"
)
async def get_info(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    return {
        "engine_type": settings.engine_type,
        "llm_model": settings.llm_model,
        "max_tokens": settings.max_tokens,
        "max_iterations": settings.max_iterations,
        "max_parallel_tools": settings.max_parallel_tools,
        "tool_timeout_seconds": settings.tool_timeout_seconds,
        "rag_enabled": settings.rag_enabled,
        "top_k": settings.rag_top_k,
    }


@router.get("/metrics", summary="Aggregated conversation metrics")
async def get_metrics(
    coordinator: AppCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    return coordinator.get_metrics_summary()


async def health_check(
    coordinator: AppCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    sessions = coordinator.session_manager.status()
    active = sum(1 for s in sessions if s["state"] == SessionState.ACTIVE.value)
    return {
        "status": "healthy",
        "servers": {"active": active, "total": len(sessions)},
        "tools": len(coordinator.directory.tools()),
    }
