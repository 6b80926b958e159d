from fastapi import HTTPException, Request, status

from app.coordinator import AppCoordinator
from config import Settings


def get_coordinator(request: Request) -> AppCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Coordinator not initialized",
        )
    return coordinator


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        from config import get_settings as load_settings

        settings = load_settings()
        request.app.state.settings = settings
    return settings
