from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from api.dependencies import get_coordinator
from api.models.schemas import PromptRequest, ResourceReadRequest
from app.coordinator import AppCoordinator

router = APIRouter()


@router.get("/status", status_code=status.HTTP_200_OK, summary="Per-server session status")
async def get_status(coordinator: AppCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    return {
        "servers": coordinator.session_manager.status(),
        "directory": coordinator.directory.summary(),
        "refresh_errors": coordinator.aggregator.last_errors,
    }


@router.get("/tools", summary="All tools in the capability directory")
async def list_tools(coordinator: AppCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    directory = coordinator.directory
    return {
        "tools": [
            {
                "name": record.name,
                "server_id": record.server_id,
                "description": record.description,
                "input_schema": record.input_schema,
            }
            for record in directory.tools()
        ],
        "collisions": [
            c.model_dump(mode="json") for c in directory.collisions if c.kind.value == "tool"
        ],
    }


@router.get("/prompts", summary="All prompts in the capability directory")
async def list_prompts(coordinator: AppCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    return {
        "prompts": [
            {
                "name": record.name,
                "server_id": record.server_id,
                "description": record.description,
                "arguments": record.arguments,
            }
            for record in coordinator.directory.prompts()
        ]
    }


@router.post("/prompts/{name}", summary="Resolve a prompt on its owning server")
async def get_prompt(
    name: str,
    request: PromptRequest,
    coordinator: AppCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    server_id, result = await coordinator.router.get_prompt(name, request.arguments)
    return {"server_id": server_id, "prompt": result.model_dump(mode="json", exclude_none=True)}


@router.get("/resources", summary="All resources in the capability directory")
async def list_resources(
    coordinator: AppCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    return {
        "resources": [
            {
                "uri": record.name,
                "name": record.title,
                "server_id": record.server_id,
                "description": record.description,
                "mime_type": record.mime_type,
            }
            for record in coordinator.directory.resources()
        ]
    }


@router.post("/resources/read", summary="Read a resource from its owning server")
async def read_resource(
    request: ResourceReadRequest,
    coordinator: AppCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    server_id, result = await coordinator.router.read_resource(request.uri)
    return {
        "server_id": server_id,
        "contents": [
            content.model_dump(mode="json", exclude_none=True) for content in result.contents
        ],
    }


@router.post("/refresh", summary="Re-list capabilities on every server")
async def refresh(coordinator: AppCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    directory = await coordinator.refresh_capabilities()
    return {
        "directory": directory.summary(),
        "refresh_errors": coordinator.aggregator.last_errors,
    }
