"""
FastAPI dependencies for the RBAC administration routes.
"""
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, status
from slowapi import Limiter

from access_admin.features.rbac.authority import get_authority_client
from access_admin.features.rbac.registry import AdminRegistry, ProjectAdmin
from access_admin.features.rbac.workflow import AssignmentWorkflow


_registry: Optional[AdminRegistry] = None


def get_registry() -> AdminRegistry:
    """Process-wide registry; overridden in tests with ``app.dependency_overrides``."""
    global _registry
    if _registry is None:
        _registry = AdminRegistry(get_authority_client())
    return _registry


async def close_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.close_all()
        _registry = None


async def get_project_admin(
    project_hash: str,
    registry: Annotated[AdminRegistry, Depends(get_registry)]
) -> ProjectAdmin:
    return registry.project(project_hash)


async def get_workflow(
    workflow_id: str,
    registry: Annotated[AdminRegistry, Depends(get_registry)]
) -> AssignmentWorkflow:
    """
    Look up a workflow or raise 404.

    Raises:
        HTTPException: 404 if the workflow does not exist or was discarded
    """
    workflow = registry.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Workflow not found"
        )
    return workflow


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"


limiter = Limiter(key_func=get_authorization_header)
