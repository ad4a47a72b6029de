"""
RBAC administration API routes.

Exposes the effective permission cache, analytics, assignment operations and
the guided assignment workflow to the UI layer.
"""
from typing import Annotated, Dict, List, Optional
from fastapi import APIRouter, Depends, Query, Request, status

from access_admin.core import config
from access_admin.features.rbac import analytics
from access_admin.features.rbac.dependencies import (
    get_project_admin,
    get_registry,
    get_workflow,
    limiter,
)
from access_admin.features.rbac.registry import AdminRegistry, ProjectAdmin
from access_admin.features.rbac.schemas import (
    AssignmentBatchRequest,
    AssignmentHistory,
    AssignmentValidationResult,
    AssignRoleRequest,
    BulkAssignmentResult,
    ConflictSummary,
    CoverageSummary,
    EffectivePermission,
    PermissionCheckResponse,
    PermissionComparison,
    PermissionConflict,
    RefreshReport,
    SimulateRequest,
    SimulationResult,
    UserRoleAssignment,
    WorkflowReasonUpdate,
    WorkflowResponse,
    WorkflowRolesUpdate,
    WorkflowUsersUpdate,
)
from access_admin.features.rbac.workflow import AssignmentWorkflow, WorkflowStage
from access_admin.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def workflow_response(workflow: AssignmentWorkflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.id,
        project_hash=workflow.project_hash,
        stage=workflow.stage.value,
        can_proceed=workflow.can_proceed,
        selected_users=workflow.selected_users,
        selected_roles=workflow.selected_roles,
        reason=workflow.reason,
        plans=workflow.plans,
        validation_results=workflow.validation_results,
        execution_results=workflow.execution_results,
        summary=workflow.summary() if workflow.stage == WorkflowStage.COMPLETE else None,
    )


# ============================================================================
# Effective Permission Routes
# ============================================================================

@router.put("/projects/{project_hash}/tracked-users/{user_hash}", status_code=status.HTTP_204_NO_CONTENT)
async def track_user(
    user_hash: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Start tracking a user's effective permissions (no-op if already tracked)."""
    await admin.cache.add_user(user_hash)
    return None


@router.delete("/projects/{project_hash}/tracked-users/{user_hash}", status_code=status.HTTP_204_NO_CONTENT)
async def untrack_user(
    user_hash: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Stop tracking a user and drop their cached permissions."""
    admin.cache.remove_user(user_hash)
    return None


@router.get("/projects/{project_hash}/tracked-users", response_model=List[str])
async def list_tracked_users(admin: Annotated[ProjectAdmin, Depends(get_project_admin)]):
    return admin.cache.tracked_users()


@router.post("/projects/{project_hash}/refresh", response_model=RefreshReport)
async def refresh_project(admin: Annotated[ProjectAdmin, Depends(get_project_admin)]):
    """Refresh every tracked user; partial failure is reported, not raised."""
    return await admin.cache.refresh_all()


@router.post("/projects/{project_hash}/users/{user_hash}/refresh", status_code=status.HTTP_204_NO_CONTENT)
async def refresh_user(
    user_hash: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    await admin.cache.refresh_user(user_hash)
    return None


@router.get(
    "/projects/{project_hash}/users/{user_hash}/effective-permissions",
    response_model=List[EffectivePermission],
)
async def get_effective_permissions(
    user_hash: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Cached effective permissions (empty for untracked users)."""
    return admin.cache.get_permissions(user_hash)


@router.get(
    "/projects/{project_hash}/users/{user_hash}/conflicts",
    response_model=List[PermissionConflict],
)
async def get_user_conflicts(
    user_hash: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    return admin.cache.get_conflicts(user_hash)


@router.get(
    "/projects/{project_hash}/users/{user_hash}/check/{permission_name}",
    response_model=PermissionCheckResponse,
)
async def check_permission(
    user_hash: str,
    permission_name: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Check a permission against the cache, with the path it was inherited through."""
    return PermissionCheckResponse(
        user_hash=user_hash,
        permission_name=permission_name,
        has_permission=admin.cache.has_permission(user_hash, permission_name),
        inheritance_path=admin.cache.get_inheritance_path(user_hash, permission_name),
    )


@router.get(
    "/projects/{project_hash}/users/{user_hash}/inheritance/{permission_name}",
    response_model=List[str],
)
async def get_inheritance_path(
    user_hash: str,
    permission_name: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    return admin.cache.get_inheritance_path(user_hash, permission_name)


@router.post(
    "/projects/{project_hash}/users/{user_hash}/simulate",
    response_model=SimulationResult,
)
async def simulate_assignment(
    user_hash: str,
    body: SimulateRequest,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Dry-run: what the user would hold with these roles."""
    return await admin.cache.simulate_assignment(user_hash, body.role_ids)


# ============================================================================
# Analytics Routes
# ============================================================================

@router.get("/projects/{project_hash}/analytics/coverage", response_model=CoverageSummary)
async def get_coverage(admin: Annotated[ProjectAdmin, Depends(get_project_admin)]):
    return analytics.permission_coverage(admin.cache)


@router.get("/projects/{project_hash}/analytics/conflicts", response_model=ConflictSummary)
async def get_conflict_summary(admin: Annotated[ProjectAdmin, Depends(get_project_admin)]):
    return analytics.conflict_summary(admin.cache)


@router.get("/projects/{project_hash}/analytics/matrix", response_model=Dict[str, Dict[str, str]])
async def get_permission_matrix(admin: Annotated[ProjectAdmin, Depends(get_project_admin)]):
    return analytics.permission_matrix(admin.cache)


@router.get("/projects/{project_hash}/analytics/compare", response_model=PermissionComparison)
async def compare_users(
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)],
    user1: str = Query(..., description="First user hash"),
    user2: str = Query(..., description="Second user hash"),
):
    return analytics.compare_user_permissions(admin.cache, user1, user2)


@router.get("/projects/{project_hash}/analytics/sources/{user_hash}", response_model=Dict[str, int])
async def get_grant_sources(
    user_hash: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    return analytics.grant_source_breakdown(admin.cache, user_hash)


# ============================================================================
# Assignment Routes
# ============================================================================

@router.get(
    "/projects/{project_hash}/users/{user_hash}/roles",
    response_model=List[UserRoleAssignment],
)
async def list_user_roles(
    user_hash: str,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)],
    refresh: bool = False,
):
    """Locally known assignments; ``refresh=true`` re-reads them from the authority."""
    if refresh:
        return await admin.engine.get_user_assignments(user_hash)
    return admin.engine.get_assignments_by_user(user_hash)


@router.post(
    "/projects/{project_hash}/users/{user_hash}/roles",
    response_model=UserRoleAssignment,
    status_code=status.HTTP_201_CREATED,
)
async def assign_role(
    user_hash: str,
    body: AssignRoleRequest,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Assign a role to a user and refresh their effective permissions."""
    return await admin.engine.assign_user_to_role(user_hash, body.role_id, body.reason)


@router.delete(
    "/projects/{project_hash}/users/{user_hash}/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_role(
    user_hash: str,
    role_id: int,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    await admin.engine.remove_user_from_role(user_hash, role_id)
    return None


@router.post("/projects/{project_hash}/bulk-assign", response_model=BulkAssignmentResult)
@limiter.limit(config.WRITE_RATE_LIMIT)
async def bulk_assign(
    request: Request,
    body: AssignmentBatchRequest,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Assign many roles at once. Per-item failures are returned in ``errors``."""
    return await admin.engine.bulk_assign_roles(body.assignments)


@router.post("/projects/{project_hash}/validate", response_model=AssignmentValidationResult)
async def validate_assignments(
    body: AssignmentBatchRequest,
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)]
):
    """Dry-run validation; nothing is written."""
    if len(body.assignments) == 1:
        item = body.assignments[0]
        return await admin.engine.validate_assignment(item.user_hash, item.role_ids)
    return await admin.engine.validate_bulk_assignments(body.assignments)


@router.get("/projects/{project_hash}/conflicts", response_model=List[PermissionConflict])
async def detect_conflicts(
    admin: Annotated[ProjectAdmin, Depends(get_project_admin)],
    user_hash: Optional[str] = None,
):
    return await admin.engine.detect_conflicts(user_hash)


@router.get("/projects/{project_hash}/history", response_model=List[AssignmentHistory])
async def get_history(admin: Annotated[ProjectAdmin, Depends(get_project_admin)]):
    return await admin.engine.refresh_history()


# ============================================================================
# Workflow Routes
# ============================================================================

@router.post(
    "/projects/{project_hash}/workflows",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_workflow(
    project_hash: str,
    registry: Annotated[AdminRegistry, Depends(get_registry)],
    load_reference_data: bool = True,
):
    """Start a guided assignment run for a project."""
    workflow = registry.create_workflow(project_hash)
    if load_reference_data:
        try:
            await workflow.load_reference_data(registry.authority)
        except Exception:
            registry.discard_workflow(workflow.id)
            raise
    log.info("Created workflow %s for project %s", workflow.id, project_hash)
    return workflow_response(workflow)


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow_state(workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]):
    return workflow_response(workflow)


@router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_workflow(
    workflow_id: str,
    registry: Annotated[AdminRegistry, Depends(get_registry)]
):
    registry.discard_workflow(workflow_id)
    return None


@router.put("/workflows/{workflow_id}/users", response_model=WorkflowResponse)
async def set_workflow_users(
    body: WorkflowUsersUpdate,
    workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]
):
    workflow.select_users(body.user_hashes)
    return workflow_response(workflow)


@router.put("/workflows/{workflow_id}/roles", response_model=WorkflowResponse)
async def set_workflow_roles(
    body: WorkflowRolesUpdate,
    workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]
):
    workflow.select_roles(body.role_ids)
    return workflow_response(workflow)


@router.put("/workflows/{workflow_id}/reason", response_model=WorkflowResponse)
async def set_workflow_reason(
    body: WorkflowReasonUpdate,
    workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]
):
    workflow.set_reason(body.reason)
    return workflow_response(workflow)


@router.post("/workflows/{workflow_id}/next", response_model=WorkflowResponse)
async def workflow_next(workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]):
    """Advance if the current stage's guard allows it; otherwise unchanged."""
    workflow.go_next()
    return workflow_response(workflow)


@router.post("/workflows/{workflow_id}/previous", response_model=WorkflowResponse)
async def workflow_previous(workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]):
    workflow.go_previous()
    return workflow_response(workflow)


@router.post("/workflows/{workflow_id}/reset", response_model=WorkflowResponse)
async def workflow_reset(workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]):
    workflow.reset()
    return workflow_response(workflow)


@router.post("/workflows/{workflow_id}/validate", response_model=WorkflowResponse)
async def workflow_validate(workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]):
    await workflow.validate_plans()
    return workflow_response(workflow)


@router.post("/workflows/{workflow_id}/execute", response_model=WorkflowResponse)
@limiter.limit(config.WRITE_RATE_LIMIT)
async def workflow_execute(
    request: Request,
    workflow: Annotated[AssignmentWorkflow, Depends(get_workflow)]
):
    """Run every planned assignment; the response reports successes and failures."""
    await workflow.execute_assignments()
    return workflow_response(workflow)
