"""
Pydantic schemas for the RBAC administration core.

Reference data fetched from the permission authority (permissions, roles, users),
the aggregated effective-permission view, assignment results, and the request and
response models used by the HTTP surface.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


class GrantSource(str, Enum):
    """Provenance of a single permission grant."""
    DIRECT = "direct"
    ROLE = "role"
    GROUP = "group"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================================================
# Reference Data Schemas
# ============================================================================

class Permission(BaseModel):
    """Named capability defined by the authority."""
    id: int
    permission_name: str = Field(..., min_length=1, description="Unique permission name")
    category: str = Field("", description="Grouping used by permission catalogs")
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class PermissionGroup(BaseModel):
    """Named bundle of permissions."""
    id: int
    group_name: str = Field(..., validation_alias=AliasChoices("group_name", "name"))
    category: str = ""
    description: Optional[str] = None
    permissions: List[Permission] = []


class Role(BaseModel):
    """
    Project role.

    The authority reports the role name as ``group_name`` on some endpoints and
    ``role_name``/``name`` on others; all three are accepted.
    """
    id: int
    name: str = Field(..., validation_alias=AliasChoices("name", "role_name", "group_name"))
    priority: int = Field(0, description="Higher priority overrides lower on conflict")
    description: Optional[str] = None
    is_active: bool = True
    permissions: List[Permission] = []


class User(BaseModel):
    """User reference data. Only ``user_hash`` is meaningful to the core."""
    user_hash: str
    username: str = ""
    email: Optional[str] = None
    user_type: Optional[str] = None


# ============================================================================
# Effective Permission Schemas
# ============================================================================

class EffectivePermission(BaseModel):
    """One grant of a permission to a user, with its provenance."""
    permission_name: str
    category: str = ""
    granted_through: GrantSource
    source_name: str = Field("Direct Assignment", description="Role or group name, or 'Direct Assignment'")
    source_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("source_id", mode="before")
    @classmethod
    def source_id_as_string(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class ConflictingSource(BaseModel):
    source_type: str
    source_name: str
    grants: bool


class PermissionConflict(BaseModel):
    """
    A permission whose outcome was contested by more than one source.

    Severity and resolution are produced by the authority and carried as-is.
    """
    permission_name: str
    severity: ConflictSeverity
    resolution: str = ""
    conflicting_sources: List[ConflictingSource] = []


class EffectiveRole(BaseModel):
    role_id: int
    role_name: str
    assigned_at: Optional[datetime] = None
    permissions: List[Permission] = []


class UserEffectivePermissions(BaseModel):
    """Aggregated permissions for one user in one project."""
    user_hash: str
    username: str = ""
    permissions: List[EffectivePermission] = []
    roles: List[EffectiveRole] = []
    conflicts: List[PermissionConflict] = []


class SimulationResult(BaseModel):
    """Hypothetical outcome of assigning a set of roles to a user."""
    effective_permissions: List[EffectivePermission] = []
    conflicts: List[PermissionConflict] = []
    warnings: List[str] = []


# ============================================================================
# Assignment Schemas
# ============================================================================

class UserRoleAssignment(BaseModel):
    """A role held by a user in a project, as recorded by the authority."""
    user_hash: str
    project_hash: str
    role_id: int
    role_name: str = ""
    assigned_at: Optional[datetime] = None
    reason: Optional[str] = None


class AssignmentItem(BaseModel):
    """One user paired with the roles to give them."""
    user_hash: str = Field(..., min_length=1)
    role_ids: List[int] = Field(..., min_length=1)


class BulkAssignmentError(BaseModel):
    """Per-item failure reported inside a successful bulk call."""
    user_hash: Optional[str] = None
    role_id: Optional[int] = None
    message: str = Field(..., validation_alias=AliasChoices("message", "error"))

    @computed_field
    @property
    def context(self) -> str:
        parts = []
        if self.user_hash:
            parts.append(f"user {self.user_hash}")
        if self.role_id is not None:
            parts.append(f"role {self.role_id}")
        return ", ".join(parts) or "batch"


class BulkAssignmentResult(BaseModel):
    """Authoritative record of what a bulk assignment did, including partial failure."""
    assignments: List[UserRoleAssignment] = []
    errors: List[BulkAssignmentError] = []
    success_count: int = 0
    error_count: int = 0

    @model_validator(mode="after")
    def fill_counts(self) -> "BulkAssignmentResult":
        if not self.success_count:
            self.success_count = len(self.assignments)
        if not self.error_count:
            self.error_count = len(self.errors)
        return self


class AssignmentValidationResult(BaseModel):
    is_valid: bool
    conflicts: List[PermissionConflict] = []
    warnings: List[str] = []
    recommendations: List[str] = []


class AssignmentHistory(BaseModel):
    """Append-only audit record kept by the authority."""
    id: int
    user_hash: str
    username: str = ""
    project_hash: str
    action: str = Field(..., description="assigned, removed or modified")
    role_id: int
    role_name: str = ""
    reason: Optional[str] = None
    performed_by: str = ""
    performed_at: datetime
    details: Dict[str, Any] = {}


# ============================================================================
# Workflow Schemas
# ============================================================================

class AssignmentPlan(BaseModel):
    """In-memory proposal pairing one user with the selected roles."""
    user_hash: str
    username: str
    role_ids: List[int]
    role_names: List[str]
    reason: Optional[str] = None


class ExecutionResult(BaseModel):
    """Outcome of one (user, role) assignment attempted by a workflow."""
    user_hash: str
    role_id: int
    success: bool
    assignment: Optional[UserRoleAssignment] = None
    error: Optional[str] = None


class ExecutionSummary(BaseModel):
    total: int
    succeeded: int
    failed: int


# ============================================================================
# Analytics Schemas
# ============================================================================

class CoverageSummary(BaseModel):
    total: int
    covered: int
    percentage: float


class ConflictSummary(BaseModel):
    total_conflicts: int = 0
    high_severity: int = 0
    medium_severity: int = 0
    low_severity: int = 0
    affected_users: int = 0


class PermissionComparison(BaseModel):
    common: List[str]
    only_user1: List[str]
    only_user2: List[str]


# ============================================================================
# HTTP Request / Response Schemas
# ============================================================================

class AssignRoleRequest(BaseModel):
    role_id: int = Field(..., description="Role ID")
    reason: Optional[str] = Field(None, max_length=1000, description="Free-text justification")


class AssignmentBatchRequest(BaseModel):
    """Body for bulk assignment and dry-run validation."""
    assignments: List[AssignmentItem] = Field(..., min_length=1)


class SimulateRequest(BaseModel):
    role_ids: List[int] = Field(..., min_length=1)


class PermissionCheckResponse(BaseModel):
    user_hash: str
    permission_name: str
    has_permission: bool
    inheritance_path: List[str] = []


class RefreshReport(BaseModel):
    """Outcome of a best-effort refresh over all tracked users."""
    refreshed: List[str] = []
    failed: Dict[str, str] = {}
    error: Optional[str] = None


class WorkflowUsersUpdate(BaseModel):
    user_hashes: List[str]


class WorkflowRolesUpdate(BaseModel):
    role_ids: List[int]


class WorkflowReasonUpdate(BaseModel):
    reason: str = Field("", max_length=1000)


class WorkflowResponse(BaseModel):
    """Snapshot of a workflow for the UI layer."""
    id: str
    project_hash: str
    stage: str
    can_proceed: bool
    selected_users: List[str]
    selected_roles: List[int]
    reason: str
    plans: List[AssignmentPlan]
    validation_results: Dict[str, AssignmentValidationResult]
    execution_results: List[ExecutionResult]
    summary: Optional[ExecutionSummary] = None
