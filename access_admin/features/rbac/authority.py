"""
Client for the permission authority.

The authority owns the permission graph and makes every access decision; this
module only moves requests and responses across the wire and turns transport
failures into ``FetchError`` (reads) or ``AssignmentError`` (writes).
"""
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from access_admin.core import config
from access_admin.features.rbac.exceptions import AssignmentError, FetchError, RBACError
from access_admin.features.rbac.schemas import (
    AssignmentHistory,
    AssignmentItem,
    AssignmentValidationResult,
    BulkAssignmentResult,
    Permission,
    PermissionConflict,
    PermissionGroup,
    Role,
    SimulationResult,
    User,
    UserEffectivePermissions,
    UserRoleAssignment,
)
from access_admin.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")


def _error_message(response: httpx.Response) -> str:
    """Prefer the authority's own message over the bare status line."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return f"Authority returned HTTP {response.status_code}"


def _unwrap(payload: Any, key: Optional[str] = None) -> Any:
    # Responses come either bare or wrapped as {"success": ..., "data": ...}
    if isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    if key and isinstance(payload, dict) and key in payload:
        payload = payload[key]
    return payload


def _parse(annotation: Type[T], payload: Any, error_cls: Type[RBACError]) -> T:
    try:
        return TypeAdapter(annotation).validate_python(payload)
    except ValidationError as e:
        log.warning("Malformed authority response for %s: %s", annotation, e)
        raise error_cls(f"Malformed authority response: {e.error_count()} validation error(s)") from e


def _batch_body(assignments: Sequence[AssignmentItem]) -> dict:
    return {"assignments": [item.model_dump() for item in assignments]}


class AuthorityClient:
    """Stateless async request/response client for the permission authority."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or config.AUTHORITY_BASE_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else config.AUTHORITY_API_TOKEN
        self.timeout_s = timeout_s if timeout_s is not None else config.AUTHORITY_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            token = self.api_token.strip()
            if not token.lower().startswith("bearer "):
                token = f"Bearer {token}"
            headers["Authorization"] = token
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        error_cls: Type[RBACError],
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout_s, transport=self._transport
            ) as client:
                resp = await client.request(method, path, params=params, json=json, headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            log.info("Authority %s %s failed: %s", method, path, message)
            raise error_cls(message, status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            log.warning("Authority %s %s unreachable: %s", method, path, e)
            raise error_cls(f"Authority request failed: {e}") from e

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise error_cls("Authority returned a non-JSON response") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_effective_permissions(self, user_hash: str, project_hash: str) -> UserEffectivePermissions:
        payload = await self._request(
            "GET",
            f"/rbac/users/{user_hash}/projects/{project_hash}/effective-permissions",
            error_cls=FetchError,
        )
        return _parse(UserEffectivePermissions, _unwrap(payload), FetchError)

    async def fetch_roles(self, project_hash: str) -> List[Role]:
        payload = await self._request("GET", f"/rbac/projects/{project_hash}/roles", error_cls=FetchError)
        return _parse(List[Role], _unwrap(payload, "roles"), FetchError)

    async def fetch_permission_groups(self, project_hash: str) -> List[PermissionGroup]:
        payload = await self._request(
            "GET", f"/rbac/projects/{project_hash}/permission-groups", error_cls=FetchError
        )
        return _parse(List[PermissionGroup], _unwrap(payload, "permission_groups"), FetchError)

    async def fetch_permissions(self, project_hash: str) -> List[Permission]:
        payload = await self._request("GET", f"/rbac/projects/{project_hash}/permissions", error_cls=FetchError)
        return _parse(List[Permission], _unwrap(payload, "permissions"), FetchError)

    async def fetch_users(self) -> List[User]:
        payload = await self._request("GET", "/users", error_cls=FetchError)
        return _parse(List[User], _unwrap(payload, "users"), FetchError)

    async def fetch_user_roles(self, user_hash: str, project_hash: str) -> List[UserRoleAssignment]:
        payload = await self._request(
            "GET", f"/rbac/users/{user_hash}/projects/{project_hash}/roles", error_cls=FetchError
        )
        return _parse(List[UserRoleAssignment], _unwrap(payload, "assignments"), FetchError)

    async def detect_conflicts(self, project_hash: str, user_hash: Optional[str] = None) -> List[PermissionConflict]:
        params = {"user_hash": user_hash} if user_hash else None
        payload = await self._request(
            "GET", f"/rbac/projects/{project_hash}/conflicts", error_cls=FetchError, params=params
        )
        return _parse(List[PermissionConflict], _unwrap(payload, "conflicts"), FetchError)

    async def fetch_assignment_history(self, project_hash: str, *, limit: int = 100) -> List[AssignmentHistory]:
        payload = await self._request(
            "GET",
            f"/rbac/projects/{project_hash}/assignment-history",
            error_cls=FetchError,
            params={"limit": limit},
        )
        return _parse(List[AssignmentHistory], _unwrap(payload, "history"), FetchError)

    # ------------------------------------------------------------------
    # Dry runs (side-effect free on the authority)
    # ------------------------------------------------------------------

    async def validate_assignments(
        self, project_hash: str, assignments: Sequence[AssignmentItem]
    ) -> AssignmentValidationResult:
        payload = await self._request(
            "POST",
            f"/rbac/projects/{project_hash}/validate-assignments",
            error_cls=FetchError,
            json=_batch_body(assignments),
        )
        return _parse(AssignmentValidationResult, _unwrap(payload), FetchError)

    async def simulate_assignment(self, user_hash: str, project_hash: str, role_ids: Sequence[int]) -> SimulationResult:
        payload = await self._request(
            "POST",
            f"/rbac/users/{user_hash}/projects/{project_hash}/simulate",
            error_cls=FetchError,
            json={"role_ids": list(role_ids)},
        )
        return _parse(SimulationResult, _unwrap(payload), FetchError)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def assign_role(
        self, user_hash: str, project_hash: str, role_id: int, reason: Optional[str] = None
    ) -> UserRoleAssignment:
        body: Dict[str, Any] = {"role_id": role_id}
        if reason:
            body["reason"] = reason
        payload = await self._request(
            "POST",
            f"/rbac/users/{user_hash}/projects/{project_hash}/roles",
            error_cls=AssignmentError,
            json=body,
        )
        return _parse(UserRoleAssignment, _unwrap(payload, "assignment"), AssignmentError)

    async def remove_role(self, user_hash: str, project_hash: str, role_id: int) -> None:
        await self._request(
            "DELETE",
            f"/rbac/users/{user_hash}/projects/{project_hash}/roles/{role_id}",
            error_cls=AssignmentError,
        )

    async def bulk_assign_roles(
        self, project_hash: str, assignments: Sequence[AssignmentItem]
    ) -> BulkAssignmentResult:
        payload = await self._request(
            "POST",
            f"/rbac/projects/{project_hash}/bulk-assign",
            error_cls=AssignmentError,
            json=_batch_body(assignments),
        )
        return _parse(BulkAssignmentResult, _unwrap(payload), AssignmentError)


class DryRunAuthority:
    """
    Read-only view of the authority exposing only the dry-run calls.

    Validation and simulation code paths receive this object instead of the full
    client, so they have no way to reach a write endpoint.
    """

    def __init__(self, authority: AuthorityClient):
        self._authority = authority

    async def validate_assignments(
        self, project_hash: str, assignments: Sequence[AssignmentItem]
    ) -> AssignmentValidationResult:
        return await self._authority.validate_assignments(project_hash, assignments)

    async def simulate_assignment(self, user_hash: str, project_hash: str, role_ids: Sequence[int]) -> SimulationResult:
        return await self._authority.simulate_assignment(user_hash, project_hash, role_ids)


_client: Optional[AuthorityClient] = None


def get_authority_client() -> AuthorityClient:
    """Get or create the process-wide authority client."""
    global _client
    if _client is None:
        _client = AuthorityClient()
    return _client
