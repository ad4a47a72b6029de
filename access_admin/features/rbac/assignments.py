"""
Assignment operations engine.

Writes role assignments through the permission authority, keeps a local
per-user assignment list, and refreshes the effective permission cache after
every successful write. Dry-run validation goes through ``DryRunAuthority`` and
never touches the cache or the authority's graph.
"""
import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from access_admin.core import config
from access_admin.features.rbac.authority import AuthorityClient, DryRunAuthority
from access_admin.features.rbac.cache import EffectivePermissionCache
from access_admin.features.rbac.exceptions import AssignmentError, FetchError, StaleResultIgnored
from access_admin.features.rbac.refresh import PeriodicRefresher
from access_admin.features.rbac.schemas import (
    AssignmentHistory,
    AssignmentItem,
    AssignmentValidationResult,
    BulkAssignmentResult,
    PermissionConflict,
    RefreshReport,
    UserRoleAssignment,
)
from access_admin.utils import get_logger


log = get_logger(__name__)

AssignmentInput = Union[AssignmentItem, Mapping[str, Any]]


def _items(assignments: Iterable[AssignmentInput]) -> List[AssignmentItem]:
    return [a if isinstance(a, AssignmentItem) else AssignmentItem.model_validate(a) for a in assignments]


def validation_key(assignments: Sequence[AssignmentItem]) -> str:
    """Composite cache key for a validation request, e.g. ``u1:10,11|u2:10``."""
    return "|".join(f"{a.user_hash}:{','.join(str(r) for r in a.role_ids)}" for a in assignments)


class AssignmentEngine:
    """Single and bulk role assignment for one project."""

    def __init__(
        self,
        authority: AuthorityClient,
        cache: EffectivePermissionCache,
        *,
        history_limit: Optional[int] = None,
    ):
        self.project_hash = cache.project_hash
        self.history_limit = history_limit or config.HISTORY_LIMIT
        self.conflicts: List[PermissionConflict] = []
        self.history: List[AssignmentHistory] = []
        self.error: Optional[str] = None
        self._authority = authority
        self._dry_run = DryRunAuthority(authority)
        self._cache = cache
        self._assignments: Dict[str, List[UserRoleAssignment]] = {}
        # scope (one workflow run) -> validation key -> result
        self._validation_results: Dict[str, Dict[str, AssignmentValidationResult]] = {}
        # Bumped on every accepted write; validations started before it are not cached.
        self._writes = 0
        self._closed = False
        self._refresher = PeriodicRefresher(self._auto_refresh, name=f"assignments:{self.project_hash}")

    @property
    def cache(self) -> EffectivePermissionCache:
        return self._cache

    def validation_results(self, scope: str) -> Dict[str, AssignmentValidationResult]:
        return dict(self._validation_results.get(scope, {}))

    def _stale(self, what: str) -> bool:
        if self._closed:
            log.debug("%s", StaleResultIgnored(f"Dropped {what} for project {self.project_hash}"))
        return self._closed

    async def _refresh_effective(self, user_hash: str) -> None:
        # The write already succeeded; a failed re-read keeps the old snapshot.
        try:
            await self._cache.refresh_user(user_hash)
        except FetchError as e:
            self.error = f"Failed to refresh effective permissions for {user_hash}: {e.message}"
            log.warning(self.error)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def assign_user_to_role(
        self, user_hash: str, role_id: int, reason: Optional[str] = None
    ) -> UserRoleAssignment:
        """
        Assign one role to one user.

        Raises:
            AssignmentError: the authority rejected the assignment; nothing local changes.
        """
        self.error = None
        try:
            assignment = await self._authority.assign_role(user_hash, self.project_hash, role_id, reason)
        except AssignmentError as e:
            self.error = e.message
            raise
        self._graph_changed()
        if self._stale(f"assignment of role {role_id} to {user_hash}"):
            return assignment

        self._assignments[user_hash] = [*self._assignments.get(user_hash, []), assignment]
        log.info("Assigned role %s to user %s in project %s", role_id, user_hash, self.project_hash)
        await self._refresh_effective(user_hash)
        return assignment

    async def remove_user_from_role(self, user_hash: str, role_id: int) -> None:
        """Remove a role from a user. Roles the user does not hold are still sent to the authority."""
        self.error = None
        try:
            await self._authority.remove_role(user_hash, self.project_hash, role_id)
        except AssignmentError as e:
            self.error = e.message
            raise
        self._graph_changed()
        if self._stale(f"removal of role {role_id} from {user_hash}"):
            return

        self._assignments[user_hash] = [a for a in self._assignments.get(user_hash, []) if a.role_id != role_id]
        log.info("Removed role %s from user %s in project %s", role_id, user_hash, self.project_hash)
        await self._refresh_effective(user_hash)

    async def bulk_assign_roles(self, assignments: Iterable[AssignmentInput]) -> BulkAssignmentResult:
        """
        Assign many roles in one authority call.

        Per-item failures come back in ``result.errors``; successes are kept
        (no rollback) and failed items are not retried. Every distinct user with
        at least one successful assignment is refreshed exactly once.
        """
        items = _items(assignments)
        self.error = None
        try:
            result = await self._authority.bulk_assign_roles(self.project_hash, items)
        except AssignmentError as e:
            self.error = e.message
            raise
        if result.assignments:
            self._graph_changed()
        if self._stale("bulk assignment"):
            return result

        for assignment in result.assignments:
            user_assignments = list(self._assignments.get(assignment.user_hash, []))
            for index, existing in enumerate(user_assignments):
                if existing.role_id == assignment.role_id:
                    user_assignments[index] = assignment
                    break
            else:
                user_assignments.append(assignment)
            self._assignments[assignment.user_hash] = user_assignments

        if result.errors:
            log.warning(
                "Bulk assignment in project %s: %d succeeded, %d failed",
                self.project_hash, result.success_count, result.error_count,
            )
        else:
            log.info("Bulk assignment in project %s: %d succeeded", self.project_hash, result.success_count)

        affected = list(dict.fromkeys(a.user_hash for a in result.assignments))
        await asyncio.gather(*(self._refresh_effective(user_hash) for user_hash in affected))
        return result

    # ------------------------------------------------------------------
    # Dry runs
    # ------------------------------------------------------------------

    async def validate_assignment(
        self, user_hash: str, role_ids: Sequence[int], *, scope: Optional[str] = None
    ) -> AssignmentValidationResult:
        return await self._validate([AssignmentItem(user_hash=user_hash, role_ids=list(role_ids))], scope)

    async def validate_bulk_assignments(
        self, assignments: Iterable[AssignmentInput], *, scope: Optional[str] = None
    ) -> AssignmentValidationResult:
        return await self._validate(_items(assignments), scope)

    async def _validate(self, items: List[AssignmentItem], scope: Optional[str]) -> AssignmentValidationResult:
        """
        Dry-run through the authority.

        With a ``scope`` (one workflow run), identical requests are answered from
        that run's results until the run clears them or any write lands. Without
        one, the authority is always asked.
        """
        key = validation_key(items)
        if scope is not None:
            cached = self._validation_results.get(scope, {}).get(key)
            if cached is not None:
                log.debug("Validation cache hit for %s in %s", key, scope)
                return cached
        writes = self._writes
        result = await self._dry_run.validate_assignments(self.project_hash, items)
        if scope is None or self._stale(f"validation {key}"):
            return result
        if writes != self._writes:
            log.debug("%s", StaleResultIgnored(f"Validation {key} predates a write, not cached"))
            return result
        self._validation_results.setdefault(scope, {})[key] = result
        return result

    def clear_validation_results(self, scope: Optional[str] = None) -> None:
        """Forget one run's validations, or every run's when ``scope`` is omitted."""
        if scope is None:
            self._validation_results = {}
        else:
            self._validation_results.pop(scope, None)

    def _graph_changed(self) -> None:
        self._writes += 1
        self._validation_results = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def detect_conflicts(self, user_hash: Optional[str] = None) -> List[PermissionConflict]:
        """Project-wide scan, or a single user's. Replaces the current conflict list."""
        conflicts = await self._authority.detect_conflicts(self.project_hash, user_hash)
        if not self._stale("conflict scan"):
            self.conflicts = conflicts
        return conflicts

    async def get_user_assignments(self, user_hash: str) -> List[UserRoleAssignment]:
        assignments = await self._authority.fetch_user_roles(user_hash, self.project_hash)
        if not self._stale(f"assignments of {user_hash}"):
            self._assignments[user_hash] = list(assignments)
        return assignments

    async def refresh_assignments(self, user_hashes: Optional[Iterable[str]] = None) -> RefreshReport:
        """Re-fetch assignment lists (all loaded users by default). Best effort."""
        targets = list(user_hashes) if user_hashes is not None else list(self._assignments)
        results = await asyncio.gather(
            *(self.get_user_assignments(user_hash) for user_hash in targets),
            return_exceptions=True,
        )
        report = RefreshReport()
        for user_hash, result in zip(targets, results):
            if isinstance(result, FetchError):
                report.failed[user_hash] = result.message
            elif isinstance(result, BaseException):
                raise result
            else:
                report.refreshed.append(user_hash)
        if report.failed:
            report.error = f"Failed to refresh assignments for {len(report.failed)} user(s)"
            self.error = report.error
            log.warning("%s in project %s", report.error, self.project_hash)
        return report

    async def refresh_history(self) -> List[AssignmentHistory]:
        """Fetch recent assignment history. Failures are logged and the old history kept."""
        try:
            history = await self._authority.fetch_assignment_history(self.project_hash, limit=self.history_limit)
        except FetchError as e:
            log.warning("Failed to refresh assignment history for project %s: %s", self.project_hash, e.message)
            return self.history
        if not self._stale("assignment history"):
            self.history = history
        return history

    def get_assignments_by_user(self, user_hash: str) -> List[UserRoleAssignment]:
        return list(self._assignments.get(user_hash, []))

    def has_conflicts(self, user_hash: Optional[str] = None) -> bool:
        if user_hash is None:
            return len(self.conflicts) > 0
        user_conflicts = {c.permission_name for c in self._cache.get_conflicts(user_hash)}
        return any(c.permission_name in user_conflicts for c in self.conflicts)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _auto_refresh(self) -> None:
        await self.refresh_assignments()
        await self.refresh_history()

    def start_auto_refresh(self, interval: Optional[float] = None) -> None:
        self._refresher.start(interval)

    async def stop_auto_refresh(self) -> None:
        await self._refresher.stop()

    async def close(self) -> None:
        self._closed = True
        await self._refresher.stop()
