"""
Per-project cache of effective permissions.

Each tracked user has one immutable ``PermissionSnapshot`` holding the flat
permission lookup, the conflict list and the inheritance-path index, all
derived from a single authority fetch. A refresh builds a new snapshot and
swaps it in with one dict assignment, so readers never see indexes from two
different fetches. Only this class mutates its entry map.
"""
import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from access_admin.features.rbac.authority import AuthorityClient, DryRunAuthority
from access_admin.features.rbac.exceptions import FetchError, StaleResultIgnored
from access_admin.features.rbac.refresh import PeriodicRefresher
from access_admin.features.rbac.schemas import (
    EffectivePermission,
    GrantSource,
    PermissionConflict,
    RefreshReport,
    SimulationResult,
    UserEffectivePermissions,
)
from access_admin.utils import get_logger


log = get_logger(__name__)


def describe_grant(permission: EffectivePermission) -> str:
    """Human-readable label for where a grant came from."""
    if permission.granted_through == GrantSource.DIRECT:
        return "Direct Assignment"
    if permission.granted_through == GrantSource.ROLE:
        return f"Role: {permission.source_name}"
    return f"Group: {permission.source_name}"


@dataclass(frozen=True)
class PermissionSnapshot:
    """Everything known about one user, derived from one fetch."""
    user_hash: str
    username: str
    permissions: Tuple[EffectivePermission, ...]
    permission_names: FrozenSet[str]
    conflicts: Tuple[PermissionConflict, ...]
    inheritance_paths: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_authority(
        cls, data: UserEffectivePermissions, *, include_inheritance_paths: bool = True
    ) -> "PermissionSnapshot":
        paths: Dict[str, List[str]] = {}
        if include_inheritance_paths:
            for permission in data.permissions:
                chain = paths.setdefault(permission.permission_name, [])
                label = describe_grant(permission)
                if label not in chain:
                    chain.append(label)
        return cls(
            user_hash=data.user_hash,
            username=data.username,
            permissions=tuple(data.permissions),
            permission_names=frozenset(p.permission_name for p in data.permissions),
            conflicts=tuple(data.conflicts),
            inheritance_paths=MappingProxyType({name: tuple(chain) for name, chain in paths.items()}),
        )


class EffectivePermissionCache:
    """
    Queryable snapshot of each tracked user's effective permissions in one project.

    Reads never raise: untracked users simply have no permissions. Single-user
    fetches propagate ``FetchError`` and leave the previous snapshot in place;
    ``refresh_all`` is best effort and reports failures in aggregate.
    """

    def __init__(
        self,
        authority: AuthorityClient,
        project_hash: str,
        *,
        include_inheritance_paths: bool = True,
    ):
        self.project_hash = project_hash
        self.include_inheritance_paths = include_inheritance_paths
        self.error: Optional[str] = None
        self._authority = authority
        self._dry_run = DryRunAuthority(authority)
        self._entries: Dict[str, PermissionSnapshot] = {}
        # Bumped whenever a user is evicted; a fetch started under an older
        # epoch must not resurrect the entry.
        self._epochs: Dict[str, int] = {}
        self._in_flight = 0
        self._closed = False
        self._refresher = PeriodicRefresher(self.refresh_all, name=f"effective-permissions:{project_hash}")

    @property
    def loading(self) -> bool:
        return self._in_flight > 0

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def add_user(self, user_hash: str) -> None:
        """Start tracking a user. No-op if the user is already tracked."""
        if user_hash in self._entries:
            log.debug("User %s already tracked in project %s", user_hash, self.project_hash)
            return
        await self.refresh_user(user_hash)

    async def refresh_user(self, user_hash: str) -> None:
        """Re-fetch a user's effective permissions and replace their snapshot."""
        epoch = self._epochs.get(user_hash, 0)
        self.error = None
        self._in_flight += 1
        try:
            data = await self._authority.fetch_effective_permissions(user_hash, self.project_hash)
        except FetchError as e:
            self.error = e.message
            raise
        finally:
            self._in_flight -= 1

        if self._closed or self._epochs.get(user_hash, 0) != epoch:
            log.debug("%s", StaleResultIgnored(f"Dropped effective permissions for {user_hash}"))
            return
        self._entries[user_hash] = PermissionSnapshot.from_authority(
            data, include_inheritance_paths=self.include_inheritance_paths
        )

    async def refresh_all(self) -> RefreshReport:
        """Refresh every tracked user concurrently; failures are aggregated, not raised."""
        return await self._refresh_many(list(self._entries))

    async def load(self, user_hashes: Iterable[str]) -> RefreshReport:
        """Initial concurrent load of a list of users."""
        return await self._refresh_many(list(dict.fromkeys(user_hashes)))

    async def _refresh_many(self, user_hashes: Sequence[str]) -> RefreshReport:
        results = await asyncio.gather(
            *(self.refresh_user(user_hash) for user_hash in user_hashes),
            return_exceptions=True,
        )
        report = RefreshReport()
        for user_hash, result in zip(user_hashes, results):
            if isinstance(result, FetchError):
                report.failed[user_hash] = result.message
            elif isinstance(result, BaseException):
                raise result
            else:
                report.refreshed.append(user_hash)
        if report.failed:
            report.error = f"Failed to refresh permissions for {len(report.failed)} of {len(user_hashes)} user(s)"
            self.error = report.error
            log.warning("%s in project %s: %s", report.error, self.project_hash, report.failed)
        return report

    def remove_user(self, user_hash: str) -> None:
        """Evict every derived index for a user. Unknown users are ignored."""
        self._epochs[user_hash] = self._epochs.get(user_hash, 0) + 1
        self._entries.pop(user_hash, None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def tracked_users(self) -> List[str]:
        return list(self._entries)

    def is_tracked(self, user_hash: str) -> bool:
        return user_hash in self._entries

    def snapshot(self, user_hash: str) -> Optional[PermissionSnapshot]:
        return self._entries.get(user_hash)

    def snapshots(self) -> Mapping[str, PermissionSnapshot]:
        """Read-only view of all current snapshots."""
        return MappingProxyType(self._entries)

    def has_permission(self, user_hash: str, permission_name: str) -> bool:
        entry = self._entries.get(user_hash)
        return entry is not None and permission_name in entry.permission_names

    def get_permissions(self, user_hash: str) -> List[EffectivePermission]:
        entry = self._entries.get(user_hash)
        return list(entry.permissions) if entry else []

    def get_conflicts(self, user_hash: str) -> List[PermissionConflict]:
        entry = self._entries.get(user_hash)
        return list(entry.conflicts) if entry else []

    def get_inheritance_path(self, user_hash: str, permission_name: str) -> List[str]:
        entry = self._entries.get(user_hash)
        if entry is None:
            return []
        return list(entry.inheritance_paths.get(permission_name, ()))

    async def simulate_assignment(self, user_hash: str, role_ids: Sequence[int]) -> SimulationResult:
        """Ask the authority what the user would hold with these roles. Does not touch the cache."""
        return await self._dry_run.simulate_assignment(user_hash, self.project_hash, role_ids)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_auto_refresh(self, interval: Optional[float] = None) -> None:
        self._refresher.start(interval)

    async def stop_auto_refresh(self) -> None:
        await self._refresher.stop()

    @property
    def auto_refreshing(self) -> bool:
        return self._refresher.running

    async def close(self) -> None:
        """Withdraw interest: stop the timer, evict everything, drop late results."""
        self._closed = True
        await self._refresher.stop()
        for user_hash in list(self._entries):
            self.remove_user(user_hash)
