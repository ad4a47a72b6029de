"""
Analytics over the effective permission cache.

Pure functions: they read the cache's current snapshots, recompute on every
call and never mutate anything.
"""
from collections import Counter
from typing import Dict, Set

from access_admin.features.rbac.cache import EffectivePermissionCache
from access_admin.features.rbac.schemas import (
    ConflictSeverity,
    ConflictSummary,
    CoverageSummary,
    GrantSource,
    PermissionComparison,
)


def permission_coverage(cache: EffectivePermissionCache) -> CoverageSummary:
    """
    Share of observed permission names that at least one tracked user holds.

    Both the universe and the covered set are built from tracked users' effective
    permissions, so the percentage is 100 whenever anything is tracked and 0 when
    nothing is.
    """
    all_permissions: Set[str] = set()
    covered_permissions: Set[str] = set()
    for snapshot in cache.snapshots().values():
        for name in snapshot.permission_names:
            all_permissions.add(name)
            covered_permissions.add(name)

    total = len(all_permissions)
    covered = len(covered_permissions)
    percentage = (covered / total) * 100 if total > 0 else 0.0
    return CoverageSummary(total=total, covered=covered, percentage=percentage)


def conflict_summary(cache: EffectivePermissionCache) -> ConflictSummary:
    """Roll up every tracked user's conflicts by severity."""
    summary = ConflictSummary()
    for snapshot in cache.snapshots().values():
        if not snapshot.conflicts:
            continue
        summary.affected_users += 1
        summary.total_conflicts += len(snapshot.conflicts)
        for conflict in snapshot.conflicts:
            if conflict.severity == ConflictSeverity.HIGH:
                summary.high_severity += 1
            elif conflict.severity == ConflictSeverity.MEDIUM:
                summary.medium_severity += 1
            elif conflict.severity == ConflictSeverity.LOW:
                summary.low_severity += 1
    return summary


def compare_user_permissions(
    cache: EffectivePermissionCache, user_hash1: str, user_hash2: str
) -> PermissionComparison:
    """Set difference of two users' effective permission names. List order is not significant."""
    user1 = {p.permission_name for p in cache.get_permissions(user_hash1)}
    user2 = {p.permission_name for p in cache.get_permissions(user_hash2)}
    return PermissionComparison(
        common=[name for name in user1 if name in user2],
        only_user1=[name for name in user1 if name not in user2],
        only_user2=[name for name in user2 if name not in user1],
    )


def permission_matrix(cache: EffectivePermissionCache) -> Dict[str, Dict[str, str]]:
    """user_hash -> permission_name -> provenance of the first grant seen."""
    matrix: Dict[str, Dict[str, str]] = {}
    for user_hash, snapshot in cache.snapshots().items():
        row: Dict[str, str] = {}
        for permission in snapshot.permissions:
            row.setdefault(permission.permission_name, permission.granted_through.value)
        matrix[user_hash] = row
    return matrix


def grant_source_breakdown(cache: EffectivePermissionCache, user_hash: str) -> Dict[str, int]:
    counts = Counter(p.granted_through.value for p in cache.get_permissions(user_hash))
    return {source.value: counts.get(source.value, 0) for source in GrantSource}
