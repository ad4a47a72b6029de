"""
Report effective-permission coverage and conflicts for a project.

Loads every given user (or every user the authority knows about) into an
effective permission cache, then logs the coverage and conflict roll-up.

Usage:
    uv run python -m scripts.permission_report <project_hash> [user_hash ...]
"""
import asyncio
import sys
from typing import List

from access_admin.features.rbac import analytics
from access_admin.features.rbac.authority import get_authority_client
from access_admin.features.rbac.cache import EffectivePermissionCache
from access_admin.utils import get_logger


log = get_logger(__name__)


async def build_report(project_hash: str, user_hashes: List[str]) -> int:
    """Log the report; returns the number of users that failed to load."""
    authority = get_authority_client()
    if not user_hashes:
        log.info("No users given, loading all users from the authority...")
        user_hashes = [u.user_hash for u in await authority.fetch_users() if u.user_hash]

    cache = EffectivePermissionCache(authority, project_hash)
    try:
        report = await cache.load(user_hashes)
        if report.error:
            log.warning(report.error)
            for user_hash, message in report.failed.items():
                log.warning(f"  - {user_hash}: {message}")

        coverage = analytics.permission_coverage(cache)
        conflicts = analytics.conflict_summary(cache)
        log.info(f"Project {project_hash}: {len(cache.tracked_users())} users loaded")
        log.info(f"Coverage: {coverage.covered}/{coverage.total} permissions ({coverage.percentage:.1f}%)")
        log.info(
            f"Conflicts: {conflicts.total_conflicts} total "
            f"(high={conflicts.high_severity}, medium={conflicts.medium_severity}, low={conflicts.low_severity}) "
            f"across {conflicts.affected_users} users"
        )
        for user_hash in cache.tracked_users():
            for conflict in cache.get_conflicts(user_hash):
                log.info(f"  - {user_hash}: {conflict.permission_name} [{conflict.severity.value}] {conflict.resolution}")
        return len(report.failed)
    finally:
        await cache.close()


async def main():
    if len(sys.argv) < 2:
        log.error("Usage: python -m scripts.permission_report <project_hash> [user_hash ...]")
        sys.exit(2)
    failed = await build_report(sys.argv[1], sys.argv[2:])
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
