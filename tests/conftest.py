"""Shared pytest fixtures for the RBAC administration core."""
import os
from unittest.mock import AsyncMock

import pytest

# Deterministic settings before any access_admin module reads them
os.environ.setdefault("AUTHORITY_BASE_URL", "http://authority.test/api")
os.environ.setdefault("AUTO_REFRESH_ENABLED", "0")

from access_admin.features.rbac.assignments import AssignmentEngine  # noqa: E402
from access_admin.features.rbac.authority import AuthorityClient  # noqa: E402
from access_admin.features.rbac.cache import EffectivePermissionCache  # noqa: E402
from tests.factories import assignment, effective, valid  # noqa: E402


PROJECT = "p1"


@pytest.fixture
def authority():
    """AsyncMock standing in for the permission authority.

    Defaults: every user has no permissions, assignments succeed, validations pass.
    """
    mock = AsyncMock(spec=AuthorityClient)

    async def fetch_effective_permissions(user_hash, project_hash):
        return effective(user_hash)

    async def assign_role(user_hash, project_hash, role_id, reason=None):
        return assignment(user_hash, role_id, project_hash)

    async def validate_assignments(project_hash, assignments):
        return valid()

    mock.fetch_effective_permissions.side_effect = fetch_effective_permissions
    mock.assign_role.side_effect = assign_role
    mock.remove_role.return_value = None
    mock.validate_assignments.side_effect = validate_assignments
    mock.detect_conflicts.return_value = []
    mock.fetch_assignment_history.return_value = []
    mock.fetch_user_roles.return_value = []
    mock.fetch_users.return_value = []
    mock.fetch_roles.return_value = []
    return mock


@pytest.fixture
def cache(authority):
    return EffectivePermissionCache(authority, PROJECT)


@pytest.fixture
def engine(authority, cache):
    return AssignmentEngine(authority, cache)
