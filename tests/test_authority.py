"""Tests for the permission authority client, driven through httpx.MockTransport."""
import json

import httpx
import pytest

from access_admin.features.rbac.authority import AuthorityClient, DryRunAuthority
from access_admin.features.rbac.exceptions import AssignmentError, FetchError
from access_admin.features.rbac.schemas import AssignmentItem, GrantSource


def make_client(handler, token="secret-token"):
    return AuthorityClient(
        base_url="http://authority.test/api",
        api_token=token,
        timeout_s=1,
        transport=httpx.MockTransport(handler),
    )


class TestReads:
    @pytest.mark.asyncio
    async def test_effective_permissions_enveloped_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={
                "success": True,
                "data": {
                    "user_hash": "u1",
                    "username": "alice",
                    "permissions": [{
                        "permission_name": "write",
                        "granted_through": "role",
                        "source_name": "Editor",
                        "source_id": 10,
                    }],
                    "conflicts": [],
                },
            })

        result = await make_client(handler).fetch_effective_permissions("u1", "p1")

        assert seen["path"] == "/api/rbac/users/u1/projects/p1/effective-permissions"
        assert seen["auth"] == "Bearer secret-token"
        assert result.username == "alice"
        assert result.permissions[0].granted_through == GrantSource.ROLE
        assert result.permissions[0].source_id == "10"

    @pytest.mark.asyncio
    async def test_roles_accept_any_name_field(self):
        def handler(request):
            return httpx.Response(200, json={"data": {"roles": [
                {"id": 1, "group_name": "Editor"},
                {"id": 2, "role_name": "Viewer", "is_active": False},
            ]}})

        roles = await make_client(handler).fetch_roles("p1")

        assert [(r.id, r.name, r.is_active) for r in roles] == [(1, "Editor", True), (2, "Viewer", False)]

    @pytest.mark.asyncio
    async def test_conflict_scan_passes_user_filter(self):
        def handler(request):
            assert request.url.params.get("user_hash") == "u9"
            return httpx.Response(200, json=[{"permission_name": "delete", "severity": "high"}])

        conflicts = await make_client(handler).detect_conflicts("p1", "u9")

        assert conflicts[0].severity.value == "high"

    @pytest.mark.asyncio
    async def test_http_error_becomes_fetch_error(self):
        def handler(request):
            return httpx.Response(404, json={"detail": "Project not found"})

        with pytest.raises(FetchError) as exc:
            await make_client(handler).fetch_roles("missing")

        assert exc.value.message == "Project not found"
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_transport_error_becomes_fetch_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FetchError) as exc:
            await make_client(handler).fetch_users()

        assert exc.value.status_code is None
        assert "connection refused" in exc.value.message

    @pytest.mark.asyncio
    async def test_malformed_payload_becomes_fetch_error(self):
        def handler(request):
            return httpx.Response(200, json={"data": {"username": "no hash"}})

        with pytest.raises(FetchError, match="Malformed"):
            await make_client(handler).fetch_effective_permissions("u1", "p1")

    @pytest.mark.asyncio
    async def test_no_token_sends_no_authorization(self):
        def handler(request):
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={"users": []})

        assert await make_client(handler, token="").fetch_users() == []


class TestWrites:
    @pytest.mark.asyncio
    async def test_assign_role_sends_reason(self):
        def handler(request):
            assert request.method == "POST"
            assert json.loads(request.content) == {"role_id": 10, "reason": "onboarding"}
            return httpx.Response(201, json={"data": {"assignment": {
                "user_hash": "u1", "project_hash": "p1", "role_id": 10, "role_name": "Editor",
            }}})

        result = await make_client(handler).assign_role("u1", "p1", 10, "onboarding")

        assert result.role_name == "Editor"

    @pytest.mark.asyncio
    async def test_rejected_write_becomes_assignment_error(self):
        def handler(request):
            return httpx.Response(409, json={"message": "Role already assigned"})

        with pytest.raises(AssignmentError) as exc:
            await make_client(handler).assign_role("u1", "p1", 10)

        assert exc.value.message == "Role already assigned"
        assert exc.value.status_code == 409

    @pytest.mark.asyncio
    async def test_remove_role_no_content(self):
        def handler(request):
            assert request.method == "DELETE"
            assert request.url.path.endswith("/users/u1/projects/p1/roles/10")
            return httpx.Response(204)

        assert await make_client(handler).remove_role("u1", "p1", 10) is None

    @pytest.mark.asyncio
    async def test_bulk_partial_failure(self):
        def handler(request):
            body = json.loads(request.content)
            assert body == {"assignments": [{"user_hash": "u1", "role_ids": [10]}, {"user_hash": "u2", "role_ids": [10, 11]}]}
            return httpx.Response(200, json={"success": True, "data": {
                "assignments": [
                    {"user_hash": "u1", "project_hash": "p1", "role_id": 10},
                    {"user_hash": "u2", "project_hash": "p1", "role_id": 10},
                ],
                "errors": [{"user_hash": "u2", "role_id": 11, "error": "Role 11 does not exist"}],
            }})

        result = await make_client(handler).bulk_assign_roles("p1", [
            AssignmentItem(user_hash="u1", role_ids=[10]),
            AssignmentItem(user_hash="u2", role_ids=[10, 11]),
        ])

        assert result.success_count == 2
        assert result.error_count == 1
        assert result.errors[0].message == "Role 11 does not exist"
        assert result.errors[0].context == "user u2, role 11"


class TestDryRun:
    def test_exposes_no_write_calls(self):
        dry_run = DryRunAuthority(make_client(lambda request: httpx.Response(200)))
        for name in ("assign_role", "remove_role", "bulk_assign_roles", "fetch_effective_permissions"):
            assert not hasattr(dry_run, name)

    @pytest.mark.asyncio
    async def test_validation_forwards_to_authority(self):
        def handler(request):
            assert request.url.path == "/api/rbac/projects/p1/validate-assignments"
            return httpx.Response(200, json={"is_valid": False, "warnings": ["conflicts with Auditor"]})

        result = await DryRunAuthority(make_client(handler)).validate_assignments(
            "p1", [AssignmentItem(user_hash="u1", role_ids=[10])]
        )

        assert result.is_valid is False
        assert result.warnings == ["conflicts with Auditor"]
