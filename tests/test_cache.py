"""
Tests for the effective permission cache.

Tests:
- Idempotent tracking and scenario lookups
- Atomic snapshot replacement and failure isolation
- Best-effort refresh_all aggregation
- Eviction and late results after loss of interest
- Auto-refresh timer lifecycle
"""
import asyncio

import pytest

from access_admin.features.rbac.cache import EffectivePermissionCache
from access_admin.features.rbac.exceptions import FetchError
from access_admin.features.rbac.schemas import SimulationResult
from tests.factories import conflict, effective, fetch_count, grant


def _serve(authority, data):
    """Make the mocked authority answer from a dict of user_hash -> payload (or exception)."""
    async def fetch(user_hash, project_hash):
        value = data[user_hash]
        if isinstance(value, Exception):
            raise value
        return value
    authority.fetch_effective_permissions.side_effect = fetch


class TestTracking:
    @pytest.mark.asyncio
    async def test_add_user_twice_fetches_once(self, authority, cache):
        _serve(authority, {"u1": effective("u1", [grant("read")])})

        await cache.add_user("u1")
        first = cache.get_permissions("u1")
        await cache.add_user("u1")

        assert fetch_count(authority, "u1") == 1
        assert cache.get_permissions("u1") == first

    @pytest.mark.asyncio
    async def test_editor_scenario(self, authority, cache):
        _serve(authority, {"u1": effective("u1", [grant("read"), grant("write")])})

        await cache.add_user("u1")

        assert cache.has_permission("u1", "write") is True
        assert cache.has_permission("u1", "delete") is False
        assert cache.get_conflicts("u1") == []
        assert cache.get_inheritance_path("u1", "write") == ["Role: Editor"]

    @pytest.mark.asyncio
    async def test_add_user_failure_leaves_user_untracked(self, authority, cache):
        _serve(authority, {"u1": FetchError("boom")})

        with pytest.raises(FetchError):
            await cache.add_user("u1")

        assert not cache.is_tracked("u1")
        assert cache.error == "boom"

    def test_untracked_user_reads_are_empty(self, cache):
        assert cache.has_permission("ghost", "read") is False
        assert cache.get_permissions("ghost") == []
        assert cache.get_conflicts("ghost") == []
        assert cache.get_inheritance_path("ghost", "read") == []

    def test_remove_untracked_user_is_silent(self, cache):
        cache.remove_user("ghost")
        assert cache.tracked_users() == []


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_replaces_all_indexes_together(self, authority, cache):
        data = {"u1": effective("u1", [grant("read")], [conflict("read", "low")])}
        _serve(authority, data)
        await cache.add_user("u1")

        data["u1"] = effective(
            "u1",
            [grant("write", source="Staff", through="group")],
            [conflict("write", "high")],
        )
        await cache.refresh_user("u1")

        assert [p.permission_name for p in cache.get_permissions("u1")] == ["write"]
        assert [c.permission_name for c in cache.get_conflicts("u1")] == ["write"]
        assert cache.get_inheritance_path("u1", "write") == ["Group: Staff"]
        assert cache.get_inheritance_path("u1", "read") == []
        assert not cache.has_permission("u1", "read")

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self, authority, cache):
        data = {"u1": effective("u1", [grant("read")])}
        _serve(authority, data)
        await cache.add_user("u1")
        before = cache.snapshot("u1")

        data["u1"] = FetchError("authority down")
        with pytest.raises(FetchError):
            await cache.refresh_user("u1")

        assert cache.snapshot("u1") is before
        assert cache.has_permission("u1", "read")

    @pytest.mark.asyncio
    async def test_refresh_all_is_best_effort(self, authority, cache):
        data = {
            "u1": effective("u1", [grant("read")]),
            "u2": effective("u2", [grant("read")]),
            "u3": effective("u3", [grant("read")]),
        }
        _serve(authority, data)
        for user_hash in data:
            await cache.add_user(user_hash)

        data["u1"] = effective("u1", [grant("admin")])
        data["u2"] = FetchError("timeout")
        data["u3"] = effective("u3", [grant("export")])
        report = await cache.refresh_all()

        assert report.failed == {"u2": "timeout"}
        assert set(report.refreshed) == {"u1", "u3"}
        assert report.error is not None
        assert cache.error == report.error
        assert cache.has_permission("u1", "admin")
        assert cache.has_permission("u2", "read")
        assert cache.has_permission("u3", "export")

    @pytest.mark.asyncio
    async def test_load_tracks_each_user_once(self, authority, cache):
        _serve(authority, {"u1": effective("u1"), "u2": FetchError("nope")})

        report = await cache.load(["u1", "u2", "u1"])

        assert cache.tracked_users() == ["u1"]
        assert report.failed == {"u2": "nope"}
        assert fetch_count(authority, "u1") == 1

    @pytest.mark.asyncio
    async def test_grants_from_several_sources_build_a_chain(self, authority, cache):
        _serve(authority, {"u1": effective("u1", [
            grant("read", source="Editor"),
            grant("read", source="Direct Assignment", through="direct"),
            grant("read", source="Staff", through="group"),
            grant("read", source="Editor"),
        ])})

        await cache.add_user("u1")

        assert cache.get_inheritance_path("u1", "read") == ["Role: Editor", "Direct Assignment", "Group: Staff"]

    @pytest.mark.asyncio
    async def test_inheritance_paths_can_be_disabled(self, authority):
        cache = EffectivePermissionCache(authority, "p1", include_inheritance_paths=False)
        _serve(authority, {"u1": effective("u1", [grant("read")])})

        await cache.add_user("u1")

        assert cache.has_permission("u1", "read")
        assert cache.get_inheritance_path("u1", "read") == []


class TestInterest:
    @pytest.mark.asyncio
    async def test_remove_during_fetch_drops_late_result(self, authority, cache):
        release = asyncio.Event()

        async def slow_fetch(user_hash, project_hash):
            await release.wait()
            return effective(user_hash, [grant("read")])

        authority.fetch_effective_permissions.side_effect = slow_fetch
        task = asyncio.create_task(cache.add_user("u1"))
        await asyncio.sleep(0)
        assert cache.loading

        cache.remove_user("u1")
        release.set()
        await task

        assert not cache.is_tracked("u1")
        assert not cache.loading

    @pytest.mark.asyncio
    async def test_close_drops_late_result(self, authority, cache):
        release = asyncio.Event()

        async def slow_fetch(user_hash, project_hash):
            await release.wait()
            return effective(user_hash, [grant("read")])

        authority.fetch_effective_permissions.side_effect = slow_fetch
        task = asyncio.create_task(cache.refresh_user("u1"))
        await asyncio.sleep(0)

        await cache.close()
        release.set()
        await task

        assert cache.closed
        assert cache.tracked_users() == []

    @pytest.mark.asyncio
    async def test_simulation_does_not_touch_cache(self, authority, cache):
        authority.simulate_assignment.return_value = SimulationResult(
            effective_permissions=[grant("delete")], warnings=["elevated"]
        )

        result = await cache.simulate_assignment("u1", [7])

        assert result.warnings == ["elevated"]
        authority.simulate_assignment.assert_awaited_once_with("u1", "p1", [7])
        assert cache.tracked_users() == []
        assert not cache.has_permission("u1", "delete")


class TestAutoRefresh:
    @pytest.mark.asyncio
    async def test_timer_refreshes_until_stopped(self, authority, cache):
        _serve(authority, {"u1": effective("u1")})
        await cache.add_user("u1")

        cache.start_auto_refresh(0.02)
        assert cache.auto_refreshing
        await asyncio.sleep(0.25)
        await cache.stop_auto_refresh()
        fetched = fetch_count(authority, "u1")
        await asyncio.sleep(0.1)

        assert fetched > 1
        assert fetch_count(authority, "u1") == fetched
        assert not cache.auto_refreshing

    @pytest.mark.asyncio
    async def test_close_stops_timer(self, cache):
        cache.start_auto_refresh(0.01)
        await cache.close()
        assert not cache.auto_refreshing

    @pytest.mark.asyncio
    async def test_non_positive_interval_disables(self, cache):
        cache.start_auto_refresh(0)
        assert not cache.auto_refreshing
