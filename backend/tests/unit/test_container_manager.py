"""
Unit tests for the container lifecycle manager.
"""

import asyncio
import pytest
from datetime import timedelta

from arena.infrastructure.orchestrator.exceptions import (
    ContainerForbidden,
    ContainerNotFound,
    ContainerNotRunning,
    ErrorKind,
    ImageInvalid,
    RuntimeUnavailable,
)
from arena.infrastructure.orchestrator.models import ContainerStatus, OwnerLabels
from arena.infrastructure.orchestrator.services.container_manager import (
    ContainerLifecycleManager,
)
from tests.fixtures.sandbox_fixtures import FakeRuntime, lab_owner, make_settings


class GatedStopRuntime(FakeRuntime):
    """Holds every stop until released, so a sweep can be caught mid-flight."""

    def __init__(self):
        super().__init__()
        self.stop_entered = asyncio.Event()
        self.release = asyncio.Event()

    async def stop(self, container_id: str) -> None:
        self.stop_entered.set()
        await self.release.wait()
        await super().stop(container_id)


class TestContainerProvisioning:
    """Tests for create/stop/status."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runtime = FakeRuntime()
        self.settings = make_settings(
            sandbox_images={"web": "ctf/web-lab:1.0"},
        )
        self.manager = ContainerLifecycleManager(self.runtime, self.settings)

    async def test_create_container_tracks_and_labels(self):
        container_id, access_token = await self.manager.create_container(None, lab_owner(42))

        assert len(access_token) == 32
        tracked = self.manager.get_container(container_id)
        assert tracked is not None
        assert tracked.status == ContainerStatus.RUNNING
        assert tracked.image == self.settings.sandbox_default_image
        assert tracked.ip_address is not None

        labels = self.runtime.containers[container_id].labels
        assert labels["app"] == "arena"
        assert labels["user_id"] == "42"
        assert labels["match_id"] == "0"

    async def test_container_name_carries_owner(self):
        container_id, _ = await self.manager.create_container(None, lab_owner(42, match_id=3))
        name = self.manager.get_container(container_id).name
        assert name.startswith("arena_42_3_")

    async def test_selector_resolves_through_catalog(self):
        container_id, _ = await self.manager.create_container("web", lab_owner(1))
        assert self.runtime.containers[container_id].image == "ctf/web-lab:1.0"

    async def test_unknown_selector_is_a_literal_reference(self):
        container_id, _ = await self.manager.create_container("alpine:3.19", lab_owner(1))
        assert self.runtime.containers[container_id].image == "alpine:3.19"

    async def test_invalid_image_raises(self):
        with pytest.raises(ImageInvalid):
            await self.manager.create_container("missing/image:latest", lab_owner(1))
        assert self.manager.tracked_containers() == []

    async def test_unavailable_runtime_raises(self):
        self.runtime.unavailable = True
        with pytest.raises(RuntimeUnavailable):
            await self.manager.create_container(None, lab_owner(1))
        assert self.manager.tracked_containers() == []

    async def test_create_retries_transient_failures(self):
        manager = ContainerLifecycleManager(
            self.runtime,
            make_settings(sandbox_create_retries=2),
        )
        self.runtime.fail_create_after = 0

        with pytest.raises(RuntimeUnavailable):
            await manager.create_container(None, lab_owner(1))
        assert self.runtime.create_calls == 2

    async def test_image_errors_are_not_retried(self):
        manager = ContainerLifecycleManager(
            self.runtime,
            make_settings(sandbox_create_retries=3),
        )
        with pytest.raises(ImageInvalid):
            await manager.create_container("missing/image:latest", lab_owner(1))
        assert self.runtime.create_calls == 1

    async def test_stop_container_removes_and_invalidates_sessions(self):
        container_id, _ = await self.manager.create_container(None, lab_owner(1))
        first = await self.manager.sessions.create_session(container_id, 1)
        second = await self.manager.sessions.create_session(container_id, 1)

        assert await self.manager.stop_container(container_id)

        assert self.manager.get_container(container_id) is None
        assert container_id in self.runtime.stopped
        assert not self.manager.sessions.validate(first.session_id, first.token)
        assert not self.manager.sessions.validate(second.session_id, second.token)

    async def test_stop_untracked_container_returns_false(self):
        assert not await self.manager.stop_container("f" * 64)
        assert self.runtime.stopped == []

    async def test_stop_failure_leaves_state_untouched(self):
        container_id, _ = await self.manager.create_container(None, lab_owner(1))
        session = await self.manager.sessions.create_session(container_id, 1)
        self.runtime.stop_error = RuntimeUnavailable()

        with pytest.raises(RuntimeUnavailable):
            await self.manager.stop_container(container_id)

        assert self.manager.get_container(container_id) is not None
        assert self.manager.sessions.validate(session.session_id, session.token)

    async def test_stop_unknown_ids_leave_no_locks(self):
        for index in range(50):
            assert not await self.manager.stop_container(f"unknown{index}")
        assert self.manager._container_locks == {}

    async def test_stop_releases_container_lock(self):
        container_id, _ = await self.manager.create_container(None, lab_owner(1))
        assert await self.manager.stop_container(container_id)
        assert not await self.manager.stop_container(container_id)
        assert self.manager._container_locks == {}

    async def test_failed_stop_releases_container_lock(self):
        container_id, _ = await self.manager.create_container(None, lab_owner(1))
        self.runtime.stop_error = RuntimeUnavailable()

        with pytest.raises(RuntimeUnavailable):
            await self.manager.stop_container(container_id)

        assert self.manager._container_locks == {}

    async def test_check_status_never_raises(self):
        assert await self.manager.check_status("0" * 64) == ContainerStatus.NOT_FOUND
        self.runtime.unavailable = True
        assert await self.manager.check_status("0" * 64) == ContainerStatus.NOT_FOUND

    async def test_check_status_refreshes_tracked_record(self):
        container_id, _ = await self.manager.create_container(None, lab_owner(1))
        self.runtime.set_status(container_id, ContainerStatus.EXITED)

        assert await self.manager.check_status(container_id) == ContainerStatus.EXITED
        assert self.manager.get_container(container_id).status == ContainerStatus.EXITED

    async def test_exec_requires_tracked_container(self):
        with pytest.raises(ContainerNotFound):
            await self.manager.exec_command("0" * 64, ["id"])

        container_id, _ = await self.manager.create_container(None, lab_owner(1))
        result = await self.manager.exec_command(container_id, ["echo", "hi"])
        assert result.exit_code == 0
        assert result.stdout == "echo hi"


class TestOwnedContainers:
    """Tests for label-filtered listing."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runtime = FakeRuntime()
        self.manager = ContainerLifecycleManager(self.runtime, make_settings())

    async def test_list_owned_filters_app_label(self):
        ours, _ = await self.manager.create_container(None, lab_owner(1))
        self.runtime.seed({"app": "other", "user_id": "1"})
        self.runtime.seed({"user_id": "1"})

        owned = await self.manager.list_owned()
        assert [c.id for c in owned] == [ours]

    async def test_list_owned_filters_user(self):
        mine, _ = await self.manager.create_container(None, lab_owner(1))
        await self.manager.create_container(None, lab_owner(2))

        owned = await self.manager.list_owned(user_id=1)
        assert [c.id for c in owned] == [mine]
        assert owned[0].owner.user_id == 1

    async def test_list_owned_skips_garbled_labels(self):
        self.runtime.seed({"app": "arena", "user_id": "not-a-number"})
        assert await self.manager.list_owned() == []

    async def test_stopped_containers_only_when_asked(self):
        container_id = self.runtime.seed(
            {"app": "arena", "user_id": "1", "match_id": "0"},
            status=ContainerStatus.EXITED,
        )
        assert await self.manager.list_owned() == []
        owned = await self.manager.list_owned(include_stopped=True)
        assert [c.id for c in owned] == [container_id]


class TestCleanup:
    """Tests for age-based sweeps."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runtime = FakeRuntime()
        self.manager = ContainerLifecycleManager(self.runtime, make_settings())

    async def test_cleanup_zero_age_removes_everything(self):
        for user_id in (1, 2, 3):
            await self.manager.create_container(None, lab_owner(user_id))

        assert await self.manager.cleanup(0) == 3
        assert self.manager.tracked_containers() == []
        assert len(self.runtime.stopped) == 3

    async def test_cleanup_spares_young_containers(self):
        old_id, _ = await self.manager.create_container(None, lab_owner(1))
        young_id, _ = await self.manager.create_container(None, lab_owner(2))
        old = self.manager.get_container(old_id)
        old.created_at = old.created_at - timedelta(hours=3)

        report = await self.manager.sweep(7200)

        assert report.removed == [old_id]
        assert self.manager.get_container(young_id) is not None

    async def test_cleanup_reports_failures_and_continues(self):
        await self.manager.create_container(None, lab_owner(1))
        self.runtime.stop_error = RuntimeUnavailable()

        report = await self.manager.sweep(0)

        assert report.removed_count == 0
        assert len(report.failed) == 1
        assert len(self.manager.tracked_containers()) == 1

    async def test_containers_created_during_sweep_survive(self):
        runtime = GatedStopRuntime()
        manager = ContainerLifecycleManager(runtime, make_settings())
        for user_id in (1, 2):
            await manager.create_container(None, lab_owner(user_id))

        sweep = asyncio.create_task(manager.cleanup(0))
        await runtime.stop_entered.wait()
        survivor_id, _ = await manager.create_container(None, lab_owner(3))
        runtime.release.set()

        assert await sweep == 2
        assert manager.get_container(survivor_id) is not None
        assert survivor_id in runtime.containers


class TestLaunchAndConnect:
    """Tests for the session-aware entry points."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runtime = FakeRuntime()
        self.manager = ContainerLifecycleManager(self.runtime, make_settings())

    async def test_launch_returns_live_session(self):
        result = await self.manager.launch(None, user_id=5)

        assert not result.simulated_mode
        assert result.container_id in self.runtime.containers
        assert self.manager.sessions.validate(result.session_id, result.token)
        labels = self.runtime.containers[result.container_id].labels
        assert labels["session_id"] == str(result.session_id)

    async def test_launch_falls_back_when_runtime_unavailable(self):
        self.runtime.unavailable = True

        result = await self.manager.launch(None, user_id=5)

        assert result.simulated_mode
        assert result.container_id is None
        assert result.error_kind == ErrorKind.RUNTIME_UNAVAILABLE
        session = self.manager.sessions.get(result.session_id)
        assert session.container_id is None
        assert self.manager.sessions.validate(result.session_id, result.token)

    async def test_launch_falls_back_on_invalid_image(self):
        result = await self.manager.launch("missing/image:latest", user_id=5)
        assert result.simulated_mode
        assert result.error_kind == ErrorKind.IMAGE_INVALID

    async def test_strict_launch_raises(self):
        self.runtime.unavailable = True
        with pytest.raises(RuntimeUnavailable):
            await self.manager.launch(None, user_id=5, allow_simulated=False)
        assert self.manager.sessions.active_count == 0

    async def test_launch_serializes_without_container_when_simulated(self):
        self.runtime.unavailable = True
        result = await self.manager.launch(None, user_id=5)
        payload = result.to_dict()
        assert payload["simulated_mode"] is True
        assert "container_id" not in payload

    async def test_connect_to_own_container(self):
        launched = await self.manager.launch(None, user_id=5)

        result = await self.manager.connect(launched.container_id, user_id=5)

        assert result.container_id == launched.container_id
        assert result.session_id != launched.session_id
        assert self.manager.sessions.validate(launched.session_id, launched.token)
        assert self.manager.sessions.validate(result.session_id, result.token)

    async def test_connect_to_foreign_container_forbidden(self):
        launched = await self.manager.launch(None, user_id=5)
        with pytest.raises(ContainerForbidden):
            await self.manager.connect(launched.container_id, user_id=6)

    async def test_admin_may_connect_to_any_container(self):
        launched = await self.manager.launch(None, user_id=5)
        result = await self.manager.connect(launched.container_id, user_id=99, is_admin=True)
        assert result.container_id == launched.container_id

    async def test_connect_rejects_unlabelled_container(self):
        container_id = self.runtime.seed({"user_id": "5"})
        with pytest.raises(ContainerNotFound):
            await self.manager.connect(container_id, user_id=5)

    async def test_connect_rejects_stopped_container(self):
        container_id = self.runtime.seed(
            {"app": "arena", "user_id": "5", "match_id": "0"},
            status=ContainerStatus.EXITED,
        )
        with pytest.raises(ContainerNotRunning):
            await self.manager.connect(container_id, user_id=5)

    async def test_connect_adopts_container_from_earlier_process(self):
        container_id = self.runtime.seed({"app": "arena", "user_id": "5", "match_id": "12"})

        result = await self.manager.connect(container_id, user_id=5)

        assert result.match_id == 12
        tracked = self.manager.get_container(container_id)
        assert tracked.owner == OwnerLabels(user_id=5, match_id=12)

    async def test_close_session_stops_container(self):
        launched = await self.manager.launch(None, user_id=5)
        session = self.manager.sessions.get(launched.session_id)

        assert await self.manager.close_session(session)

        assert launched.container_id in self.runtime.stopped
        assert not self.manager.sessions.is_active(launched.session_id)

    async def test_close_session_survives_stop_failure(self):
        launched = await self.manager.launch(None, user_id=5)
        session = self.manager.sessions.get(launched.session_id)
        self.runtime.stop_error = RuntimeUnavailable()

        assert not await self.manager.close_session(session)
        assert not self.manager.sessions.is_active(launched.session_id)

    async def test_expire_sessions_stops_orphaned_containers(self):
        launched = await self.manager.launch(None, user_id=5)
        session = self.manager.sessions.get(launched.session_id)
        session.expires_at = session.created_at

        assert await self.manager.expire_sessions() == 1
        assert launched.container_id in self.runtime.stopped

    async def test_expire_sessions_keeps_container_with_live_session(self):
        launched = await self.manager.launch(None, user_id=5)
        await self.manager.connect(launched.container_id, user_id=5)
        session = self.manager.sessions.get(launched.session_id)
        session.expires_at = session.created_at

        assert await self.manager.expire_sessions() == 1
        assert launched.container_id not in self.runtime.stopped

    async def test_shutdown_stops_tracked_containers(self):
        await self.manager.launch(None, user_id=5)
        await self.manager.launch(None, user_id=6)
        await self.manager.start()

        await self.manager.stop()

        assert self.manager.tracked_containers() == []
        assert len(self.runtime.stopped) == 2
