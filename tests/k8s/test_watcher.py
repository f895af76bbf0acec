"""
Unit tests for ConditionWatcher.

Tests:
- First matching event wins
- Deadline closes the session and raises
- Stream closure without match
- Terminal pod/build states, deleted deployments, error events
- Project deletion waits for the Deleted event
"""

import threading

import pytest

pytest.importorskip("kubernetes")

from kubernetes import client

from fakes import FakeSession
from kubesync.errors import (
    MalformedInputError,
    TerminalStateError,
    WatchClosedError,
    WatchTimeoutError,
)
from kubesync.services.orchestration.kubernetes.client import (
    ADDED,
    BUILD,
    DELETED,
    DEPLOYMENT,
    ERROR,
    MODIFIED,
    POD,
    PROJECT,
    SECRET,
    WatchEvent,
)
from kubesync.services.orchestration.kubernetes.reconciler import REVISION_ANNOTATION, is_revision_reached
from kubesync.services.orchestration.kubernetes.watcher import ConditionWatcher, ResourceRef, get_field


def make_pod(name, phase):
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name),
        status=client.V1PodStatus(phase=phase)
    )


def make_build(name, phase):
    return {"metadata": {"name": name}, "status": {"phase": phase}}


def make_deployment(name, revision):
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=name, annotations={REVISION_ANNOTATION: str(revision)}),
        spec=client.V1DeploymentSpec(
            selector=client.V1LabelSelector(match_labels={"deployment": name}),
            template=client.V1PodTemplateSpec(metadata=client.V1ObjectMeta(labels={"deployment": name}))
        )
    )


@pytest.fixture
def watcher(session, settings):
    return ConditionWatcher(session, settings)


@pytest.mark.unit
class TestGetField:
    """Test nested field access on models and dicts."""

    def test_reads_model_attributes(self):
        assert get_field(make_pod("p", "Running"), "status", "phase") == "Running"

    def test_reads_dict_keys(self):
        assert get_field(make_build("b", "Complete"), "status", "phase") == "Complete"

    def test_missing_path_is_none(self):
        assert get_field({"status": None}, "status", "phase") is None


@pytest.mark.unit
class TestWaitFor:
    """Test the generic wait primitive."""

    @pytest.mark.asyncio
    async def test_returns_first_matching_event(self, session, watcher):
        session.add_events(
            POD,
            WatchEvent(ADDED, make_pod("pod-a", "Pending")),
            WatchEvent(MODIFIED, make_pod("pod-a", "Running")),
            WatchEvent(MODIFIED, make_pod("pod-b", "Running")),
        )

        pod = await watcher.wait_for(
            ResourceRef(POD, "pod-a"),
            lambda p: p.status.phase == "Running",
            timeout=2
        )

        assert pod.metadata.name == "pod-a"
        assert len(session.watches) == 1
        assert session.watches[0].stop_calls == 1
        assert session.watches[0].field_selector == "metadata.name=pod-a"

    @pytest.mark.asyncio
    async def test_timeout_stops_session(self, session, watcher):
        session.add_events(POD, WatchEvent(ADDED, make_pod("pod-a", "Pending")))

        with pytest.raises(WatchTimeoutError) as exc_info:
            await watcher.wait_for(ResourceRef(POD, "pod-a"), lambda p: False, timeout=0.2)

        assert "pod-a" in str(exc_info.value)
        assert len(session.watches) == 1
        assert session.watches[0].stop_calls == 1

    @pytest.mark.asyncio
    async def test_timeout_releases_watch_reader(self, session, watcher):
        with pytest.raises(WatchTimeoutError):
            await watcher.wait_for(ResourceRef(POD, "pod-x"), lambda p: False, timeout=0.2)

        assert session.watches[0].timeout_seconds == 1
        assert not [t for t in threading.enumerate() if t.name == "watch-pod-pod-x"]

    @pytest.mark.asyncio
    async def test_watch_bounded_by_deadline(self, session, watcher):
        session.add_events(POD, WatchEvent(ADDED, make_pod("pod-a", "Running")))

        await watcher.wait_for(ResourceRef(POD, "pod-a"), lambda p: True, timeout=2.5, label_selector="app=x")

        assert session.watches[0].timeout_seconds == 3
        assert not [t for t in threading.enumerate() if t.name == "watch-pod-pod-a"]

    @pytest.mark.asyncio
    async def test_closed_stream_without_match(self, settings):
        session = FakeSession(hold_open=False)
        session.add_events(POD, WatchEvent(ADDED, make_pod("pod-a", "Pending")))
        watcher = ConditionWatcher(session, settings)

        with pytest.raises(WatchClosedError):
            await watcher.wait_for(ResourceRef(POD, "pod-a"), lambda p: False, timeout=2)

        assert session.watches[0].stop_calls == 1

    @pytest.mark.asyncio
    async def test_error_event_is_terminal(self, session, watcher):
        session.add_events(SECRET, WatchEvent(ERROR, {"message": "too old resource version"}))

        with pytest.raises(TerminalStateError) as exc_info:
            await watcher.wait_for(ResourceRef(SECRET, "s"), lambda s: True, timeout=2)

        assert "too old resource version" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_deleted_events_ignored_by_default(self, session, watcher):
        session.add_events(
            SECRET,
            WatchEvent(DELETED, {"metadata": {"name": "s"}}),
            WatchEvent(ADDED, {"metadata": {"name": "s", "v": 2}}),
        )

        secret = await watcher.wait_for(ResourceRef(SECRET, "s"), lambda s: True, timeout=2)

        assert secret["metadata"]["v"] == 2

    @pytest.mark.asyncio
    async def test_label_selector_scopes_watch(self, session, watcher):
        session.add_events(POD, WatchEvent(ADDED, make_pod("pod-a", "Running")))

        await watcher.wait_for(ResourceRef(POD, "x"), lambda p: True, timeout=2, label_selector="app=x")

        assert session.watches[0].label_selector == "app=x"
        assert session.watches[0].field_selector is None


@pytest.mark.unit
class TestWaitForPod:
    """Test waiting for pod phases."""

    @pytest.mark.asyncio
    async def test_running_pod(self, session, watcher):
        session.add_events(
            POD,
            WatchEvent(ADDED, make_pod("web-1", "Pending")),
            WatchEvent(MODIFIED, make_pod("web-1", "Running")),
        )

        pod = await watcher.wait_for_pod("deployment=web")

        assert pod.metadata.name == "web-1"
        assert session.watches[0].label_selector == "deployment=web"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phase", ["Failed", "Unknown"])
    async def test_failed_pod_is_terminal(self, session, watcher, phase):
        session.add_events(POD, WatchEvent(MODIFIED, make_pod("web-1", phase)))

        with pytest.raises(TerminalStateError) as exc_info:
            await watcher.wait_for_pod("deployment=web")

        assert phase in str(exc_info.value)
        assert session.watches[0].stop_calls == 1

    @pytest.mark.asyncio
    async def test_cannot_wait_for_failure_phase(self, session, watcher):
        with pytest.raises(MalformedInputError):
            await watcher.wait_for_pod("deployment=web", desired_phase="Failed")

        assert session.watches == []

    @pytest.mark.asyncio
    async def test_timeout_names_selector(self, session, watcher):
        with pytest.raises(WatchTimeoutError) as exc_info:
            await watcher.wait_for_pod("deployment=web", timeout=0.2)

        assert "deployment=web" in str(exc_info.value)


@pytest.mark.unit
class TestWaitForBuild:
    """Test waiting for builds."""

    @pytest.mark.asyncio
    async def test_complete_build(self, session, watcher):
        session.add_events(
            BUILD,
            WatchEvent(ADDED, make_build("app-1", "New")),
            WatchEvent(MODIFIED, make_build("app-1", "Running")),
            WatchEvent(MODIFIED, make_build("app-1", "Complete")),
        )

        build = await watcher.wait_for_build("app-1")

        assert build["status"]["phase"] == "Complete"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phase", ["Failed", "Cancelled", "Error"])
    async def test_failed_build_is_terminal(self, session, watcher, phase):
        session.add_events(BUILD, WatchEvent(MODIFIED, make_build("app-1", phase)))

        with pytest.raises(TerminalStateError) as exc_info:
            await watcher.wait_for_build("app-1")

        assert exc_info.value.state == MODIFIED
        assert phase in str(exc_info.value)


@pytest.mark.unit
class TestWaitForDeployment:
    """Test waiting for a deployment revision."""

    @pytest.mark.asyncio
    async def test_waits_for_desired_revision(self, session, watcher):
        session.add_events(
            DEPLOYMENT,
            WatchEvent(MODIFIED, make_deployment("web", 3)),
            WatchEvent(MODIFIED, make_deployment("web", 4)),
        )

        deployment = await watcher.wait_for_deployment("web", 4, is_revision_reached)

        assert deployment.metadata.annotations[REVISION_ANNOTATION] == "4"

    @pytest.mark.asyncio
    async def test_deleted_deployment_is_terminal(self, session, watcher):
        session.add_events(DEPLOYMENT, WatchEvent(DELETED, make_deployment("web", 3)))

        with pytest.raises(TerminalStateError) as exc_info:
            await watcher.wait_for_deployment("web", 4, is_revision_reached)

        assert "deleted" in str(exc_info.value)


@pytest.mark.unit
class TestWaitForSecretAndProject:
    """Test secret existence and project deletion waits."""

    @pytest.mark.asyncio
    async def test_secret_exists(self, session, watcher):
        secret = client.V1Secret(metadata=client.V1ObjectMeta(name="db-5432"))
        session.add_events(SECRET, WatchEvent(ADDED, secret))

        result = await watcher.wait_for_secret("db-5432")

        assert result.metadata.name == "db-5432"
        assert session.watches[0].field_selector == "metadata.name=db-5432"

    @pytest.mark.asyncio
    async def test_project_deleted(self, session, watcher):
        terminating = client.V1Namespace(
            metadata=client.V1ObjectMeta(name="proj"),
            status=client.V1NamespaceStatus(phase="Terminating")
        )
        session.add_events(
            PROJECT,
            WatchEvent(MODIFIED, terminating),
            WatchEvent(DELETED, client.V1Namespace(metadata=client.V1ObjectMeta(name="proj"))),
        )

        await watcher.wait_for_project_deletion("proj")

        assert session.watches[0].stop_calls == 1

    @pytest.mark.asyncio
    async def test_project_watch_error(self, session, watcher):
        session.add_events(PROJECT, WatchEvent(ERROR, {"message": "gone"}))

        with pytest.raises(TerminalStateError) as exc_info:
            await watcher.wait_for_project_deletion("proj")

        assert "proj" in str(exc_info.value)
