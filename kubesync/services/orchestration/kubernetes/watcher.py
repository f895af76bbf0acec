"""
Condition Watcher

Turns a cluster change-event stream into a single timeout-bounded wait.

Every "wait for X" operation (rollout finished, pod running, build complete,
secret created, project deleted) is the same race between four outcomes:

1. an Added/Modified event whose object satisfies the predicate -> return it
2. an event the caller classifies as a terminal failure -> TerminalStateError
3. the server closing the stream -> WatchClosedError
4. the deadline elapsing -> WatchTimeoutError

The blocking event iterator is drained on a daemon thread that forwards
events into an asyncio.Queue; the waiting coroutine reads that queue with the
remaining deadline. Exactly one watch session is opened per wait; it is
stopped on every exit path and the reader thread is joined.
"""

import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Optional

from ....config import Settings, get_settings
from ....errors import (
    KubesyncError,
    MalformedInputError,
    StreamFailureError,
    TerminalStateError,
    WatchClosedError,
    WatchTimeoutError,
)
from .client import (
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

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]
FailureCheck = Callable[[WatchEvent], Optional[str]]

DEFAULT_MATCH_TYPES: FrozenSet[str] = frozenset({ADDED, MODIFIED})

POD_RUNNING = "Running"
POD_FAILED_PHASES = ("Failed", "Unknown")

BUILD_COMPLETE = "Complete"
BUILD_FAILED_PHASES = ("Failed", "Cancelled", "Error")

# Queue item tags
_EVENT = "event"
_CLOSED = "closed"
_FAILED = "failed"

# How long a finished wait waits for its pump thread to notice the stop
PUMP_JOIN_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class ResourceRef:
    """Identifies the object a wait is bound to."""
    kind: str
    name: str
    namespace: str = ""

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"

    @property
    def field_selector(self) -> str:
        return f"metadata.name={self.name}"


def get_field(obj: Any, *path: str) -> Any:
    """
    Read a nested field from either a kubernetes model or a plain dict.

    Custom objects (builds) come back as dicts, core objects as models.

    Examples:
        >>> get_field(pod, "status", "phase")
        "Running"
    """
    current = obj
    for key in path:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current


def _describe_error_event(obj: Any) -> str:
    message = get_field(obj, "message") or get_field(obj, "reason")
    return message or "unknown watch error"


class ConditionWatcher:
    """
    Blocks until an observed version of a resource satisfies a predicate.

    The session must provide
    open_watch(kind, field_selector=..., label_selector=..., timeout_seconds=...)
    returning an object with events() and stop().
    """

    def __init__(self, session, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()

    async def wait_for(
        self,
        ref: ResourceRef,
        predicate: Predicate,
        timeout: float,
        label_selector: Optional[str] = None,
        failure: Optional[FailureCheck] = None,
        match_types: FrozenSet[str] = DEFAULT_MATCH_TYPES
    ) -> Any:
        """
        Wait until predicate holds for an observed version of ref.

        Args:
            ref: Resource being waited on
            predicate: Evaluated for every event whose type is in match_types
            timeout: Hard deadline in seconds
            label_selector: Scope the watch by labels instead of ref's name
            failure: Returns a message when an event is a terminal failure
            match_types: Event types the predicate is evaluated on

        Returns:
            The first observed object satisfying predicate

        Raises:
            WatchTimeoutError: Deadline elapsed first
            TerminalStateError: failure() flagged an event, or the stream sent an Error event
            WatchClosedError: The server closed the stream
            StreamFailureError: Reading the stream raised
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        # Server-side bound on the watch, in whole seconds
        watch_timeout = max(1, math.ceil(timeout))
        if label_selector:
            session = self.session.open_watch(
                ref.kind, label_selector=label_selector, timeout_seconds=watch_timeout
            )
        else:
            session = self.session.open_watch(
                ref.kind, field_selector=ref.field_selector, timeout_seconds=watch_timeout
            )

        target = f"{ref} ({label_selector})" if label_selector else str(ref)
        logger.debug(f"[K8S:WATCH] Waiting up to {timeout}s on {target}")

        pump = threading.Thread(
            target=self._pump,
            args=(session, loop, queue),
            name=f"watch-{ref.kind}-{ref.name}",
            daemon=True
        )
        try:
            pump.start()

            deadline = loop.time() + timeout
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise WatchTimeoutError(
                        f"timed out after {timeout}s waiting for {target}",
                        resource=str(ref)
                    )
                try:
                    tag, payload = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise WatchTimeoutError(
                        f"timed out after {timeout}s waiting for {target}",
                        resource=str(ref)
                    ) from None

                if tag == _CLOSED:
                    raise WatchClosedError(f"watch channel for {target} was closed", resource=str(ref))
                if tag == _FAILED:
                    if isinstance(payload, KubesyncError):
                        raise payload
                    raise StreamFailureError(
                        f"error while watching {target}: {payload}",
                        resource=str(ref)
                    ) from payload

                event: WatchEvent = payload
                if event.type in match_types and predicate(event.object):
                    logger.debug(f"[K8S:WATCH] Condition met on {target} ({event.type})")
                    return event.object

                if failure is not None:
                    message = failure(event)
                    if message:
                        raise TerminalStateError(message, resource=str(ref), state=event.type)

                if event.type == ERROR:
                    raise TerminalStateError(
                        f"watch on {target} reported an error: {_describe_error_event(event.object)}",
                        resource=str(ref),
                        state=ERROR
                    )
        finally:
            session.stop()
            if pump.is_alive():
                await asyncio.to_thread(pump.join, PUMP_JOIN_TIMEOUT_SECONDS)
            if pump.is_alive():
                logger.warning(f"[K8S:WATCH] Watch reader for {target} did not exit after stop")

    @staticmethod
    def _pump(session, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
        """Forward events from the blocking iterator into the waiter's queue."""

        def post(item) -> bool:
            if session.stopped:
                return False
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # The waiter's event loop is already closed
                return False
            return True

        try:
            for event in session.events():
                if not post((_EVENT, event)):
                    return
            post((_CLOSED, None))
        except Exception as e:
            post((_FAILED, e))

    # =========================================================================
    # SPECIALIZATIONS
    # =========================================================================

    async def wait_for_deployment(
        self,
        name: str,
        desired_revision: int,
        condition: Callable[[Any, int], bool],
        timeout: Optional[float] = None
    ) -> Any:
        """
        Wait until condition(deployment, desired_revision) holds.

        Deletion of the deployment while waiting is a terminal failure.
        """
        ref = ResourceRef(DEPLOYMENT, name, self.session.namespace)

        def deleted(event: WatchEvent) -> Optional[str]:
            if event.type == DELETED:
                return f"deployment {name} was deleted while waiting for revision {desired_revision}"
            return None

        return await self.wait_for(
            ref,
            lambda deployment: condition(deployment, desired_revision),
            timeout or self.settings.rollout_timeout_seconds,
            failure=deleted
        )

    async def wait_for_pod(
        self,
        label_selector: str,
        desired_phase: str = POD_RUNNING,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Wait until a pod matching label_selector reaches desired_phase.

        Raises:
            MalformedInputError: If desired_phase is itself a failure phase
            TerminalStateError: If a matching pod reaches Failed or Unknown
        """
        if desired_phase in POD_FAILED_PHASES:
            raise MalformedInputError(f"cannot wait for pod phase {desired_phase}")

        timeout = timeout or self.settings.pod_wait_timeout_seconds
        ref = ResourceRef(POD, label_selector, self.session.namespace)

        def failed(event: WatchEvent) -> Optional[str]:
            phase = get_field(event.object, "status", "phase")
            if phase in POD_FAILED_PHASES:
                return f"pod {get_field(event.object, 'metadata', 'name')} status {phase}"
            return None

        try:
            pod = await self.wait_for(
                ref,
                lambda p: get_field(p, "status", "phase") == desired_phase,
                timeout,
                label_selector=label_selector,
                failure=failed
            )
        except WatchTimeoutError as e:
            raise WatchTimeoutError(
                f"waited {timeout}s but couldn't find {desired_phase.lower()} pod matching selector: '{label_selector}'",
                resource=e.resource
            ) from e

        logger.info(f"[K8S:WATCH] Pod {get_field(pod, 'metadata', 'name')} is {desired_phase}")
        return pod

    async def wait_for_build(self, name: str, timeout: Optional[float] = None) -> Any:
        """
        Wait for a build to complete.

        Raises:
            TerminalStateError: If the build is Failed, Cancelled or Error
        """
        ref = ResourceRef(BUILD, name, self.session.namespace)

        def failed(event: WatchEvent) -> Optional[str]:
            phase = get_field(event.object, "status", "phase")
            if phase in BUILD_FAILED_PHASES:
                return f"build {name} status {phase}"
            return None

        logger.info(f"[K8S:WATCH] Waiting for build {name} to finish")
        build = await self.wait_for(
            ref,
            lambda b: get_field(b, "status", "phase") == BUILD_COMPLETE,
            timeout or self.settings.build_wait_timeout_seconds,
            failure=failed
        )
        logger.info(f"[K8S:WATCH] Build {name} completed")
        return build

    async def wait_for_secret(self, name: str, timeout: Optional[float] = None) -> Any:
        """Wait until a secret with the given name exists."""
        ref = ResourceRef(SECRET, name, self.session.namespace)
        secret = await self.wait_for(
            ref,
            lambda s: True,
            timeout or self.settings.secret_wait_timeout_seconds
        )
        logger.debug(f"[K8S:WATCH] Secret {name} now exists")
        return secret

    async def wait_for_project_deletion(self, name: str, timeout: Optional[float] = None) -> None:
        """
        Wait for a project (namespace) to disappear.

        A project being deleted is first reported as Modified with a
        Terminating phase; only the Deleted event ends the wait.
        """
        ref = ResourceRef(PROJECT, name)

        def failed(event: WatchEvent) -> Optional[str]:
            if event.type == ERROR:
                return f"failed watching the deletion of project {name}"
            return None

        await self.wait_for(
            ref,
            lambda p: True,
            timeout or self.settings.project_delete_timeout_seconds,
            failure=failed,
            match_types=frozenset({DELETED})
        )
        logger.info(f"[K8S:WATCH] Project {name} deleted")
