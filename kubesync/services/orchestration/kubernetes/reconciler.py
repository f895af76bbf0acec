"""
Deployment Reconciler

Converges a live deployment onto a freshly generated spec without losing
state the generator does not know about (user-attached volumes and mounts).

reconcile() runs a fixed sequence:

    Fetch -> Merge -> Transform -> VolumeSync -> Apply -> Decide -> Wait

Any failure before Apply leaves the live object untouched. Apply strictly
precedes Wait. The update itself carries no resource-version precondition,
so a concurrent writer can be overwritten; single-volume removal is the only
operation that retries on conflict.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from kubernetes import client

from ....config import Settings, get_settings
from ....errors import MalformedInputError
from .bootstrap import SUPERVISORD_VOLUME_NAME
from .client import DEPLOYMENT
from .helpers import (
    add_or_remove_volume_and_volume_mount,
    copy_deployment,
    find_container,
    get_volume_names_from_pvc,
    remove_volume,
    remove_volume_mounts,
    templates_equal,
)
from .retry_config import create_conflict_retry
from .watcher import ConditionWatcher, get_field

logger = logging.getLogger(__name__)

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"

CompletionPredicate = Callable[[Any, int], bool]
Transform = Callable[[client.V1Deployment], None]


@dataclass
class MergePolicy:
    """
    What to carry over from the live deployment and how to post-process the merge.

    Attributes:
        container_name: Application container to copy live mounts from
        transform: Optional mutator applied after the merge
        storage_to_mount: mount path -> PVC name to attach
        storage_to_unmount: mount path -> PVC name to detach
        image_driven: The new image comes from a build, always roll out
    """
    container_name: str
    transform: Optional[Transform] = None
    storage_to_mount: Dict[str, str] = field(default_factory=dict)
    storage_to_unmount: Dict[str, str] = field(default_factory=dict)
    image_driven: bool = False


def get_revision(deployment: Any) -> int:
    """Revision counter of a deployment (0 if it was never rolled out)."""
    annotations = get_field(deployment, "metadata", "annotations") or {}
    try:
        return int(annotations.get(REVISION_ANNOTATION, 0))
    except (TypeError, ValueError):
        return 0


def is_rollout_complete(deployment: Any, desired_revision: int) -> bool:
    """
    True once desired_revision is the active, fully available revision.

    Mirrors what "kubectl rollout status" checks: the controller has observed
    the latest generation, every replica runs the new template and no old
    replica is left.
    """
    if get_revision(deployment) < desired_revision:
        return False

    generation = get_field(deployment, "metadata", "generation") or 0
    observed = get_field(deployment, "status", "observed_generation") or 0
    if observed < generation:
        return False

    replicas = get_field(deployment, "spec", "replicas")
    if replicas is None:
        replicas = 1
    updated = get_field(deployment, "status", "updated_replicas") or 0
    total = get_field(deployment, "status", "replicas") or 0
    available = get_field(deployment, "status", "available_replicas") or 0
    return updated >= replicas and total <= updated and available >= updated


def is_revision_reached(deployment: Any, desired_revision: int) -> bool:
    """True once the deployment has moved on to desired_revision."""
    return get_revision(deployment) >= desired_revision


def copy_volumes_and_volume_mounts(
    new_spec: client.V1Deployment,
    live: client.V1Deployment,
    live_container: client.V1Container
) -> None:
    """
    Carry live volumes and mounts over to new_spec.

    Entries already present by name in new_spec win. The supervisord shared
    volume is never carried over; the bootstrapper re-adds it when needed.
    """
    for container in new_spec.spec.template.spec.containers or []:
        if container.name != live_container.name:
            continue
        mounts = list(container.volume_mounts or [])
        present = {m.name for m in mounts}
        for mount in live_container.volume_mounts or []:
            if mount.name == SUPERVISORD_VOLUME_NAME or mount.name in present:
                continue
            mounts.append(mount)
            present.add(mount.name)
        container.volume_mounts = mounts
        break

    pod_spec = new_spec.spec.template.spec
    volumes = list(pod_spec.volumes or [])
    present = {v.name for v in volumes}
    for volume in live.spec.template.spec.volumes or []:
        if volume.name == SUPERVISORD_VOLUME_NAME or volume.name in present:
            continue
        volumes.append(volume)
        present.add(volume.name)
    pod_spec.volumes = volumes


def copy_template_annotations(new_spec: client.V1Deployment, live: client.V1Deployment) -> None:
    """
    Carry live pod template annotations over to new_spec.

    The replace sends the whole template; annotations stamped on the live
    template (restartedAt from a forced rollout) must survive it.
    Annotations set in new_spec win.
    """
    live_annotations = get_field(live, "spec", "template", "metadata", "annotations")
    if not live_annotations:
        return
    template = new_spec.spec.template
    if template.metadata is None:
        template.metadata = client.V1ObjectMeta()
    template.metadata.annotations = {**live_annotations, **(template.metadata.annotations or {})}


class DeploymentReconciler:
    """
    Applies a generated deployment spec onto the live object and waits for the rollout.

    The session must provide get_resource/update_resource(kind, ...),
    start_rollout(name) and whatever the watcher needs to open watches.
    """

    def __init__(self, session, watcher: Optional[ConditionWatcher] = None, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()
        self.watcher = watcher or ConditionWatcher(session, self.settings)

    async def reconcile(
        self,
        new_spec: client.V1Deployment,
        name: str,
        policy: MergePolicy,
        completion_predicate: CompletionPredicate = is_rollout_complete
    ) -> client.V1Deployment:
        """
        Converge deployment name onto new_spec.

        Args:
            new_spec: Generated deployment (modified in place by the merge)
            name: Name of the live deployment
            policy: Merge policy
            completion_predicate: Evaluated as predicate(observed, target_revision)

        Returns:
            The updated live deployment (or the rolled out one when waited on)

        Raises:
            ResourceNotFoundError: The live deployment or its container is missing
            MalformedInputError: Transform or volume sync failed; nothing was applied
            ConflictError: The update was rejected
            WatchTimeoutError/TerminalStateError/WatchClosedError: The wait failed
        """
        # Fetch
        live = await self.session.get_resource(DEPLOYMENT, name)
        live_container = find_container(live.spec.template.spec.containers, policy.container_name)
        pre_update_template = copy_deployment(live).spec.template
        pre_update_revision = get_revision(live)

        # Merge
        copy_volumes_and_volume_mounts(new_spec, live, live_container)
        copy_template_annotations(new_spec, live)

        # Transform
        if policy.transform is not None:
            try:
                policy.transform(new_spec)
            except MalformedInputError as e:
                raise MalformedInputError(
                    f"unable to correctly update deployment {name} using the specified transform: {e}",
                    resource=name
                ) from e

        # VolumeSync
        add_or_remove_volume_and_volume_mount(new_spec, policy.storage_to_mount, policy.storage_to_unmount)

        # Apply
        modified = copy_deployment(live)
        modified.spec = new_spec.spec
        modified.metadata.annotations = new_spec.metadata.annotations
        modified.metadata.labels = new_spec.metadata.labels
        modified.metadata.resource_version = None
        updated = await self.session.update_resource(DEPLOYMENT, modified)
        logger.info(f"[RECONCILE] Updated deployment {name}")

        # Decide
        if policy.image_driven:
            await self.session.start_rollout(name)
        elif templates_equal(updated.spec.template, pre_update_template):
            logger.info(f"[RECONCILE] Pod template of {name} unchanged, no rollout to wait for")
            return updated
        else:
            logger.debug(f"[RECONCILE] Pod template of {name} changed, waiting for rollout")

        # Wait
        target_revision = pre_update_revision + 1
        rolled_out = await self.watcher.wait_for_deployment(
            name,
            target_revision,
            completion_predicate,
            timeout=self.settings.rollout_timeout_seconds
        )
        logger.info(f"[RECONCILE] Deployment {name} rolled out revision {target_revision}")
        return rolled_out

    async def remove_volume_from_deployment(self, pvc_name: str, name: str) -> client.V1Deployment:
        """
        Detach the volume backed by pvc_name, retrying the whole cycle on conflict.

        Raises:
            MalformedInputError: If the PVC is not backed by exactly one volume
            ConflictError: If every attempt conflicted
        """
        attempt = create_conflict_retry(max_attempts=self.settings.volume_removal_max_attempts)(
            self._remove_volume_once
        )
        return await attempt(pvc_name, name)

    async def _remove_volume_once(self, pvc_name: str, name: str) -> client.V1Deployment:
        deployment = await self.session.get_resource(DEPLOYMENT, name)

        volume_names = get_volume_names_from_pvc(deployment, pvc_name)
        if not volume_names:
            raise MalformedInputError(
                f"no volume found for PVC {pvc_name} in deployment {name}, expected one",
                resource=pvc_name
            )
        if len(volume_names) > 1:
            raise MalformedInputError(
                f"found more than one volume for PVC {pvc_name} in deployment {name}, expected one",
                resource=pvc_name
            )

        volume_name = volume_names[0]
        if not remove_volume(deployment, volume_name):
            raise MalformedInputError(f"could not find volume {volume_name} in deployment {name}", resource=name)
        if not remove_volume_mounts(deployment, volume_name):
            raise MalformedInputError(f"could not find volume mount {volume_name} in deployment {name}", resource=name)

        # resource_version stays set so a concurrent write surfaces as a conflict
        updated = await self.session.update_resource(DEPLOYMENT, deployment)
        logger.info(f"[RECONCILE] Removed volume {volume_name} (PVC {pvc_name}) from deployment {name}")
        return updated
