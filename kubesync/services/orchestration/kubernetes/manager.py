"""
Component Manager

High level component flows built on the watcher, the reconciler, the
supervisord bootstrapper and the file sync streamer:

- create_local_component: deployment (bootstrapped), PVCs, service, port secrets
- update_component_to_git: switch to a built image, optionally drop supervisord
- update_component_to_local: switch back to a bootstrapped builder image
- push: copy sources into the running pod and re-assemble
- delete_component / delete_project: cleanup
"""

import logging
import posixpath
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client

from ....config import Settings, get_settings
from ....errors import KubesyncError, MalformedInputError, ResourceNotFoundError
from ....utils.ignore_rules import get_ignore_rules_from_directory
from ....utils.resource_naming import (
    get_app_root_volume_name,
    get_component_selector,
    namespace_object_name,
    parse_image_name,
)
from ...sync.streamer import FileSyncStreamer
from .bootstrap import (
    ENV_S2I_SRC_OR_BIN_PATH,
    ENV_S2I_WORKING_DIR,
    SupervisordBootstrapper,
    remove_supervisord_traces,
)
from .client import DEPLOYMENT, PROJECT, get_k8s_client
from .helpers import (
    add_or_remove_volume_and_volume_mount,
    create_component_deployment,
    create_port_secret_manifests,
    create_pvc_manifest,
    create_service_manifest,
    find_container,
    get_container_ports_from_strings,
    get_input_env_vars_from_strings,
    get_single_container,
)
from .reconciler import DeploymentReconciler, MergePolicy, is_rollout_complete
from .watcher import ConditionWatcher

logger = logging.getLogger(__name__)

COMPONENT_LABEL = "app.kubernetes.io/instance"
APPLICATION_LABEL = "app.kubernetes.io/part-of"
COMPONENT_TYPE_ANNOTATION = "app.kubernetes.io/component-source-type"

ASSEMBLE_AND_RESTART = "/opt/odo/bin/assemble-and-restart"


@dataclass
class ComponentParams:
    """Everything needed to generate a component's deployment."""
    name: str
    application: str
    image: str
    ports: List[str] = field(default_factory=list)
    env_vars: List[str] = field(default_factory=list)
    storage_to_mount: Dict[str, str] = field(default_factory=dict)
    storage_to_unmount: Dict[str, str] = field(default_factory=dict)
    resources: Optional[client.V1ResourceRequirements] = None

    @property
    def object_name(self) -> str:
        return namespace_object_name(self.name, self.application)

    @property
    def labels(self) -> Dict[str, str]:
        return component_labels(self.name, self.application)


def component_labels(component_name: str, application_name: str) -> Dict[str, str]:
    return {COMPONENT_LABEL: component_name, APPLICATION_LABEL: application_name}


def _env_value(container: client.V1Container, name: str) -> str:
    for env in container.env or []:
        if env.name == name:
            return env.value or ""
    return ""


class ComponentManager:
    """
    Orchestrates component lifecycle operations against one namespace.

    The session provides the cluster calls (see KubernetesClient) and also
    serves as the remote executor for file sync.
    """

    def __init__(self, session=None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.session = session or get_k8s_client()
        self.watcher = ConditionWatcher(self.session, self.settings)
        self.reconciler = DeploymentReconciler(self.session, self.watcher, self.settings)
        self.bootstrapper = SupervisordBootstrapper(self.settings)
        self.streamer = FileSyncStreamer(self.session, self.settings)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_local_component(self, params: ComponentParams, source_type: str = "local") -> client.V1Deployment:
        """
        Create a bootstrapped component that receives its source by push.

        Creates the app-root PVC, the deployment, a service exposing the
        ports and one coordinates secret per port.

        Raises:
            MalformedInputError: Bad image reference, env, ports or labels
            ResourceNotFoundError: Builder image metadata not found
        """
        name = params.object_name
        image_ns, image_name, image_tag, _ = parse_image_name(params.image)
        metadata = await self.session.get_builder_image_metadata_async(image_ns, image_name, image_tag)

        container_ports = get_container_ports_from_strings(params.ports)
        env_vars = get_input_env_vars_from_strings(params.env_vars)
        labels = params.labels
        annotations = {COMPONENT_TYPE_ANNOTATION: source_type}

        deployment = create_component_deployment(
            name,
            params.image,
            labels,
            annotations=annotations,
            ports=container_ports,
            env_vars=env_vars,
            resources=params.resources
        )
        self.bootstrapper.bootstrap(
            deployment,
            name,
            metadata.labels,
            metadata.working_dir,
            is_local=source_type == "local"
        )
        add_or_remove_volume_and_volume_mount(deployment, params.storage_to_mount, None)

        await self.session.create_pvc(
            create_pvc_manifest(get_app_root_volume_name(name), self.settings.app_root_pvc_size, labels)
        )
        created = await self.session.create_deployment(deployment)

        if container_ports:
            service = await self.session.create_service(
                create_service_manifest(name, labels, container_ports, annotations)
            )
            for secret in create_port_secret_manifests(
                params.name,
                name,
                labels,
                annotations,
                service.metadata.name,
                [port.port for port in service.spec.ports]
            ):
                await self.session.create_secret(secret)

        logger.info(f"[K8S] Component {params.name} created as {name}")
        return created

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def update_component_to_git(
        self,
        params: ComponentParams,
        built_image: str,
        delete_supervisord_volumes: bool = False
    ) -> client.V1Deployment:
        """
        Point a component at an image produced by a build.

        Always rolls out a new revision. With delete_supervisord_volumes the
        app-root volume, its mounts and the copy-files init container are
        stripped and the app-root PVC is deleted afterwards.
        """
        if not built_image:
            raise MalformedInputError("image name cannot be blank")

        name = params.object_name
        live = await self.session.get_resource(DEPLOYMENT, name)
        live_container = find_container(live.spec.template.spec.containers, name)

        new_spec = create_component_deployment(
            name,
            built_image,
            params.labels,
            annotations={COMPONENT_TYPE_ANNOTATION: "git"},
            ports=get_container_ports_from_strings(params.ports),
            env_vars=get_input_env_vars_from_strings(params.env_vars),
            env_from=live_container.env_from,
            resources=params.resources
        )
        policy = MergePolicy(
            container_name=name,
            transform=remove_supervisord_traces if delete_supervisord_volumes else None,
            storage_to_mount=params.storage_to_mount,
            storage_to_unmount=params.storage_to_unmount,
            image_driven=True
        )
        result = await self.reconciler.reconcile(new_spec, name, policy, is_rollout_complete)

        if delete_supervisord_volumes:
            await self.session.delete_pvc(get_app_root_volume_name(name))
        return result

    async def update_component_to_local(
        self,
        params: ComponentParams,
        is_local: bool = True,
        create_pvc: bool = False
    ) -> client.V1Deployment:
        """
        Point a component at a bootstrapped builder image.

        Args:
            params: Component parameters (image is the builder image)
            is_local: Source comes from the local filesystem (injects the
                source backup dir env var, removes it otherwise)
            create_pvc: Create the app-root PVC, needed when coming from git
        """
        name = params.object_name
        image_ns, image_name, image_tag, _ = parse_image_name(params.image)
        metadata = await self.session.get_builder_image_metadata_async(image_ns, image_name, image_tag)

        live = await self.session.get_resource(DEPLOYMENT, name)
        live_container = find_container(live.spec.template.spec.containers, name)

        new_spec = create_component_deployment(
            name,
            params.image,
            params.labels,
            annotations={COMPONENT_TYPE_ANNOTATION: "local" if is_local else "binary"},
            ports=get_container_ports_from_strings(params.ports),
            env_vars=get_input_env_vars_from_strings(params.env_vars),
            env_from=live_container.env_from,
            resources=params.resources
        )
        self.bootstrapper.bootstrap(new_spec, name, metadata.labels, metadata.working_dir, is_local=is_local)

        if create_pvc:
            await self.session.create_pvc(
                create_pvc_manifest(get_app_root_volume_name(name), self.settings.app_root_pvc_size, params.labels)
            )

        policy = MergePolicy(
            container_name=name,
            storage_to_mount=params.storage_to_mount,
            storage_to_unmount=params.storage_to_unmount
        )
        return await self.reconciler.reconcile(new_spec, name, policy, is_rollout_complete)

    async def add_env_vars_to_deployment(self, name: str, env_vars: List[client.V1EnvVar]) -> client.V1Deployment:
        """Append env vars to the only container of a deployment and update it."""
        deployment = await self.session.get_resource(DEPLOYMENT, name)
        container = get_single_container(deployment)
        container.env = list(container.env or []) + list(env_vars)
        return await self.session.update_resource(DEPLOYMENT, deployment)

    async def remove_volume_from_deployment(self, pvc_name: str, name: str) -> client.V1Deployment:
        """Detach a PVC from a deployment, retrying on conflict."""
        return await self.reconciler.remove_volume_from_deployment(pvc_name, name)

    # =========================================================================
    # PUSH
    # =========================================================================

    async def push(
        self,
        component_name: str,
        application_name: str,
        local_root: str,
        changed_paths: Optional[List[str]] = None,
        deleted_paths: Optional[List[str]] = None,
        exclude_globs: Optional[List[str]] = None
    ) -> None:
        """
        Copy sources into the component's running pod and re-assemble it.

        Sources land in "<s2i src/bin path>/src"; deletions are propagated
        there and to the s2i working directory.
        """
        name = namespace_object_name(component_name, application_name)
        selector = get_component_selector(component_name, application_name)
        pod = await self.watcher.wait_for_pod(selector)
        pod_name = pod.metadata.name

        container = find_container(pod.spec.containers, name)
        src_bin_path = _env_value(container, ENV_S2I_SRC_OR_BIN_PATH)
        if not src_bin_path:
            raise MalformedInputError(
                f"pod {pod_name} has no {ENV_S2I_SRC_OR_BIN_PATH}, is component {component_name} bootstrapped?",
                resource=pod_name
            )
        target = posixpath.join(src_bin_path, "src")

        if exclude_globs is None:
            exclude_globs = get_ignore_rules_from_directory(local_root)

        if deleted_paths:
            roots = [target]
            working_dir = _env_value(container, ENV_S2I_WORKING_DIR)
            if working_dir:
                roots.append(working_dir)
            await self.streamer.propagate_deletes(pod_name, deleted_paths, roots, container_name=name)

        await self.streamer.sync(
            local_root,
            pod_name,
            target,
            changed_paths=changed_paths,
            exclude_globs=exclude_globs,
            container_name=name
        )
        await self.session.exec_in_pod_async(pod_name, [ASSEMBLE_AND_RESTART], container_name=name)
        logger.info(f"[K8S] Pushed {local_root} to component {component_name}")

    # =========================================================================
    # WAITS
    # =========================================================================

    async def wait_for_build_to_finish(self, build_name: str):
        return await self.watcher.wait_for_build(build_name)

    async def wait_and_get_secret(self, name: str):
        return await self.watcher.wait_for_secret(name)

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete_component(self, component_name: str, application_name: str) -> None:
        """
        Delete everything labelled as belonging to a component.

        Every deletion is attempted; failures are reported together.
        """
        errors = await self.session.delete_labelled_resources(component_labels(component_name, application_name))
        if errors:
            raise KubesyncError(",".join(errors), resource=component_name)
        logger.info(f"[K8S] Deleted component {component_name}")

    async def get_project(self, name: str):
        """The project (namespace), or None if it does not exist."""
        try:
            return await self.session.get_resource(PROJECT, name)
        except ResourceNotFoundError:
            return None

    async def delete_project(self, name: str) -> None:
        """Delete a project and wait until it is gone."""
        await self.session.delete_namespace(name)
        await self.watcher.wait_for_project_deletion(name)
