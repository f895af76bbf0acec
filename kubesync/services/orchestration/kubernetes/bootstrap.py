"""
Supervisord Bootstrapper

Rewrites a single-container deployment spec so the application container runs
under supervisord instead of the builder image's run script. This keeps the
pod alive while source is re-assembled in place by the assemble-and-restart
script shipped in the bootstrapper image.

The rewrite:
1. injects the S2I path env vars read from the builder image metadata
2. adds the "copy-supervisord" init container seeding a shared emptyDir
3. adds the "copy-files-to-volume" init container seeding the app-root PVC
4. mounts both volumes into the application container
5. mounts the deployments dir (on the app-root volume) when it lives outside
   the app root
"""

import logging
import posixpath
from dataclasses import dataclass
from typing import Dict, Optional

from kubernetes import client

from ....config import Settings, get_settings
from ....errors import MalformedInputError
from ....utils.resource_naming import get_app_root_volume_name
from .helpers import (
    delete_env_var,
    get_single_container,
    remove_volume,
    remove_volume_mounts,
    unique_append_or_overwrite_env_vars,
)

logger = logging.getLogger(__name__)

SUPERVISORD_VOLUME_NAME = "odo-supervisord-shared-data"
SUPERVISORD_MOUNT_PATH = "/opt/odo/"
SUPERVISORD_INIT_CONTAINER = "copy-supervisord"
COPY_FILES_INIT_CONTAINER = "copy-files-to-volume"
APP_ROOT_INIT_MOUNT_PATH = "/mnt/app-root"
DEPLOYMENTS_SUB_PATH = "deployments"

DEFAULT_APP_ROOT_DIR = "/opt/app-root"
DEFAULT_S2I_SRC_OR_BIN_PATH = "/tmp"
DEFAULT_S2I_SRC_BACKUP_DIR = "/opt/app-root/src-backup"

# Env vars read by assemble-and-restart
ENV_S2I_SCRIPTS_URL = "ODO_S2I_SCRIPTS_URL"
ENV_S2I_SCRIPTS_PROTOCOL = "ODO_S2I_SCRIPTS_PROTOCOL"
ENV_S2I_SRC_OR_BIN_PATH = "ODO_S2I_SRC_BIN_PATH"
ENV_S2I_DEPLOYMENT_DIR = "ODO_S2I_DEPLOYMENT_DIR"
ENV_S2I_WORKING_DIR = "ODO_S2I_WORKING_DIR"
ENV_S2I_BUILDER_IMAGE_NAME = "ODO_S2I_BUILDER_IMG"
ENV_S2I_SRC_BACKUP_DIR = "ODO_SRC_BACKUP_DIR"

# Builder image labels
S2I_SCRIPTS_URL_LABEL = "io.openshift.s2i.scripts-url"
S2I_SRC_OR_BIN_LABEL = "io.openshift.s2i.destination"
S2I_BUILDER_IMAGE_NAME_LABEL = "name"
S2I_DEPLOYMENTS_DIR_LABELS = (
    "com.redhat.deployments-dir",
    "org.jboss.deployments-dir",
    "org.jboss.container.deployments-dir",
)

SCRIPTS_PROTOCOL_IMAGE = "image://"
SCRIPTS_PROTOCOL_FILE = "file://"
SCRIPTS_PROTOCOL_HTTP = "http(s)://"

SUPERVISORD_COMMAND = ["/opt/odo/bin/dumb-init", "--"]
SUPERVISORD_ARGS = ["/opt/odo/bin/supervisord", "-c", "/opt/odo/conf/supervisor.conf"]


@dataclass
class S2IPaths:
    """Locations the assemble-and-restart script needs inside the container."""
    scripts_protocol: str = ""
    scripts_path: str = ""
    src_or_bin_path: str = ""
    deployment_dir: str = ""
    working_dir: str = ""
    src_backup_path: str = ""
    builder_image_name: str = ""


def get_s2i_paths_from_builder_metadata(labels: Optional[Dict[str, str]], working_dir: str = "") -> S2IPaths:
    """
    Derive S2I paths from builder image labels.

    An image without labels yields empty paths.

    Raises:
        MalformedInputError: If the scripts url uses an unknown protocol
    """
    if not labels:
        logger.debug("[BOOTSTRAP] Builder image has no labels")
        return S2IPaths()

    scripts_url = labels.get(S2I_SCRIPTS_URL_LABEL, "")
    src_or_bin_path = labels.get(S2I_SRC_OR_BIN_LABEL) or DEFAULT_S2I_SRC_OR_BIN_PATH

    deployment_dir = ""
    for label in S2I_DEPLOYMENTS_DIR_LABELS:
        if labels.get(label):
            deployment_dir = labels[label]
            break

    if scripts_url.startswith(SCRIPTS_PROTOCOL_IMAGE):
        protocol, path = SCRIPTS_PROTOCOL_IMAGE, scripts_url[len(SCRIPTS_PROTOCOL_IMAGE):]
    elif scripts_url.startswith(SCRIPTS_PROTOCOL_FILE):
        protocol, path = SCRIPTS_PROTOCOL_FILE, scripts_url[len(SCRIPTS_PROTOCOL_FILE):]
    elif scripts_url.startswith(("http://", "https://")):
        protocol, path = SCRIPTS_PROTOCOL_HTTP, scripts_url
    else:
        raise MalformedInputError(f"Unknown scripts url {scripts_url}")

    return S2IPaths(
        scripts_protocol=protocol,
        scripts_path=path,
        src_or_bin_path=src_or_bin_path,
        deployment_dir=deployment_dir,
        working_dir=working_dir or "",
        src_backup_path=DEFAULT_S2I_SRC_BACKUP_DIR,
        builder_image_name=labels.get(S2I_BUILDER_IMAGE_NAME_LABEL, ""),
    )


def inject_s2i_paths(existing_envs, s2i_paths: S2IPaths):
    """Append or overwrite the S2I path env vars, keeping existing order."""
    return unique_append_or_overwrite_env_vars(
        existing_envs,
        client.V1EnvVar(name=ENV_S2I_SCRIPTS_URL, value=s2i_paths.scripts_path),
        client.V1EnvVar(name=ENV_S2I_SCRIPTS_PROTOCOL, value=s2i_paths.scripts_protocol),
        client.V1EnvVar(name=ENV_S2I_SRC_OR_BIN_PATH, value=s2i_paths.src_or_bin_path),
        client.V1EnvVar(name=ENV_S2I_DEPLOYMENT_DIR, value=s2i_paths.deployment_dir),
        client.V1EnvVar(name=ENV_S2I_WORKING_DIR, value=s2i_paths.working_dir),
        client.V1EnvVar(name=ENV_S2I_BUILDER_IMAGE_NAME, value=s2i_paths.builder_image_name),
    )


def is_sub_dir(base_dir: str, other_dir: str) -> bool:
    """True if other_dir is base_dir itself or a direct child of it."""
    base = posixpath.normpath(base_dir)
    other = posixpath.normpath(other_dir)
    if base == other:
        return True
    return posixpath.dirname(other) == base


class SupervisordBootstrapper:
    """
    Makes a deployment spec re-assemblable in place.

    Usage:
        bootstrapper = SupervisordBootstrapper(settings)
        deployment = bootstrapper.bootstrap(deployment, "nodejs-app", metadata.labels, metadata.working_dir)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.image = self.settings.bootstrapper_image

    def bootstrap(
        self,
        deployment: client.V1Deployment,
        component_name: str,
        builder_labels: Optional[Dict[str, str]],
        working_dir: str = "",
        is_local: bool = True
    ) -> client.V1Deployment:
        """
        Rewrite deployment in place and return it.

        Args:
            deployment: Spec with exactly one application container
            component_name: Name the shared volumes are derived from
            builder_labels: Labels of the builder image
            working_dir: Working directory of the builder image
            is_local: Source is pushed from the local filesystem (adds the
                source backup dir env var, removes it otherwise)

        Raises:
            MalformedInputError: On an unknown scripts protocol or if the spec
                does not have exactly one container
        """
        s2i_paths = get_s2i_paths_from_builder_metadata(builder_labels, working_dir)
        container = get_single_container(deployment)

        envs = inject_s2i_paths(container.env, s2i_paths)
        if is_local:
            envs = unique_append_or_overwrite_env_vars(
                envs,
                client.V1EnvVar(name=ENV_S2I_SRC_BACKUP_DIR, value=s2i_paths.src_backup_path)
            )
        else:
            envs = delete_env_var(envs, ENV_S2I_SRC_BACKUP_DIR)
        container.env = envs

        container.command = list(SUPERVISORD_COMMAND)
        container.args = list(SUPERVISORD_ARGS)

        self._add_init_containers(deployment, component_name, container.image)
        self._add_volumes(deployment, component_name)
        self._add_volume_mounts(container, component_name)

        if s2i_paths.deployment_dir and not is_sub_dir(DEFAULT_APP_ROOT_DIR, s2i_paths.deployment_dir):
            container.volume_mounts.append(client.V1VolumeMount(
                name=get_app_root_volume_name(component_name),
                mount_path=s2i_paths.deployment_dir,
                sub_path=DEPLOYMENTS_SUB_PATH
            ))
            logger.debug(f"[BOOTSTRAP] Mounted deployments dir {s2i_paths.deployment_dir}")

        logger.info(f"[BOOTSTRAP] Bootstrapped supervisord into deployment {deployment.metadata.name}")
        return deployment

    def _add_init_containers(self, deployment: client.V1Deployment, component_name: str, app_image: str) -> None:
        pod_spec = deployment.spec.template.spec
        init_containers = [
            c for c in pod_spec.init_containers or []
            if c.name not in (COPY_FILES_INIT_CONTAINER, SUPERVISORD_INIT_CONTAINER)
        ]
        init_containers.append(client.V1Container(
            name=COPY_FILES_INIT_CONTAINER,
            image=app_image,
            command=["copy-files-to-volume"],
            args=[DEFAULT_APP_ROOT_DIR, APP_ROOT_INIT_MOUNT_PATH],
            volume_mounts=[client.V1VolumeMount(
                name=get_app_root_volume_name(component_name),
                mount_path=APP_ROOT_INIT_MOUNT_PATH
            )]
        ))
        init_containers.append(client.V1Container(
            name=SUPERVISORD_INIT_CONTAINER,
            image=self.image,
            command=["/usr/bin/cp"],
            args=["-r", "/opt/odo-init/.", SUPERVISORD_MOUNT_PATH],
            volume_mounts=[client.V1VolumeMount(
                name=SUPERVISORD_VOLUME_NAME,
                mount_path=SUPERVISORD_MOUNT_PATH
            )]
        ))
        pod_spec.init_containers = init_containers

    @staticmethod
    def _add_volumes(deployment: client.V1Deployment, component_name: str) -> None:
        pod_spec = deployment.spec.template.spec
        app_root_volume = get_app_root_volume_name(component_name)
        volumes = [v for v in pod_spec.volumes or [] if v.name not in (SUPERVISORD_VOLUME_NAME, app_root_volume)]
        volumes.append(client.V1Volume(
            name=SUPERVISORD_VOLUME_NAME,
            empty_dir=client.V1EmptyDirVolumeSource()
        ))
        volumes.append(client.V1Volume(
            name=app_root_volume,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=app_root_volume)
        ))
        pod_spec.volumes = volumes

    @staticmethod
    def _add_volume_mounts(container: client.V1Container, component_name: str) -> None:
        app_root_volume = get_app_root_volume_name(component_name)
        mounts = [m for m in container.volume_mounts or [] if m.name not in (SUPERVISORD_VOLUME_NAME, app_root_volume)]
        mounts.append(client.V1VolumeMount(name=SUPERVISORD_VOLUME_NAME, mount_path=SUPERVISORD_MOUNT_PATH))
        mounts.append(client.V1VolumeMount(name=app_root_volume, mount_path=DEFAULT_APP_ROOT_DIR))
        container.volume_mounts = mounts


def remove_supervisord_traces(deployment: client.V1Deployment) -> None:
    """
    Strip the app-root volume, its mounts and the copy-files init container.

    Used when a component switches to a git source and no longer syncs files.

    Raises:
        MalformedInputError: If the app-root volume or its mount is missing
    """
    name = deployment.metadata.name
    volume_name = get_app_root_volume_name(name)

    if not remove_volume(deployment, volume_name):
        raise MalformedInputError(f"unable to find volume in deployment with name: {name}", resource=name)
    if not remove_volume_mounts(deployment, volume_name):
        raise MalformedInputError(f"unable to find volume mount in deployment with name: {name}", resource=name)

    pod_spec = deployment.spec.template.spec
    pod_spec.init_containers = [
        c for c in pod_spec.init_containers or [] if c.name != COPY_FILES_INIT_CONTAINER
    ]
    logger.debug(f"[BOOTSTRAP] Removed supervisord traces from deployment {name}")
