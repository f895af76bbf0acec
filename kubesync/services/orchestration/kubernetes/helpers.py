"""
Kubernetes Helpers for Component Deployments

This module contains the manifest-level building blocks shared by the
bootstrapper, the reconciler and the component manager:

- Environment variables: ordered, name-unique merging
- Ports: parsing "8080/TCP" style strings
- Containers: lookup by name, single-container preconditions
- Volumes: add/remove PVC volumes and their mounts
- Templates: structural comparison of the controlled pod template fields
- Manifests: deployment, service, secret and PVC generation
"""

from kubernetes import client
from typing import Any, Dict, List, Optional
import copy
import logging

from ....errors import MalformedInputError, ResourceNotFoundError
from ....utils.resource_naming import secret_key_name

logger = logging.getLogger(__name__)

COMPONENT_PORT_ANNOTATION = "component-port"


# =============================================================================
# Environment Variables
# =============================================================================

def unique_append_or_overwrite_env_vars(
    existing_envs: Optional[List[client.V1EnvVar]],
    *env_vars: client.V1EnvVar
) -> List[client.V1EnvVar]:
    """
    Merge env vars into an existing list, treating the list as an ordered map.

    - A name already present keeps its position and takes the new value
    - A new name is appended at the end
    - If env_vars repeats a name, the last value wins at the first position

    Args:
        existing_envs: Current env vars (not modified)
        *env_vars: Env vars to append or overwrite

    Returns:
        New merged list
    """
    merged: Dict[str, client.V1EnvVar] = {}
    for env in existing_envs or []:
        merged[env.name] = env
    for env in env_vars:
        merged[env.name] = env
    # dicts keep first insertion order, overwrites do not move keys
    return list(merged.values())


def delete_env_var(existing_envs: Optional[List[client.V1EnvVar]], name: str) -> List[client.V1EnvVar]:
    """Return a copy of existing_envs without the env var called name."""
    return [env for env in existing_envs or [] if env.name != name]


def get_input_env_vars_from_strings(env_vars: List[str]) -> List[client.V1EnvVar]:
    """
    Parse "NAME=value" strings into env vars.

    Raises:
        MalformedInputError: On a missing "=" or a repeated name
    """
    result: List[client.V1EnvVar] = []
    seen = set()
    for env in env_vars:
        name, sep, value = env.partition("=")
        if not sep:
            raise MalformedInputError("invalid syntax for env, please specify a VariableName=Value pair")
        if name in seen:
            raise MalformedInputError(f"multiple values found for VariableName: {name}")
        seen.add(name)
        result.append(client.V1EnvVar(name=name, value=value))
    return result


def update_env_vars(deployment: client.V1Deployment, env_vars: List[client.V1EnvVar]) -> None:
    """
    Set the env of the only container of a deployment.

    Raises:
        MalformedInputError: If the deployment does not have exactly one container
    """
    container = get_single_container(deployment)
    container.env = env_vars


# =============================================================================
# Ports
# =============================================================================

def get_container_ports_from_strings(ports: List[str]) -> List[client.V1ContainerPort]:
    """
    Parse port strings like "8080", "8080/TCP" or "53/udp".

    Each port is named "<number>-<protocol>" (e.g. "8080-tcp").

    Raises:
        MalformedInputError: On an unparseable number or unknown protocol
    """
    container_ports: List[client.V1ContainerPort] = []
    for port in ports:
        splits = port.split("/")
        if len(splits) > 2:
            raise MalformedInputError(f"unable to parse the port string {port}")

        try:
            number = int(splits[0])
        except ValueError:
            raise MalformedInputError(f"invalid port number {splits[0]}") from None
        if not 0 < number < 65536:
            raise MalformedInputError(f"invalid port number {splits[0]}")

        protocol = "TCP"
        if len(splits) == 2:
            protocol = splits[1].upper()
            if protocol not in ("TCP", "UDP"):
                raise MalformedInputError(f"invalid port protocol {splits[1]}")

        container_ports.append(client.V1ContainerPort(
            name=f"{number}-{protocol.lower()}",
            container_port=number,
            protocol=protocol
        ))
    return container_ports


# =============================================================================
# Containers
# =============================================================================

def find_container(containers: Optional[List[client.V1Container]], name: str) -> client.V1Container:
    """
    Find a container by name.

    Raises:
        MalformedInputError: If name is blank
        ResourceNotFoundError: If no container has that name
    """
    if not name:
        raise MalformedInputError("unable to find a blank container name")
    for container in containers or []:
        if container.name == name:
            return container
    raise ResourceNotFoundError(f"unable to find container {name}", resource=name)


def get_single_container(deployment: client.V1Deployment) -> client.V1Container:
    """
    Return the only container of a deployment.

    Raises:
        MalformedInputError: If the pod template does not have exactly one container
    """
    containers = deployment.spec.template.spec.containers or []
    if len(containers) != 1:
        raise MalformedInputError(
            f"expected exactly one container in deployment {deployment.metadata.name}, got {len(containers)}",
            resource=deployment.metadata.name
        )
    return containers[0]


# =============================================================================
# Volumes
# =============================================================================

def generate_volume_name_from_pvc(pvc_name: str) -> str:
    """Name of the pod volume backed by a PVC."""
    return f"{pvc_name}-volume"


def add_pvc_volume(deployment: client.V1Deployment, pvc_name: str, volume_name: Optional[str] = None) -> str:
    """Add a volume backed by pvc_name to the pod template. Returns the volume name."""
    volume_name = volume_name or generate_volume_name_from_pvc(pvc_name)
    pod_spec = deployment.spec.template.spec
    pod_spec.volumes = (pod_spec.volumes or []) + [
        client.V1Volume(
            name=volume_name,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=pvc_name)
        )
    ]
    return volume_name


def add_volume_mount(
    deployment: client.V1Deployment,
    volume_name: str,
    mount_path: str,
    sub_path: Optional[str] = None
) -> None:
    """
    Mount a volume into the only container of a deployment.

    Raises:
        MalformedInputError: If the deployment does not have exactly one container
    """
    container = get_single_container(deployment)
    container.volume_mounts = (container.volume_mounts or []) + [
        client.V1VolumeMount(name=volume_name, mount_path=mount_path, sub_path=sub_path)
    ]


def get_volume_names_from_pvc(deployment: client.V1Deployment, pvc_name: str) -> List[str]:
    """Names of the pod volumes that are backed by pvc_name."""
    names = []
    for volume in deployment.spec.template.spec.volumes or []:
        if volume.persistent_volume_claim and volume.persistent_volume_claim.claim_name == pvc_name:
            names.append(volume.name)
    return names


def remove_volume(deployment: client.V1Deployment, volume_name: str) -> bool:
    """Remove a volume from the pod template. Returns whether it was found."""
    pod_spec = deployment.spec.template.spec
    volumes = pod_spec.volumes or []
    remaining = [v for v in volumes if v.name != volume_name]
    pod_spec.volumes = remaining
    return len(remaining) != len(volumes)


def remove_volume_mounts(deployment: client.V1Deployment, volume_name: str) -> bool:
    """Remove every mount of a volume from all containers. Returns whether any was found."""
    found = False
    for container in deployment.spec.template.spec.containers or []:
        mounts = container.volume_mounts or []
        remaining = [m for m in mounts if m.name != volume_name]
        if len(remaining) != len(mounts):
            found = True
        container.volume_mounts = remaining
    return found


def add_or_remove_volume_and_volume_mount(
    deployment: client.V1Deployment,
    storage_to_mount: Optional[Dict[str, str]] = None,
    storage_to_unmount: Optional[Dict[str, str]] = None
) -> None:
    """
    Attach and detach PVC storage on a deployment spec in place.

    Args:
        deployment: Deployment spec to modify
        storage_to_mount: mount path -> PVC name
        storage_to_unmount: mount path -> PVC name

    Raises:
        MalformedInputError: If a PVC to unmount is not backed by exactly one volume
    """
    for path, pvc_name in (storage_to_unmount or {}).items():
        volume_names = get_volume_names_from_pvc(deployment, pvc_name)
        if len(volume_names) != 1:
            raise MalformedInputError(
                f"found {len(volume_names)} volumes for PVC {pvc_name} in deployment "
                f"{deployment.metadata.name}, expected one",
                resource=pvc_name
            )
        remove_volume(deployment, volume_names[0])
        if not remove_volume_mounts(deployment, volume_names[0]):
            raise MalformedInputError(
                f"could not find volume mount {volume_names[0]} at {path} in deployment {deployment.metadata.name}",
                resource=pvc_name
            )
        logger.debug(f"[K8S] Unmounted PVC {pvc_name} from {path}")

    for path, pvc_name in (storage_to_mount or {}).items():
        volume_name = add_pvc_volume(deployment, pvc_name)
        add_volume_mount(deployment, volume_name, path)
        logger.debug(f"[K8S] Mounted PVC {pvc_name} at {path}")


# =============================================================================
# Template comparison
# =============================================================================

_SANITIZER = client.ApiClient()


def _sanitize(obj: Any) -> Any:
    return _SANITIZER.sanitize_for_serialization(obj)


def template_signature(template: Optional[client.V1PodTemplateSpec]) -> Dict[str, Any]:
    """
    Extract the parts of a pod template this system controls.

    Covers containers and init containers (name, image, command, args, env,
    ports, volume mounts, resources) and volumes. Server defaulted fields and
    unrelated metadata are left out so the result is stable across round trips.
    """
    if template is None or template.spec is None:
        return {}

    def container_signature(container: client.V1Container) -> Dict[str, Any]:
        return {
            "name": container.name,
            "image": container.image,
            "command": container.command or [],
            "args": container.args or [],
            "env": [_sanitize(e) for e in container.env or []],
            "env_from": [_sanitize(e) for e in container.env_from or []],
            "ports": [(p.container_port, p.protocol or "TCP", p.name) for p in container.ports or []],
            "volume_mounts": [(m.name, m.mount_path, m.sub_path or "") for m in container.volume_mounts or []],
            "resources": _sanitize(container.resources) or {},
        }

    spec = template.spec
    return {
        "containers": [container_signature(c) for c in spec.containers or []],
        "init_containers": [container_signature(c) for c in spec.init_containers or []],
        "volumes": [_sanitize(v) for v in spec.volumes or []],
    }


def templates_equal(a: Optional[client.V1PodTemplateSpec], b: Optional[client.V1PodTemplateSpec]) -> bool:
    """Structural equality of the controlled parts of two pod templates."""
    return template_signature(a) == template_signature(b)


# =============================================================================
# Manifests
# =============================================================================

def create_component_deployment(
    name: str,
    image: str,
    labels: Dict[str, str],
    annotations: Optional[Dict[str, str]] = None,
    ports: Optional[List[client.V1ContainerPort]] = None,
    env_vars: Optional[List[client.V1EnvVar]] = None,
    env_from: Optional[List[client.V1EnvFromSource]] = None,
    resources: Optional[client.V1ResourceRequirements] = None,
    command: Optional[List[str]] = None,
    args: Optional[List[str]] = None
) -> client.V1Deployment:
    """
    Create the single-container deployment manifest of a component.

    The container is named after the deployment so it can be found again by
    name after users edit the object.
    """
    selector_labels = {"deployment": name}
    pod_labels = {**labels, **selector_labels}

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=name,
            labels=dict(labels),
            annotations=dict(annotations or {})
        ),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=selector_labels),
            strategy=client.V1DeploymentStrategy(type="Recreate"),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=pod_labels),
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(
                            name=name,
                            image=image,
                            image_pull_policy="Always",
                            command=command,
                            args=args,
                            ports=list(ports or []),
                            env=list(env_vars or []),
                            env_from=list(env_from or []),
                            resources=resources
                        )
                    ]
                )
            )
        )
    )


def create_service_manifest(
    name: str,
    labels: Dict[str, str],
    container_ports: List[client.V1ContainerPort],
    annotations: Optional[Dict[str, str]] = None
) -> client.V1Service:
    """Create a ClusterIP service exposing every container port of a component."""
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=name,
            labels=dict(labels),
            annotations=dict(annotations or {})
        ),
        spec=client.V1ServiceSpec(
            selector={"deployment": name},
            ports=[
                client.V1ServicePort(
                    name=port.name,
                    port=port.container_port,
                    protocol=port.protocol,
                    target_port=port.container_port
                )
                for port in container_ports
            ]
        )
    )


def create_port_secret_manifests(
    component_name: str,
    name: str,
    labels: Dict[str, str],
    annotations: Dict[str, str],
    service_name: str,
    service_ports: List[int]
) -> List[client.V1Secret]:
    """
    Create one secret per exposed port holding the component's coordinates.

    Other components inject these secrets to find this one. Each secret is
    named "<name>-<port>" and annotated with the port.
    """
    secrets = []
    for port in service_ports:
        port_str = str(port)
        secrets.append(client.V1Secret(
            api_version="v1",
            kind="Secret",
            type="Opaque",
            metadata=client.V1ObjectMeta(
                name=f"{name}-{port_str}",
                labels=dict(labels),
                annotations={**annotations, COMPONENT_PORT_ANNOTATION: port_str}
            ),
            string_data={
                secret_key_name(component_name, "host"): service_name,
                secret_key_name(component_name, "port"): port_str,
            }
        ))
    return secrets


def create_pvc_manifest(name: str, size: str, labels: Dict[str, str]) -> client.V1PersistentVolumeClaim:
    """Create a ReadWriteOnce PVC manifest."""
    return client.V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=client.V1ObjectMeta(name=name, labels=dict(labels)),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            resources=client.V1VolumeResourceRequirements(requests={"storage": size})
        )
    )


def copy_deployment(deployment: client.V1Deployment) -> client.V1Deployment:
    """Deep copy a deployment model so callers never mutate a shared object."""
    return copy.deepcopy(deployment)
