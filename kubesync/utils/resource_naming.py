"""
Resource naming utilities for components and their cluster objects.

Centralized functions for generating consistent identifiers across:
- Deployment / Service / Secret names
- Volume and PVC names derived from the component name
- Label selectors
- Image references

All generated names must stay DNS-1123 compliant and leave room for the
"-s2idata" suffix that every local component's app-root volume carries.
"""

import logging
import re
from typing import Dict, Optional, Tuple

from ..errors import MalformedInputError

logger = logging.getLogger(__name__)

APP_ROOT_VOLUME_SUFFIX = "-s2idata"

# 63 is the max length of a Kubernetes object name, and each component also
# gets a volume that uses the component name suffixed with -s2idata
MAX_NAMESPACED_NAME_LENGTH = 63 - len(APP_ROOT_VOLUME_SUFFIX) - 1


def truncate_string(value: str, max_len: int) -> str:
    """Truncate a string to at most max_len characters."""
    if len(value) > max_len:
        return value[:max_len]
    return value


def namespace_object_name(component_name: str, application_name: str) -> str:
    """
    Hyphenate component and application names into a cluster object name.

    Args:
        component_name: Component name (slashes are replaced by hyphens)
        application_name: Application the component belongs to

    Returns:
        "{component}-{application}", truncated to MAX_NAMESPACED_NAME_LENGTH

    Raises:
        MalformedInputError: If either name is blank

    Examples:
        >>> namespace_object_name("nodejs", "myapp")
        "nodejs-myapp"
    """
    if not component_name:
        raise MalformedInputError("namespacing: component name cannot be blank")
    if not application_name:
        raise MalformedInputError("namespacing: application name cannot be blank")

    original_name = f"{component_name.replace('/', '-')}-{application_name}"
    truncated_name = truncate_string(original_name, MAX_NAMESPACED_NAME_LENGTH)
    if original_name != truncated_name:
        logger.debug(
            f"[NAMING] Application {application_name} and component {component_name} "
            f"were too long, name truncated to {truncated_name}"
        )
    return truncated_name


def get_app_root_volume_name(deployment_name: str) -> str:
    """
    Get the name of the app-root volume (and PVC) of a local component.

    Examples:
        >>> get_app_root_volume_name("nodejs-myapp")
        "nodejs-myapp-s2idata"
    """
    return f"{deployment_name}{APP_ROOT_VOLUME_SUFFIX}"


def get_dns1123_name(value: str) -> str:
    """
    Convert an arbitrary string into a DNS-1123 label.

    Lowercases, replaces anything that is not alphanumeric or "-" by "-",
    and strips leading/trailing non-alphanumeric characters.
    """
    name = re.sub(r"[^a-z0-9-]", "-", value.lower())
    name = re.sub(r"^[^a-z0-9]+", "", name)
    name = re.sub(r"[^a-z0-9]+$", "", name)
    return truncate_string(name, 63)


def convert_labels_to_selector(labels: Dict[str, str]) -> str:
    """
    Convert a label dict into a label selector string.

    Labels with an empty value become existence selectors ("key").

    Examples:
        >>> convert_labels_to_selector({"app": "myapp", "tier": ""})
        "app=myapp,tier"
    """
    parts = []
    for key, value in labels.items():
        parts.append(key if value == "" else f"{key}={value}")
    return ",".join(parts)


def secret_key_name(component_name: str, base_key_name: str) -> str:
    """
    Name of a key inside a component's port secret.

    Examples:
        >>> secret_key_name("my-db", "host")
        "COMPONENT_MY_DB_HOST"
    """
    return f"COMPONENT_{component_name.upper().replace('-', '_')}_{base_key_name.upper()}"


def parse_image_name(image: str) -> Tuple[str, str, str, str]:
    """
    Parse an image reference.

    Supported forms: "name", "name:tag", "ns/name", "ns/name:tag",
    "name@digest", "ns/name@digest". An image referenced by digest has an
    empty tag, an image referenced by tag has an empty digest, and an image
    with neither gets the "latest" tag.

    Returns:
        (namespace, name, tag, digest)

    Raises:
        MalformedInputError: For any other shape
    """
    digest_parts = image.split("@")
    if len(digest_parts) == 2:
        if digest_parts[0] and digest_parts[1]:
            namespace, name = _split_namespace(digest_parts[0])
            return namespace, name, "", digest_parts[1]
    elif len(digest_parts) == 1 and digest_parts[0]:
        tag_parts = image.split(":")
        if len(tag_parts) == 2:
            # ":1.0.0" is not a valid image name
            if tag_parts[0]:
                namespace, name = _split_namespace(tag_parts[0])
                return namespace, name, tag_parts[1], ""
        elif len(tag_parts) == 1:
            namespace, name = _split_namespace(tag_parts[0])
            return namespace, name, "latest", ""

    raise MalformedInputError(f"invalid image reference {image}", resource=image)


def _split_namespace(image_name: str) -> Tuple[str, str]:
    parts = image_name.split("/")
    if len(parts) == 2:
        return parts[0], parts[1]
    return "", parts[0]


def get_component_selector(component_name: str, application_name: Optional[str] = None) -> str:
    """Label selector matching the pods of a component."""
    labels = {"app.kubernetes.io/instance": component_name}
    if application_name:
        labels["app.kubernetes.io/part-of"] = application_name
    return convert_labels_to_selector(labels)
