"""
Kubernetes Orchestration Module

This module contains all Kubernetes-specific convergence code:
- KubernetesClient: Low-level Kubernetes API interactions, remote exec, builder image metadata
- ConditionWatcher: Timeout-bounded waits over watch event streams
- DeploymentReconciler: Merge, apply and wait for rollout of a generated deployment
- SupervisordBootstrapper: Rewrites a spec so the container can re-assemble in place
- ComponentManager: Create/update/push/delete flows built on the above

Update flow:
1. Fetch the live deployment
2. Merge live volumes into the generated spec and apply optional transforms
3. Attach/detach storage, then replace the live spec
4. Roll out (image-driven) or compare templates, and wait for the new revision
"""

from .client import KubernetesClient, WatchEvent, WatchSession, get_k8s_client
from .watcher import ConditionWatcher, ResourceRef
from .helpers import (
    # Env vars
    unique_append_or_overwrite_env_vars,
    delete_env_var,
    get_input_env_vars_from_strings,
    # Ports and containers
    get_container_ports_from_strings,
    find_container,
    # Volumes
    add_or_remove_volume_and_volume_mount,
    # Templates
    templates_equal,
    # Manifests
    create_component_deployment,
    create_service_manifest,
    create_port_secret_manifests,
    create_pvc_manifest,
)
from .bootstrap import (
    S2IPaths,
    SupervisordBootstrapper,
    get_s2i_paths_from_builder_metadata,
    inject_s2i_paths,
    remove_supervisord_traces,
)
from .reconciler import DeploymentReconciler, MergePolicy, get_revision, is_rollout_complete
from .manager import ComponentManager, ComponentParams

__all__ = [
    'KubernetesClient',
    'WatchEvent',
    'WatchSession',
    'get_k8s_client',
    'ConditionWatcher',
    'ResourceRef',
    'unique_append_or_overwrite_env_vars',
    'delete_env_var',
    'get_input_env_vars_from_strings',
    'get_container_ports_from_strings',
    'find_container',
    'add_or_remove_volume_and_volume_mount',
    'templates_equal',
    'create_component_deployment',
    'create_service_manifest',
    'create_port_secret_manifests',
    'create_pvc_manifest',
    'S2IPaths',
    'SupervisordBootstrapper',
    'get_s2i_paths_from_builder_metadata',
    'inject_s2i_paths',
    'remove_supervisord_traces',
    'DeploymentReconciler',
    'MergePolicy',
    'get_revision',
    'is_rollout_complete',
    'ComponentManager',
    'ComponentParams',
]
