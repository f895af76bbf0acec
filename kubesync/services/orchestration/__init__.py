"""
Orchestration Module

Usage:
    from kubesync.services.orchestration import ComponentManager, ComponentParams

    manager = ComponentManager()
    await manager.create_local_component(ComponentParams("nodejs", "myapp", "openshift/nodejs:10"))
    await manager.push("nodejs", "myapp", "./src")
"""

from .kubernetes import (
    ComponentManager,
    ComponentParams,
    ConditionWatcher,
    DeploymentReconciler,
    KubernetesClient,
    MergePolicy,
    SupervisordBootstrapper,
    get_k8s_client,
)

__all__ = [
    'ComponentManager',
    'ComponentParams',
    'ConditionWatcher',
    'DeploymentReconciler',
    'KubernetesClient',
    'MergePolicy',
    'SupervisordBootstrapper',
    'get_k8s_client',
]
