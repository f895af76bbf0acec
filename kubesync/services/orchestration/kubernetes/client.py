"""
Kubernetes Client for Component Lifecycle Operations

This module provides the narrow cluster surface the convergence and
synchronization engine consumes:
- get / update / watch for deployments, pods, builds, secrets and projects
- create / delete for the objects a component owns
- remote command execution in a pod with streamed stdin/stdout/stderr
- builder image metadata (labels + working directory) lookup

Every transport error is translated into the kubesync error taxonomy.
"""

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from kubernetes.stream.ws_client import STDIN_CHANNEL
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import asyncio
import time
from typing import Any, Callable, Dict, IO, Iterator, List, NamedTuple, Optional

from ....config import Settings, get_settings
from ....errors import (
    ConflictError,
    KubesyncError,
    RemoteCommandError,
    ResourceNotFoundError,
    StreamFailureError,
)
from ....utils.resource_naming import convert_labels_to_selector

logger = logging.getLogger(__name__)


# Resource kinds understood by get / update / watch
DEPLOYMENT = "deployment"
POD = "pod"
BUILD = "build"
SECRET = "secret"
PROJECT = "project"

# Watch event types
ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
ERROR = "ERROR"

BUILD_GROUP = "build.openshift.io"
IMAGE_GROUP = "image.openshift.io"
OPENSHIFT_NAMESPACE = "openshift"

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"

WATCH_REQUEST_GRACE_SECONDS = 5

# Only this exec channel protocol can signal end of stdin to the remote command
V5_CHANNEL_PROTOCOL = "v5.channel.k8s.io"


class WatchEvent(NamedTuple):
    """A single (event type, observed object) pair from a watch stream."""
    type: str
    object: Any


class WatchSession:
    """
    A live subscription to change events of one resource kind.

    Whoever opens a session owns it and must call stop() on every exit path.
    stop() is idempotent.
    """

    def __init__(self, kind: str, description: str, start: Callable[[watch.Watch], Iterator[Dict[str, Any]]]):
        self.kind = kind
        self.description = description
        self._watch = watch.Watch()
        self._start = start
        self._stopped = False

    def events(self) -> Iterator[WatchEvent]:
        """Yield events in receipt order until the server closes the stream or stop() is called."""
        for raw in self._start(self._watch):
            if self._stopped:
                break
            yield WatchEvent(raw.get("type"), raw.get("object"))

    def stop(self) -> None:
        """Stop iteration and close the HTTP response a reader may be blocked on."""
        if self._stopped:
            return
        self._stopped = True
        self._watch.stop()
        logger.debug(f"[K8S:WATCH] Closed watch on {self.description}")

    @property
    def stopped(self) -> bool:
        return self._stopped


@dataclass
class BuilderImageMetadata:
    """Labels and working directory of a builder image."""
    image: str
    labels: Dict[str, str] = field(default_factory=dict)
    working_dir: str = ""


def translate_api_error(e: ApiException, action: str, resource: str) -> KubesyncError:
    """Map an ApiException onto the kubesync error taxonomy."""
    if e.status == 404:
        return ResourceNotFoundError(f"{resource} not found", resource=resource)
    if e.status == 409:
        return ConflictError(f"unable to {action} {resource}: object was modified concurrently", resource=resource)
    return KubesyncError(f"unable to {action} {resource}: {e.reason}", resource=resource)


class KubernetesClient:
    """
    Cluster session used by the watcher, the reconciler and the file sync streamer.

    Synchronous methods perform the blocking API call; async wrappers run them
    in a worker thread so the event loop stays responsive.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        self.settings = settings or get_settings()

        try:
            # Try in-cluster config first (for pods running on the cluster)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for developer machines)
                config.load_kube_config()
                logger.info("Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

        # Initialize API clients
        self.apps_v1 = client.AppsV1Api()
        self.core_v1 = client.CoreV1Api()
        self.custom_objects = client.CustomObjectsApi()

        self.namespace = self.settings.k8s_namespace

        # Exec channel protocol capability, checked on first use
        self._stdin_close_supported: Optional[bool] = None

        logger.info(f"Kubernetes client initialized - Namespace: {self.namespace}")

    # =========================================================================
    # GENERIC GET / UPDATE / WATCH
    # =========================================================================

    def describe(self, kind: str, name: str) -> str:
        if kind == PROJECT:
            return f"{kind} {name}"
        return f"{kind} {self.namespace}/{name}"

    def get(self, kind: str, name: str) -> Any:
        """
        Read a single object by name.

        Raises:
            ResourceNotFoundError: If the object does not exist
        """
        resource = self.describe(kind, name)
        try:
            if kind == DEPLOYMENT:
                return self.apps_v1.read_namespaced_deployment(name=name, namespace=self.namespace)
            if kind == POD:
                return self.core_v1.read_namespaced_pod(name=name, namespace=self.namespace)
            if kind == SECRET:
                return self.core_v1.read_namespaced_secret(name=name, namespace=self.namespace)
            if kind == PROJECT:
                return self.core_v1.read_namespace(name=name)
            if kind == BUILD:
                return self.custom_objects.get_namespaced_custom_object(
                    group=BUILD_GROUP, version="v1", namespace=self.namespace, plural="builds", name=name
                )
        except ApiException as e:
            raise translate_api_error(e, "get", resource) from e
        raise ValueError(f"Unsupported resource kind: {kind}")

    def update(self, kind: str, obj: Any) -> Any:
        """
        Replace a whole object.

        Raises:
            ConflictError: If the server rejected the update as a concurrent modification
        """
        name = obj["metadata"]["name"] if isinstance(obj, dict) else obj.metadata.name
        resource = self.describe(kind, name)
        try:
            if kind == DEPLOYMENT:
                return self.apps_v1.replace_namespaced_deployment(name=name, namespace=self.namespace, body=obj)
            if kind == POD:
                return self.core_v1.replace_namespaced_pod(name=name, namespace=self.namespace, body=obj)
            if kind == SECRET:
                return self.core_v1.replace_namespaced_secret(name=name, namespace=self.namespace, body=obj)
            if kind == PROJECT:
                return self.core_v1.replace_namespace(name=name, body=obj)
            if kind == BUILD:
                return self.custom_objects.replace_namespaced_custom_object(
                    group=BUILD_GROUP, version="v1", namespace=self.namespace, plural="builds", name=name, body=obj
                )
        except ApiException as e:
            raise translate_api_error(e, "update", resource) from e
        raise ValueError(f"Unsupported resource kind: {kind}")

    def open_watch(
        self,
        kind: str,
        field_selector: Optional[str] = None,
        label_selector: Optional[str] = None,
        timeout_seconds: Optional[int] = None
    ) -> WatchSession:
        """
        Open a watch session for a resource kind.

        The underlying HTTP stream is only established when the session's
        events() iterator is first advanced. With timeout_seconds the server
        closes the stream after that many seconds, so a reader blocked on it
        is released even if nobody calls stop().
        """
        kwargs: Dict[str, Any] = {}
        if field_selector:
            kwargs["field_selector"] = field_selector
        if label_selector:
            kwargs["label_selector"] = label_selector
        if timeout_seconds:
            # Server ends the watch at the deadline; the socket read gives up shortly after
            kwargs["timeout_seconds"] = timeout_seconds
            kwargs["_request_timeout"] = timeout_seconds + WATCH_REQUEST_GRACE_SECONDS

        if kind == DEPLOYMENT:
            list_func, args = self.apps_v1.list_namespaced_deployment, {"namespace": self.namespace}
        elif kind == POD:
            list_func, args = self.core_v1.list_namespaced_pod, {"namespace": self.namespace}
        elif kind == SECRET:
            list_func, args = self.core_v1.list_namespaced_secret, {"namespace": self.namespace}
        elif kind == PROJECT:
            list_func, args = self.core_v1.list_namespace, {}
        elif kind == BUILD:
            list_func = self.custom_objects.list_namespaced_custom_object
            args = {"group": BUILD_GROUP, "version": "v1", "namespace": self.namespace, "plural": "builds"}
        else:
            raise ValueError(f"Unsupported resource kind: {kind}")

        args.update(kwargs)
        description = f"{kind} ({field_selector or label_selector or 'all'})"
        logger.debug(f"[K8S:WATCH] Opening watch on {description}")
        return WatchSession(kind, description, lambda w: w.stream(list_func, **args))

    async def get_resource(self, kind: str, name: str) -> Any:
        """Async wrapper for get."""
        return await asyncio.to_thread(self.get, kind, name)

    async def update_resource(self, kind: str, obj: Any) -> Any:
        """Async wrapper for update."""
        return await asyncio.to_thread(self.update, kind, obj)

    # =========================================================================
    # DEPLOYMENTS
    # =========================================================================

    async def create_deployment(self, deployment: client.V1Deployment) -> client.V1Deployment:
        name = deployment.metadata.name
        try:
            created = await asyncio.to_thread(
                self.apps_v1.create_namespaced_deployment,
                namespace=self.namespace,
                body=deployment
            )
        except ApiException as e:
            raise translate_api_error(e, "create", self.describe(DEPLOYMENT, name)) from e
        logger.info(f"[K8S] ✅ Created deployment: {name}")
        return created

    async def start_rollout(self, name: str) -> client.V1Deployment:
        """
        Force a new rollout of a deployment.

        Stamps the pod template with a restartedAt annotation, which changes the
        template and makes the deployment controller roll out a new revision even
        when the image reference itself did not change.
        """
        if not name:
            raise ValueError("deployment name is empty")

        body = {
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": {
                            RESTARTED_AT_ANNOTATION: datetime.now(timezone.utc).isoformat()
                        }
                    }
                }
            }
        }
        try:
            result = await asyncio.to_thread(
                self.apps_v1.patch_namespaced_deployment,
                name=name,
                namespace=self.namespace,
                body=body
            )
        except ApiException as e:
            raise translate_api_error(e, "start rollout of", self.describe(DEPLOYMENT, name)) from e
        logger.info(f"[K8S] Rollout of deployment {name} triggered")
        return result

    # =========================================================================
    # SERVICES, SECRETS, PVCS
    # =========================================================================

    async def create_service(self, service: client.V1Service) -> client.V1Service:
        name = service.metadata.name
        try:
            created = await asyncio.to_thread(
                self.core_v1.create_namespaced_service,
                namespace=self.namespace,
                body=service
            )
        except ApiException as e:
            raise translate_api_error(e, "create", f"service {self.namespace}/{name}") from e
        logger.info(f"[K8S] ✅ Created service: {name}")
        return created

    async def create_secret(self, secret: client.V1Secret) -> client.V1Secret:
        name = secret.metadata.name
        try:
            created = await asyncio.to_thread(
                self.core_v1.create_namespaced_secret,
                namespace=self.namespace,
                body=secret
            )
        except ApiException as e:
            raise translate_api_error(e, "create", self.describe(SECRET, name)) from e
        logger.info(f"[K8S] ✅ Created secret: {name}")
        return created

    async def create_pvc(self, pvc: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim:
        name = pvc.metadata.name
        try:
            created = await asyncio.to_thread(
                self.core_v1.create_namespaced_persistent_volume_claim,
                namespace=self.namespace,
                body=pvc
            )
        except ApiException as e:
            raise translate_api_error(e, "create", f"pvc {self.namespace}/{name}") from e
        logger.info(f"[K8S] ✅ Created PVC: {name}")
        return created

    async def delete_pvc(self, name: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_persistent_volume_claim,
                name=name,
                namespace=self.namespace
            )
        except ApiException as e:
            raise translate_api_error(e, "delete", f"pvc {self.namespace}/{name}") from e
        logger.info(f"[K8S] Deleted PVC: {name}")

    async def delete_labelled_resources(self, labels: Dict[str, str]) -> List[str]:
        """
        Delete every deployment, service, PVC and secret carrying the labels.

        All deletions are attempted; failures are collected instead of stopping
        at the first one.

        Returns:
            List of failure descriptions (empty on full success)
        """
        selector = convert_labels_to_selector(labels)
        logger.debug(f"[K8S] Selectors used for deletion: {selector}")

        errors: List[str] = []

        collection_deletes = [
            ("deployment", self.apps_v1.delete_collection_namespaced_deployment),
            ("volume", self.core_v1.delete_collection_namespaced_persistent_volume_claim),
            ("secret", self.core_v1.delete_collection_namespaced_secret),
        ]
        for label, delete_func in collection_deletes:
            try:
                await asyncio.to_thread(delete_func, namespace=self.namespace, label_selector=selector)
            except ApiException as e:
                logger.warning(f"[K8S] Unable to delete {label}s for {selector}: {e.reason}")
                errors.append(f"unable to delete {label}")

        # Services have no delete-collection endpoint
        try:
            services = await asyncio.to_thread(
                self.core_v1.list_namespaced_service,
                namespace=self.namespace,
                label_selector=selector
            )
            for svc in services.items:
                try:
                    await asyncio.to_thread(
                        self.core_v1.delete_namespaced_service,
                        name=svc.metadata.name,
                        namespace=self.namespace
                    )
                except ApiException as e:
                    logger.warning(f"[K8S] Unable to delete service {svc.metadata.name}: {e.reason}")
                    errors.append("unable to delete service")
        except ApiException as e:
            logger.warning(f"[K8S] Unable to list services for {selector}: {e.reason}")
            errors.append("unable to list services")

        return errors

    # =========================================================================
    # PROJECTS
    # =========================================================================

    async def delete_namespace(self, name: str) -> None:
        try:
            await asyncio.to_thread(self.core_v1.delete_namespace, name=name)
        except ApiException as e:
            raise translate_api_error(e, "delete", self.describe(PROJECT, name)) from e
        logger.info(f"[K8S] Deleting project: {name}")

    # =========================================================================
    # PODS
    # =========================================================================

    def _get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        IMPORTANT: The kubernetes-python `stream()` function temporarily patches
        the api_client.request method to use WebSocket. If we use the shared
        self.core_v1 client, concurrent regular API calls (like a watch running
        in another thread) will accidentally use the WebSocket-patched method.

        By creating a fresh client for each stream operation, we isolate the
        WebSocket patching and prevent it from affecting other concurrent calls.
        """
        return client.CoreV1Api()

    def exec_in_pod(
        self,
        pod_name: str,
        command: List[str],
        stdin: Optional[IO[bytes]] = None,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
        container_name: Optional[str] = None,
        timeout: Optional[int] = None
    ) -> None:
        """
        Execute a command in a pod, streaming bytes both ways until it exits.

        stdin is read in chunks and forwarded while the command runs, so a
        producer can keep writing into it concurrently. Once stdin is exhausted
        the input channel is closed where the channel protocol allows it (see
        supports_stdin_close). stdout/stderr receive the command output as it
        arrives; without them the output is logged.

        Raises:
            RemoteCommandError: If the command exited with a non-zero status
            StreamFailureError: On transport failures or when the deadline elapses
        """
        timeout = timeout or self.settings.exec_timeout_seconds
        resource = f"pod {self.namespace}/{pod_name}"
        chunk_size = self.settings.sync_chunk_size

        logger.debug(f"[K8S:EXEC] Executing in pod {pod_name}: {' '.join(command[:3])}...")

        resp = self._open_exec(pod_name, command, stdin is not None, container_name, timeout)

        deadline = time.monotonic() + timeout
        try:
            if stdin is not None:
                while True:
                    chunk = stdin.read(chunk_size)
                    if not chunk:
                        self._close_stdin(resp, resource)
                        break
                    if not resp.is_open():
                        # Remote side is done reading; its exit code decides the outcome
                        logger.debug(f"[K8S:EXEC] Remote command in {resource} closed its input early")
                        break
                    resp.write_stdin(chunk)
                    resp.update(timeout=0)
                    self._drain_output(resp, stdout, stderr)

            while resp.is_open():
                if time.monotonic() > deadline:
                    raise StreamFailureError(
                        f"remote command in {resource} did not finish within {timeout} seconds",
                        resource=resource
                    )
                resp.update(timeout=1)
                self._drain_output(resp, stdout, stderr)

            returncode = resp.returncode
        except StreamFailureError:
            raise
        except Exception as e:
            raise StreamFailureError(f"error while streaming command to {resource}: {e}", resource=resource) from e
        finally:
            resp.close()

        if returncode:
            raise RemoteCommandError(
                f"command {command[0]} in {resource} exited with code {returncode}",
                resource=resource,
                exit_code=returncode
            )
        logger.debug("[K8S:EXEC] Command completed successfully")

    def _open_exec(
        self,
        pod_name: str,
        command: List[str],
        with_stdin: bool,
        container_name: Optional[str],
        timeout: int
    ):
        resource = f"pod {self.namespace}/{pod_name}"
        kwargs: Dict[str, Any] = {}
        if container_name:
            kwargs["container"] = container_name

        try:
            # Use a fresh client for stream operations to avoid concurrency issues
            stream_client = self._get_stream_client()
            return stream(
                stream_client.connect_get_namespaced_pod_exec,
                pod_name,
                self.namespace,
                command=command,
                stderr=True,
                stdin=with_stdin,
                stdout=True,
                tty=False,
                _preload_content=False,
                _request_timeout=timeout,
                **kwargs
            )
        except ApiException as e:
            raise translate_api_error(e, "exec in", resource) from e
        except Exception as e:
            raise StreamFailureError(f"unable to execute command in {resource}: {e}", resource=resource) from e

    @staticmethod
    def _close_stdin(resp, resource: str) -> None:
        """Send end of input so commands reading stdin to EOF can finish."""
        if getattr(resp, "subprotocol", None) != V5_CHANNEL_PROTOCOL:
            logger.debug(f"[K8S:EXEC] Input of {resource} cannot be closed on this channel protocol")
            return
        if resp.is_open():
            resp.close_channel(STDIN_CHANNEL)

    def supports_stdin_close(self, pod_name: str, container_name: Optional[str] = None) -> bool:
        """
        Whether exec sessions can signal end of input to the remote command.

        Only the v5 channel protocol has a close frame for stdin. The protocol
        is negotiated with the API server, so it is checked once with a no-op
        command and remembered.
        """
        if self._stdin_close_supported is None:
            resp = self._open_exec(
                pod_name, ["true"], True, container_name, self.settings.exec_timeout_seconds
            )
            try:
                protocol = getattr(resp, "subprotocol", None)
            finally:
                resp.close()
            self._stdin_close_supported = protocol == V5_CHANNEL_PROTOCOL
            logger.debug(f"[K8S:EXEC] Exec channel protocol: {protocol or 'unknown'}")
        return self._stdin_close_supported

    @staticmethod
    def _drain_output(resp, stdout: Optional[IO[str]], stderr: Optional[IO[str]]) -> None:
        if resp.peek_stdout():
            out = resp.read_stdout()
            if stdout is not None:
                stdout.write(out)
            elif out:
                logger.debug(f"[K8S:EXEC] stdout: {out}")
        if resp.peek_stderr():
            err = resp.read_stderr()
            if stderr is not None:
                stderr.write(err)
            elif err:
                logger.debug(f"[K8S:EXEC] stderr: {err}")

    async def exec_in_pod_async(self, pod_name: str, command: List[str], **kwargs) -> None:
        """Async wrapper for exec_in_pod."""
        await asyncio.to_thread(self.exec_in_pod, pod_name, command, **kwargs)

    # =========================================================================
    # BUILDER IMAGES
    # =========================================================================

    def get_builder_image_metadata(self, namespace: str, name: str, tag: str) -> BuilderImageMetadata:
        """
        Read labels and working directory of a builder image stream tag.

        When namespace is blank the current namespace is searched first, then
        the shared "openshift" namespace.
        """
        namespaces = [namespace] if namespace else [self.namespace, OPENSHIFT_NAMESPACE]
        image = f"{name}:{tag}"

        for ns in namespaces:
            try:
                ist = self.custom_objects.get_namespaced_custom_object(
                    group=IMAGE_GROUP, version="v1", namespace=ns, plural="imagestreamtags", name=image
                )
            except ApiException as e:
                if e.status == 404:
                    logger.debug(f"[K8S] Image stream tag {image} not found in {ns}")
                    continue
                raise translate_api_error(e, "get", f"imagestreamtag {ns}/{image}") from e

            docker_meta = (ist.get("image") or {}).get("dockerImageMetadata") or {}
            container_config = docker_meta.get("ContainerConfig") or docker_meta.get("Config") or {}
            return BuilderImageMetadata(
                image=f"{ns}/{image}",
                labels=container_config.get("Labels") or {},
                working_dir=container_config.get("WorkingDir") or ""
            )

        raise ResourceNotFoundError(
            f"image stream tag {image} not found in {', '.join(namespaces)}",
            resource=image
        )

    async def get_builder_image_metadata_async(self, namespace: str, name: str, tag: str) -> BuilderImageMetadata:
        """Async wrapper for get_builder_image_metadata."""
        return await asyncio.to_thread(self.get_builder_image_metadata, namespace, name, tag)


# Global instance
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
