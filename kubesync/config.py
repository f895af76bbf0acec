from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # For native development: looks for .env in the working directory
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra fields from .env file
        case_sensitive=False,  # Allow lowercase env vars to match uppercase field names
    )

    # ==========================================================================
    # Kubernetes Connection
    # ==========================================================================
    # Namespace every namespaced call is made against
    k8s_namespace: str = "default"

    # ==========================================================================
    # Supervisord Bootstrap
    # ==========================================================================
    # Image carrying the supervisord binary and the assemble-and-restart scripts.
    # ODO_BOOTSTRAPPER_IMAGE is honoured for compatibility with existing setups.
    bootstrapper_image: str = Field(
        default="quay.io/openshiftdo/supervisord:0.8.0",
        validation_alias=AliasChoices("bootstrapper_image", "odo_bootstrapper_image"),
    )

    # Size of the PVC backing the app-root volume of local/binary components
    app_root_pvc_size: str = "1Gi"

    # ==========================================================================
    # Wait Deadlines (seconds)
    # ==========================================================================
    rollout_timeout_seconds: int = 300  # Wait for a deployment rollout after an update
    pod_wait_timeout_seconds: int = 240  # Wait for a component pod to reach Running
    build_wait_timeout_seconds: int = 1800  # Wait for a build to complete
    secret_wait_timeout_seconds: int = 120  # Wait for a secret to be created
    project_delete_timeout_seconds: int = 300  # Wait for a project/namespace to go away

    # ==========================================================================
    # Remote Exec / File Sync
    # ==========================================================================
    exec_timeout_seconds: int = 120  # Transport timeout of a remote command
    sync_chunk_size: int = 64 * 1024  # Bytes moved per pipe read while streaming tar data

    # Retry-on-conflict attempts for single volume removal
    volume_removal_max_attempts: int = 5

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

@lru_cache()
def get_settings():
    return Settings()
