# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BUNDLED_DOCKERFILE = Path(__file__).parent / "docker" / "Dockerfile.python-runtime"


class RuntimeConfig(BaseSettings):
    """
    Configuration for the sandbox orchestrator.

    Every field can be set through an environment variable prefixed with
    ``COREASON_RUNTIME_`` (e.g. ``COREASON_RUNTIME_MAX_MEMORY_MB=1024``).
    """

    # Container runtime
    docker_enabled: bool = True
    image_template: str = "coreason-python-runtime:{python_version}"
    auto_build_image: bool = True
    dockerfile_path: Path | None = None
    docker_platform: str | None = None

    # Resource limits
    max_memory_mb: int = Field(default=2048, gt=0)
    max_cpu_percent: int = Field(default=100, ge=1, le=800)
    network_mode: str = "none"
    tmpfs_mb: int = Field(default=512, gt=0)
    sandbox_user: str = "sandbox"

    # Timeouts, in seconds
    execution_timeout: float = Field(default=30.0, gt=0)
    max_execution_timeout: float = Field(default=300.0, gt=0)
    package_install_timeout: float = Field(default=120.0, gt=0)
    idle_timeout: float = Field(default=1800.0, ge=0)  # 30 minutes
    reaper_interval: float = Field(default=300.0, gt=0)  # 5 minutes

    # Host storage
    dataset_storage_dir: Path = Path("storage/datasets")
    workspace_dir: Path = Path("storage/workspaces")
    cache_dir: Path = Path("storage/cache")

    # Sandbox layout
    container_prefix: str = "coreason-exec-"
    default_python_version: str = "3.11"
    supported_python_versions: list[str] = ["3.10", "3.11"]
    workspace_mount: str = "/workspace"
    datasets_mount: str = "/datasets"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="COREASON_RUNTIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("workspace_mount", "datasets_mount")
    @classmethod
    def _absolute_mount(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"Mount point must be an absolute path: {value}")
        return value.rstrip("/") or "/"

    @property
    def runtime_dockerfile(self) -> Path:
        """Dockerfile used when a runtime image has to be built."""
        return self.dockerfile_path or BUNDLED_DOCKERFILE

    def clamp_timeout(self, timeout: float | None) -> float:
        """Resolve a requested execution timeout against the configured bounds."""
        if timeout is None or timeout <= 0:
            return self.execution_timeout
        return min(timeout, self.max_execution_timeout)
