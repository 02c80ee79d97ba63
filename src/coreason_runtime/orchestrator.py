# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

from collections.abc import Iterable
from pathlib import Path

import httpx

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.exceptions import RuntimeUnavailable, SandboxNotFound
from coreason_runtime.execution import ExecutionEngine
from coreason_runtime.images import ImageProvisioner
from coreason_runtime.models import (
    DatasetRef,
    DatasetSyncResult,
    ExecutionResult,
    HealthReport,
    PackageInfo,
    PackageInstallOutcome,
    ReconcileReport,
    RuntimeInfo,
    Sandbox,
    SandboxRequest,
)
from coreason_runtime.package_index import PackageIndex
from coreason_runtime.packages import EventCallback, PackageManager
from coreason_runtime.reconciler import LifecycleReconciler
from coreason_runtime.registry import SandboxRegistry
from coreason_runtime.runtime import ContainerRuntime
from coreason_runtime.runtimes import DockerRuntime
from coreason_runtime.utils.logger import logger
from coreason_runtime.workspace import sync_workspace_datasets


class Orchestrator:
    """Async service owning every orchestrator component.

    One instance is constructed per process and passed to callers. ``start``
    reconciles leftovers from a previous run and starts the idle sweep;
    ``shutdown`` stops the sweep and destroys every sandbox.
    """

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        runtime: ContainerRuntime | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initializes the Orchestrator.

        Args:
            config: Configuration. Defaults are read from the environment.
            runtime: Container runtime. Defaults to Docker.
            client: Optional httpx.AsyncClient used for package search.
        """
        self.config = config or RuntimeConfig()
        self.runtime: ContainerRuntime = runtime or DockerRuntime()
        self.provisioner = ImageProvisioner(self.runtime, self.config)
        self.registry = SandboxRegistry(self.runtime, self.provisioner, self.config)
        self.engine = ExecutionEngine(self.runtime, self.config)
        self.packages = PackageManager(self.runtime, self.config)
        self.reconciler = LifecycleReconciler(self.runtime, self.registry, self.config)
        self.index = PackageIndex(self.config.cache_dir, client)

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.shutdown()

    async def start(self) -> ReconcileReport:
        """Reconcile orphaned sandboxes and start the idle sweep.

        An unreachable runtime is not fatal here: the service starts degraded
        and sandbox creation fails with ``RuntimeUnavailable`` until it is back.
        """
        report = ReconcileReport()
        if await self.is_available():
            report = await self.reconciler.reconcile()
        else:
            logger.warning("Container runtime unavailable at startup; skipping reconciliation")
        self.registry.start_reaper()
        logger.info("Orchestrator started")
        return report

    async def shutdown(self) -> None:
        await self.registry.shutdown()
        await self.index.aclose()
        logger.info("Orchestrator stopped")

    async def is_available(self) -> bool:
        if not self.config.docker_enabled:
            return False
        return await self.runtime.ping()

    async def _require_runtime(self) -> None:
        if not self.config.docker_enabled:
            raise RuntimeUnavailable("Docker execution is disabled (COREASON_RUNTIME_DOCKER_ENABLED=false)")
        if not await self.runtime.ping():
            raise RuntimeUnavailable("Docker runtime is unavailable. Is the Docker daemon running?")

    async def health(self) -> HealthReport:
        available = await self.is_available()
        return HealthReport(
            status="healthy" if available else "degraded",
            docker_available=available,
            active_sandboxes=len(self.registry),
        )

    async def available_runtimes(self) -> list[RuntimeInfo]:
        """One entry per supported interpreter version, flagging whether its image is present."""
        runtime_up = await self.is_available()
        runtimes = []
        for version in self.config.supported_python_versions:
            image = self.provisioner.image_for(version)
            present = False
            if runtime_up:
                try:
                    present = await self.runtime.image_exists(image)
                except Exception as e:
                    logger.warning(f"Could not inspect image {image}: {e}")
            runtimes.append(RuntimeInfo(python_version=version, image=image, available=present))
        return runtimes

    def _resolve_version(self, python_version: str | None) -> str:
        version = python_version or self.config.default_python_version
        if version not in self.config.supported_python_versions:
            supported = ", ".join(self.config.supported_python_versions)
            raise ValueError(f"Unsupported Python version {version}. Supported: {supported}")
        return version

    async def get_or_create_sandbox(self, project_id: str, python_version: str | None = None) -> Sandbox:
        version = self._resolve_version(python_version)
        existing = self.registry.find(project_id, version)
        if existing:
            existing.touch()
            return existing
        await self._require_runtime()
        return await self.registry.get_or_create(project_id, version)

    async def create_sandbox(
        self,
        project_id: str,
        python_version: str | None = None,
        workspace_path: Path | None = None,
    ) -> Sandbox:
        """Create a fresh sandbox that is never shared through reuse."""
        request = SandboxRequest(
            project_id=project_id,
            python_version=self._resolve_version(python_version),
            workspace_path=workspace_path,
        )
        await self._require_runtime()
        return await self.registry.create(request)

    def get_sandbox(self, sandbox_id: str) -> Sandbox:
        sandbox = self.registry.get(sandbox_id)
        if sandbox is None:
            raise SandboxNotFound(sandbox_id)
        return sandbox

    async def destroy_sandbox(self, sandbox_id: str) -> None:
        await self.registry.destroy(sandbox_id)

    async def execute(
        self,
        sandbox_id: str,
        code: str,
        timeout: float | None = None,
        correlation_id: str | None = None,
    ) -> ExecutionResult:
        return await self.engine.execute(self.get_sandbox(sandbox_id), code, timeout, correlation_id)

    async def run_code(
        self,
        project_id: str,
        code: str,
        python_version: str | None = None,
        timeout: float | None = None,
        correlation_id: str | None = None,
    ) -> ExecutionResult:
        """Execute in the project's shared sandbox, creating it on first use."""
        while True:
            sandbox = await self.get_or_create_sandbox(project_id, python_version)
            if not sandbox.active:
                # Reaped between lookup and use
                logger.warning(f"Sandbox {sandbox.id} was destroyed before use. Retrying.")
                continue
            return await self.engine.execute(sandbox, code, timeout, correlation_id)

    async def install_package(self, sandbox_id: str, spec: str) -> PackageInstallOutcome:
        return await self.packages.install(self.get_sandbox(sandbox_id), spec)

    async def install_package_streaming(
        self,
        sandbox_id: str,
        spec: str,
        on_event: EventCallback | None = None,
    ) -> PackageInstallOutcome:
        return await self.packages.install_streaming(self.get_sandbox(sandbox_id), spec, on_event)

    async def uninstall_package(self, sandbox_id: str, name: str) -> PackageInstallOutcome:
        return await self.packages.uninstall(self.get_sandbox(sandbox_id), name)

    async def list_packages(self, sandbox_id: str) -> list[PackageInfo]:
        return await self.packages.list_packages(self.get_sandbox(sandbox_id))

    async def search_packages(self, query: str, limit: int = 8) -> list[PackageInfo]:
        return await self.index.search(query, limit)

    async def sync_datasets(self, sandbox_id: str, datasets: Iterable[DatasetRef]) -> DatasetSyncResult:
        """Link the project's stored datasets into the sandbox workspace."""
        sandbox = self.get_sandbox(sandbox_id)
        result = await sync_workspace_datasets(
            sandbox.workspace_path,
            datasets,
            self.config.dataset_storage_dir.resolve(),
            self.config.datasets_mount,
        )
        sandbox.touch()
        if result.collisions:
            logger.info(f"Aliased {len(result.collisions)} colliding dataset names in sandbox {sandbox.id}")
        return result
