# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

import asyncio
import time
from pathlib import Path
from uuid import uuid4

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.exceptions import RuntimeCommandError, SandboxCreateFailed
from coreason_runtime.images import ImageProvisioner
from coreason_runtime.models import Sandbox, SandboxRequest
from coreason_runtime.runtime import ContainerRuntime, ContainerSpec, Mount
from coreason_runtime.utils.logger import logger
from coreason_runtime.workspace import prepare_workspace, remove_workspace, sandbox_environment

SANDBOX_LABEL = "coreason.runtime.sandbox"


class SandboxRegistry:
    """Tracks live sandboxes and manages their lifecycle.

    Handles creation, reuse by (project, version), explicit destruction and
    automatic cleanup of idle sandboxes. The idle sweep runs as a background
    task owned by the registry, started with ``start_reaper`` and stopped by
    ``shutdown``.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        provisioner: ImageProvisioner,
        config: RuntimeConfig | None = None,
    ):
        """Initializes the SandboxRegistry.

        Args:
            runtime: Container runtime used to start and remove sandboxes.
            provisioner: Resolves runtime images for interpreter versions.
            config: Optional configuration object. If not provided, defaults are used.
        """
        self.runtime = runtime
        self.provisioner = provisioner
        self.config = config or RuntimeConfig()
        self.sandboxes: dict[str, Sandbox] = {}
        self._key_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._reaper_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self.sandboxes)

    def get(self, sandbox_id: str) -> Sandbox | None:
        return self.sandboxes.get(sandbox_id)

    def find(self, project_id: str, python_version: str) -> Sandbox | None:
        for sandbox in self.sandboxes.values():
            if sandbox.shared and sandbox.reuse_key == (project_id, python_version):
                return sandbox
        return None

    async def get_or_create(self, project_id: str, python_version: str) -> Sandbox:
        """Retrieve the sandbox for a reuse key or create one.

        Refreshes ``last_used_at`` on reuse. Creation is single-flight per
        reuse key: concurrent callers for the same key wait for one creation
        and share its sandbox.

        Args:
            project_id: The project the sandbox belongs to.
            python_version: Interpreter version.

        Returns:
            Sandbox: The live sandbox for the key.

        Raises:
            ValueError: If ``project_id`` is not a plain directory name.
        """
        request = SandboxRequest(project_id=project_id, python_version=python_version)
        key = (project_id, python_version)
        while True:
            # Optimistic check
            existing = self.find(project_id, python_version)
            if existing:
                existing.touch()
                return existing

            lock = self._key_locks.setdefault(key, asyncio.Lock())
            async with lock:
                if self._key_locks.get(key) is not lock:
                    # Retired by destroy while we waited
                    continue
                # Double-check inside lock
                existing = self.find(project_id, python_version)
                if existing:
                    existing.touch()
                    return existing
                return await self.create(request, shared=True)

    async def create(self, request: SandboxRequest, shared: bool = False) -> Sandbox:
        """Provision a fresh sandbox.

        Only ``shared`` sandboxes are handed out by ``find`` and ``get_or_create``;
        an explicitly created one stays private to its caller.

        Raises:
            ImageMissing: If the runtime image is absent and cannot be built.
            BuildFailed: If building the runtime image fails.
            SandboxCreateFailed: If the sandbox process does not start. The
                workspace is removed before this propagates.
        """
        sandbox_id = str(uuid4())
        if request.workspace_path is not None:
            workspace = request.workspace_path
        else:
            workspace = self._default_workspace(request.project_id, sandbox_id)
        workspace = await prepare_workspace(workspace)

        name = f"{self.config.container_prefix}{sandbox_id[:8]}"
        try:
            image = await self.provisioner.ensure_image(request.python_version)
            spec = ContainerSpec(
                name=name,
                image=image,
                command=["tail", "-f", "/dev/null"],
                memory_mb=self.config.max_memory_mb,
                cpu_percent=self.config.max_cpu_percent,
                network_mode=self.config.network_mode,
                tmpfs_mb=self.config.tmpfs_mb,
                working_dir=self.config.workspace_mount,
                user=self.config.sandbox_user,
                mounts=[
                    Mount(workspace, self.config.workspace_mount),
                    Mount(self.config.dataset_storage_dir.resolve(), self.config.datasets_mount, read_only=True),
                ],
                environment=sandbox_environment(self.config.workspace_mount),
                labels={SANDBOX_LABEL: sandbox_id, "coreason.runtime.project": request.project_id},
            )
            external_id = await self.runtime.run_container(spec)
        except BaseException as e:
            await self._discard_workspace(workspace)
            if isinstance(e, RuntimeCommandError):
                raise SandboxCreateFailed(f"Failed to create sandbox: {e}") from e
            raise

        now = time.time()
        sandbox = Sandbox(
            id=sandbox_id,
            external_id=external_id,
            project_id=request.project_id,
            python_version=request.python_version,
            workspace_path=workspace,
            name=name,
            shared=shared,
            created_at=now,
            last_used_at=now,
        )
        self.sandboxes[sandbox_id] = sandbox
        logger.info(
            f"Created sandbox {name} ({external_id[:12]})",
            sandbox_id=sandbox_id,
            project_id=request.project_id,
        )
        return sandbox

    def _default_workspace(self, project_id: str, sandbox_id: str) -> Path:
        root = self.config.workspace_dir.resolve()
        workspace = (root / project_id / sandbox_id).resolve()
        if root not in workspace.parents:
            raise ValueError(f"Workspace for project {project_id!r} escapes the workspace root {root}")
        return workspace

    def _retire_key_lock(self, key: tuple[str, str]) -> None:
        lock = self._key_locks.get(key)
        if lock is not None and not lock.locked():
            del self._key_locks[key]

    async def _discard_workspace(self, workspace: Path) -> None:
        try:
            await remove_workspace(workspace)
        except OSError as e:
            logger.error(f"Failed to remove workspace {workspace} after failed create: {e}")

    async def destroy(self, sandbox_id: str) -> None:
        """Stop the sandbox, delete its workspace and forget it.

        Best-effort and idempotent: unknown ids are a no-op and failures are
        logged, never raised.
        """
        sandbox = self.sandboxes.pop(sandbox_id, None)
        if sandbox is None:
            return

        sandbox.active = False
        if sandbox.shared:
            self._retire_key_lock(sandbox.reuse_key)
        try:
            await self.runtime.remove_container(sandbox.external_id)
        except Exception as e:
            logger.error(f"Error removing sandbox container {sandbox.external_id[:12]}: {e}")

        try:
            await remove_workspace(sandbox.workspace_path)
        except OSError as e:
            logger.error(f"Error removing workspace {sandbox.workspace_path}: {e}")

        logger.info(f"Destroyed sandbox {sandbox.name or sandbox_id}", sandbox_id=sandbox_id)

    async def sweep_idle(self, max_idle: float | None = None) -> list[str]:
        """Destroy every sandbox unused for longer than ``max_idle`` seconds.

        Returns:
            list[str]: Ids of the destroyed sandboxes.
        """
        threshold = self.config.idle_timeout if max_idle is None else max_idle
        now = time.time()
        # Snapshot ids so the dict can change while we await
        expired_ids = [sid for sid, sandbox in self.sandboxes.items() if now - sandbox.last_used_at > threshold]

        for sid in expired_ids:
            logger.info(f"Sandbox {sid} idle for more than {threshold:.0f}s. Destroying.")
            await self.destroy(sid)
        return expired_ids

    async def destroy_all(self) -> None:
        """Destroy every tracked sandbox concurrently and wait for all of them."""
        ids = list(self.sandboxes)
        logger.info(f"Destroying {len(ids)} sandboxes.")
        results = await asyncio.gather(*(self.destroy(sid) for sid in ids), return_exceptions=True)
        for sid, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Error destroying sandbox {sid}: {result}")

    def start_reaper(self) -> None:
        """Start the background idle sweep if it is not already running."""
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper_loop())

    @property
    def reaper_running(self) -> bool:
        return self._reaper_task is not None and not self._reaper_task.done()

    async def _reaper_loop(self) -> None:
        """Background task that periodically sweeps idle sandboxes."""
        logger.info("Sandbox reaper started")
        try:
            while True:
                await asyncio.sleep(self.config.reaper_interval)
                try:
                    await self.sweep_idle()
                except Exception as e:
                    logger.error(f"Idle sweep failed: {e}")
        except asyncio.CancelledError:
            logger.info("Sandbox reaper cancelled")

    async def stop_reaper(self) -> None:
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
        self._reaper_task = None

    async def shutdown(self) -> None:
        """Stop the reaper and destroy all sandboxes."""
        await self.stop_reaper()
        await self.destroy_all()
