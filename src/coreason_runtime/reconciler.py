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

import anyio

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.models import ReconcileReport
from coreason_runtime.registry import SandboxRegistry
from coreason_runtime.runtime import ContainerRuntime
from coreason_runtime.utils.logger import logger
from coreason_runtime.workspace import remove_workspace


def _workspace_children(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return [child for child in root.iterdir() if child.is_dir() and not child.is_symlink()]


class LifecycleReconciler:
    """Removes sandboxes and workspaces left behind by a previous process.

    Meant to run once at boot, before any execution is accepted. Anything the
    registry already tracks is left alone, so running it later is harmless.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        registry: SandboxRegistry,
        config: RuntimeConfig | None = None,
    ):
        self.runtime = runtime
        self.registry = registry
        self.config = config or RuntimeConfig()

    async def reconcile(self) -> ReconcileReport:
        """Force-remove orphaned containers and workspace directories.

        Errors are logged and collected in the report; they never raise.
        """
        report = ReconcileReport()
        await self._remove_orphan_containers(report)
        await self._remove_orphan_workspaces(report)

        if report.removed_containers or report.removed_workspaces:
            logger.info(
                f"Reconciled {len(report.removed_containers)} orphaned sandboxes "
                f"and {len(report.removed_workspaces)} workspaces"
            )
        return report

    async def _remove_orphan_containers(self, report: ReconcileReport) -> None:
        tracked = {sandbox.external_id for sandbox in self.registry.sandboxes.values()}
        try:
            containers = await self.runtime.list_containers(self.config.container_prefix)
        except Exception as e:
            logger.error(f"Failed to list sandbox containers: {e}")
            report.errors.append(f"list containers: {e}")
            return

        for container in containers:
            if container.id in tracked:
                continue
            try:
                await self.runtime.remove_container(container.id)
                report.removed_containers.append(container.name or container.id)
                logger.debug(f"Removed orphaned container {container.name} ({container.status})")
            except Exception as e:
                logger.error(f"Failed to remove orphaned container {container.name}: {e}")
                report.errors.append(f"remove {container.name}: {e}")

    async def _remove_orphan_workspaces(self, report: ReconcileReport) -> None:
        root = self.config.workspace_dir.resolve()
        tracked = [sandbox.workspace_path.resolve() for sandbox in self.registry.sandboxes.values()]
        try:
            children = await anyio.to_thread.run_sync(_workspace_children, root)
        except OSError as e:
            logger.error(f"Failed to scan workspace root {root}: {e}")
            report.errors.append(f"scan {root}: {e}")
            return

        for child in children:
            # A project directory holding a live workspace stays.
            if any(path == child or child in path.parents for path in tracked):
                continue
            try:
                await remove_workspace(child)
                report.removed_workspaces.append(str(child))
            except OSError as e:
                logger.error(f"Failed to remove orphaned workspace {child}: {e}")
                report.errors.append(f"remove {child}: {e}")
