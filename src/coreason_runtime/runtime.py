# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal

Stream = Literal["stdout", "stderr"]
OutputCallback = Callable[[Stream, str], None]


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class Mount:
    source: Path
    target: str
    read_only: bool = False


@dataclass
class ContainerSpec:
    """Everything needed to start one sandbox container."""

    name: str
    image: str
    command: list[str]
    memory_mb: int
    cpu_percent: int
    network_mode: str
    tmpfs_mb: int
    working_dir: str
    user: str
    mounts: list[Mount] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerSummary:
    id: str
    name: str
    status: str = ""


class ExecProcess(ABC):
    """Handle to a command running inside a sandbox.

    Output is accumulated incrementally, so ``stdout`` and ``stderr`` hold
    whatever the process has produced so far, even before it exits.
    """

    @property
    @abstractmethod
    def stdout(self) -> str:
        pass  # pragma: no cover

    @property
    @abstractmethod
    def stderr(self) -> str:
        pass  # pragma: no cover

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        pass  # pragma: no cover

    @abstractmethod
    async def kill(self) -> None:
        """Forcibly terminate the process."""
        pass  # pragma: no cover


class ContainerRuntime(ABC):
    """
    Abstract base class for the container runtime consumed by the orchestrator.
    Follows the Strategy Pattern.
    """

    @abstractmethod
    async def ping(self) -> bool:
        """Check runtime availability. Returns False instead of raising."""
        pass  # pragma: no cover

    @abstractmethod
    async def image_exists(self, image: str) -> bool:
        """Check whether an image is present in the local image store."""
        pass  # pragma: no cover

    @abstractmethod
    async def build_image(
        self,
        dockerfile: Path,
        context: Path,
        tags: list[str],
        build_args: dict[str, str],
        platform: str | None = None,
    ) -> None:
        """Build an image and apply every tag in ``tags``.

        Raises:
            BuildFailed: If the build fails.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def run_container(self, spec: ContainerSpec) -> str:
        """Start a detached container and return its runtime identifier.

        Raises:
            RuntimeCommandError: If the container cannot be started.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def exec(
        self,
        container_id: str,
        command: list[str],
        timeout: float | None = None,
        kill_pattern: str | None = None,
    ) -> CommandResult:
        """Run a command inside a container and wait for it to finish.

        ``kill_pattern`` identifies the process to kill when ``timeout`` elapses;
        it defaults to the command line itself.

        Raises:
            TimeoutError: If ``timeout`` elapses first. The command is killed.
            RuntimeCommandError: If the runtime rejects the command.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def spawn(
        self,
        container_id: str,
        command: list[str],
        on_output: OutputCallback | None = None,
        kill_pattern: str | None = None,
    ) -> ExecProcess:
        """Start a command inside a container without waiting for it.

        ``on_output`` is called on the event loop with each decoded chunk.
        ``kill_pattern`` identifies the process for ``ExecProcess.kill``.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def list_containers(self, name_prefix: str) -> list[ContainerSummary]:
        """List containers, including stopped ones, whose name starts with ``name_prefix``."""
        pass  # pragma: no cover

    @abstractmethod
    async def remove_container(self, container_id: str) -> None:
        """Force-remove a container. Removing a missing container is a no-op."""
        pass  # pragma: no cover
