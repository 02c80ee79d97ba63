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
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


@dataclass
class Sandbox:
    """A live, externally isolated execution environment.

    Attributes:
        id: Handle generated by the orchestrator.
        external_id: Identifier returned by the container runtime.
        project_id: Project owning the sandbox (first half of the reuse key).
        python_version: Interpreter version (second half of the reuse key).
        workspace_path: Host directory bind-mounted into the sandbox.
        name: Container name, carrying the orchestrator's naming prefix.
        created_at: Creation time (epoch seconds).
        last_used_at: Last execution or package operation (epoch seconds).
        shared: Created through the reuse path and returned by reuse lookups.
        package_lock: Serializes package mutations within this sandbox.
        active: Cleared once the sandbox has been destroyed.
    """

    id: str
    external_id: str
    project_id: str
    python_version: str
    workspace_path: Path
    name: str = ""
    shared: bool = False
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)
    package_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    active: bool = True

    @property
    def reuse_key(self) -> tuple[str, str]:
        return (self.project_id, self.python_version)

    def touch(self) -> None:
        self.last_used_at = time.time()


class SandboxRequest(BaseModel):
    """Parameters for creating a sandbox explicitly."""

    # Used as a directory name under the workspace root
    project_id: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    python_version: str
    workspace_path: Path | None = None


class TableData(BaseModel):
    columns: list[str]
    rows: list[dict[str, Any]]


class RichOutput(BaseModel):
    """One structured unit of program output produced by the execution harness."""

    type: Literal["text", "table", "error"]
    content: str
    data: TableData | None = None


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class ExecutionResult(BaseModel):
    """Represents the outcome of one code execution in a sandbox.

    Attributes:
        status: success, error or timeout.
        stdout: Raw standard output captured from the interpreter process.
        stderr: Raw standard error, or the first error output when stderr is empty.
        outputs: Ordered rich outputs produced by the harness.
        execution_duration: Wall-clock seconds; equals the timeout on timeout.
        error: Error message when status is not success.
    """

    status: ExecutionStatus
    stdout: str = ""
    stderr: str = ""
    outputs: list[RichOutput] = Field(default_factory=list)
    execution_duration: float
    error: str | None = None


class PackageInfo(BaseModel):
    name: str
    version: str | None = None
    summary: str | None = None
    homepage: str | None = None


class InstallFailure(str, Enum):
    """Classification of a failed package operation."""

    MISSING_BINARY = "missing_binary"
    BUILD_FAILED = "build_failed"
    DISK_EXHAUSTED = "disk_exhausted"
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"
    UNKNOWN = "unknown"


class InstallProgress(BaseModel):
    kind: Literal["progress"] = "progress"
    stage: str
    percent: int = Field(..., ge=0, le=100)


class InstallLogLine(BaseModel):
    kind: Literal["log"] = "log"
    stream: Literal["stdout", "stderr"]
    line: str


InstallEvent = InstallProgress | InstallLogLine


class PackageInstallOutcome(BaseModel):
    """Result of an install or uninstall request.

    ``progress`` and ``logs`` are only populated by streaming installs.
    """

    success: bool
    message: str
    failure: InstallFailure | None = None
    requirements: list[str] = Field(default_factory=list)
    progress: list[InstallProgress] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)


class DatasetRef(BaseModel):
    """A dataset file held in the shared dataset store."""

    dataset_id: str
    filename: str


class DatasetLink(BaseModel):
    alias: str
    dataset_id: str
    filename: str
    target: str


class DatasetSyncResult(BaseModel):
    links: list[DatasetLink] = Field(default_factory=list)
    collisions: list[str] = Field(default_factory=list)


class ReconcileReport(BaseModel):
    removed_containers: list[str] = Field(default_factory=list)
    removed_workspaces: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RuntimeInfo(BaseModel):
    python_version: str
    image: str
    available: bool


class HealthReport(BaseModel):
    status: Literal["healthy", "degraded"]
    docker_available: bool
    active_sandboxes: int
