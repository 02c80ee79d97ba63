# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

"""
coreason-runtime
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import RuntimeConfig
from .exceptions import (
    BuildFailed,
    ImageMissing,
    RuntimeCommandError,
    RuntimeOrchestratorError,
    RuntimeUnavailable,
    SandboxCreateFailed,
    SandboxNotFound,
)
from .models import ExecutionResult, ExecutionStatus, PackageInstallOutcome, RichOutput, Sandbox
from .orchestrator import Orchestrator
from .runtime import ContainerRuntime
from .runtimes.docker import DockerRuntime

__all__ = [
    "Orchestrator",
    "RuntimeConfig",
    "ContainerRuntime",
    "DockerRuntime",
    "Sandbox",
    "ExecutionResult",
    "ExecutionStatus",
    "RichOutput",
    "PackageInstallOutcome",
    "RuntimeOrchestratorError",
    "RuntimeUnavailable",
    "ImageMissing",
    "BuildFailed",
    "SandboxCreateFailed",
    "SandboxNotFound",
    "RuntimeCommandError",
]
