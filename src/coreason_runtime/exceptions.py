# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

"""Errors raised across the orchestrator's public API.

Only setup-time failures are raised. Timeouts, failing user code and failed
package operations come back as result objects instead.
"""


class RuntimeOrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class RuntimeUnavailable(RuntimeOrchestratorError):
    """The container runtime cannot be reached or is disabled."""


class ImageMissing(RuntimeOrchestratorError):
    """A runtime image is absent and automatic builds are disabled."""

    def __init__(self, image: str):
        self.image = image
        super().__init__(
            f'Runtime image "{image}" is missing. Build it manually '
            "(docker build --build-arg PYTHON_VERSION=<version> -t <image> "
            "-f Dockerfile.python-runtime .) or enable auto_build_image."
        )


class BuildFailed(RuntimeOrchestratorError):
    """Building a runtime image failed."""

    def __init__(self, image: str, reason: str):
        self.image = image
        self.reason = reason
        super().__init__(f'Failed to build runtime image "{image}": {reason}')


class SandboxCreateFailed(RuntimeOrchestratorError):
    """The sandbox process could not be started. Its workspace has been removed."""


class SandboxNotFound(RuntimeOrchestratorError, LookupError):
    """No live sandbox is tracked under the given id."""

    def __init__(self, sandbox_id: str):
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox not found: {sandbox_id}")


class RuntimeCommandError(RuntimeOrchestratorError):
    """A container runtime command failed for a reason other than unavailability."""
