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
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from coreason_runtime.config import BUNDLED_DOCKERFILE, RuntimeConfig


def test_defaults() -> None:
    with patch.dict("os.environ", {}, clear=True):
        config = RuntimeConfig(_env_file=None)

    assert config.docker_enabled is True
    assert config.image_template == "coreason-python-runtime:{python_version}"
    assert config.max_memory_mb == 2048
    assert config.max_cpu_percent == 100
    assert config.network_mode == "none"
    assert config.execution_timeout == 30.0
    assert config.idle_timeout == 1800.0
    assert config.reaper_interval == 300.0
    assert config.container_prefix == "coreason-exec-"
    assert config.supported_python_versions == ["3.10", "3.11"]


def test_env_prefix_overrides() -> None:
    env = {
        "COREASON_RUNTIME_MAX_MEMORY_MB": "1024",
        "COREASON_RUNTIME_DOCKER_ENABLED": "false",
        "COREASON_RUNTIME_IMAGE_TEMPLATE": "registry:5000/runtime",
    }
    with patch.dict("os.environ", env, clear=True):
        config = RuntimeConfig(_env_file=None)

    assert config.max_memory_mb == 1024
    assert config.docker_enabled is False
    assert config.image_template == "registry:5000/runtime"


@pytest.mark.parametrize("cpu", [0, 801])
def test_cpu_percent_bounds(cpu: int) -> None:
    with pytest.raises(ValidationError):
        RuntimeConfig(max_cpu_percent=cpu)


def test_non_positive_timeout_rejected() -> None:
    with pytest.raises(ValidationError):
        RuntimeConfig(execution_timeout=0)


def test_mount_points_must_be_absolute() -> None:
    with pytest.raises(ValidationError, match="absolute"):
        RuntimeConfig(workspace_mount="workspace")

    config = RuntimeConfig(workspace_mount="/work/", datasets_mount="/data")
    assert config.workspace_mount == "/work"
    assert config.datasets_mount == "/data"


def test_clamp_timeout() -> None:
    config = RuntimeConfig(execution_timeout=30, max_execution_timeout=60)

    assert config.clamp_timeout(None) == 30
    assert config.clamp_timeout(0) == 30
    assert config.clamp_timeout(-5) == 30
    assert config.clamp_timeout(10) == 10
    assert config.clamp_timeout(600) == 60


def test_runtime_dockerfile() -> None:
    assert RuntimeConfig().runtime_dockerfile == BUNDLED_DOCKERFILE
    assert BUNDLED_DOCKERFILE.is_file()
    assert "PYTHON_VERSION" in BUNDLED_DOCKERFILE.read_text()

    custom = RuntimeConfig(dockerfile_path=Path("/tmp/Dockerfile.custom"))
    assert custom.runtime_dockerfile == Path("/tmp/Dockerfile.custom")
