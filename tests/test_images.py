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

import pytest

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.exceptions import BuildFailed, ImageMissing
from coreason_runtime.images import ImageProvisioner, build_tags, image_name
from conftest import FakeRuntime


@pytest.mark.parametrize(
    "template, expected",
    [
        ("coreason-python-runtime:{python_version}", "coreason-python-runtime:3.11"),
        ("runtime", "runtime:3.11"),
        ("runtime:latest", "runtime:3.11"),
        ("runtime:pinned", "runtime:pinned"),
        ("registry:5000/runtime", "registry:5000/runtime:3.11"),
        ("registry:5000/runtime:latest", "registry:5000/runtime:3.11"),
    ],
)
def test_image_name(template: str, expected: str) -> None:
    assert image_name(template, "3.11") == expected


def test_build_tags_adds_latest_alias() -> None:
    assert build_tags("runtime:3.11") == ["runtime:3.11", "runtime:latest"]
    assert build_tags("runtime:latest") == ["runtime:latest"]


@pytest.mark.asyncio
async def test_existing_image_is_not_built(fake_runtime: FakeRuntime, provisioner: ImageProvisioner) -> None:
    fake_runtime.images.add("coreason-python-runtime:3.11")

    image = await provisioner.ensure_image("3.11")

    assert image == "coreason-python-runtime:3.11"
    assert fake_runtime.builds == []


@pytest.mark.asyncio
async def test_missing_image_is_built_with_version_arg(
    fake_runtime: FakeRuntime, provisioner: ImageProvisioner, config: RuntimeConfig
) -> None:
    image = await provisioner.ensure_image("3.10")

    assert image == "coreason-python-runtime:3.10"
    assert len(fake_runtime.builds) == 1
    build = fake_runtime.builds[0]
    assert build["tags"] == ["coreason-python-runtime:3.10", "coreason-python-runtime:latest"]
    assert build["build_args"] == {"PYTHON_VERSION": "3.10"}
    assert build["dockerfile"] == config.runtime_dockerfile
    assert not provisioner.is_building(image)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_build(
    fake_runtime: FakeRuntime, provisioner: ImageProvisioner
) -> None:
    fake_runtime.build_delay = 0.05

    images = await asyncio.gather(*(provisioner.ensure_image("3.11") for _ in range(5)))

    assert set(images) == {"coreason-python-runtime:3.11"}
    assert len(fake_runtime.builds) == 1


@pytest.mark.asyncio
async def test_different_tags_build_in_parallel(fake_runtime: FakeRuntime, provisioner: ImageProvisioner) -> None:
    fake_runtime.build_delay = 0.05

    await asyncio.gather(provisioner.ensure_image("3.10"), provisioner.ensure_image("3.11"))

    built = sorted(build["tags"][0] for build in fake_runtime.builds)
    assert built == ["coreason-python-runtime:3.10", "coreason-python-runtime:3.11"]


@pytest.mark.asyncio
async def test_failed_build_is_retried_on_next_request(
    fake_runtime: FakeRuntime, provisioner: ImageProvisioner
) -> None:
    fake_runtime.build_delay = 0.01
    fake_runtime.build_error = "apt-get failed"

    results = await asyncio.gather(
        *(provisioner.ensure_image("3.11") for _ in range(3)), return_exceptions=True
    )

    assert all(isinstance(result, BuildFailed) for result in results)
    assert "apt-get failed" in str(results[0])
    assert len(fake_runtime.builds) == 1
    assert not provisioner.is_building("coreason-python-runtime:3.11")

    fake_runtime.build_error = None
    assert await provisioner.ensure_image("3.11") == "coreason-python-runtime:3.11"
    assert len(fake_runtime.builds) == 2


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_build(
    fake_runtime: FakeRuntime, provisioner: ImageProvisioner
) -> None:
    fake_runtime.build_delay = 0.05

    first = asyncio.create_task(provisioner.ensure_image("3.11"))
    await asyncio.sleep(0.01)
    first.cancel()
    second = await provisioner.ensure_image("3.11")

    assert second == "coreason-python-runtime:3.11"
    assert len(fake_runtime.builds) == 1


@pytest.mark.asyncio
async def test_auto_build_disabled_raises_image_missing(fake_runtime: FakeRuntime, config: RuntimeConfig) -> None:
    provisioner = ImageProvisioner(fake_runtime, config.model_copy(update={"auto_build_image": False}))

    with pytest.raises(ImageMissing, match="coreason-python-runtime:3.11"):
        await provisioner.ensure_image("3.11")
    assert fake_runtime.builds == []
