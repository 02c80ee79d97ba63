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

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.exceptions import ImageMissing
from coreason_runtime.runtime import ContainerRuntime
from coreason_runtime.runtimes.docker import split_image_tag
from coreason_runtime.utils.logger import logger

VERSION_PLACEHOLDER = "{python_version}"


def image_name(template: str, python_version: str) -> str:
    """Compute the runtime image tag for an interpreter version.

    A template carrying ``{python_version}`` is formatted directly. Otherwise a
    ``:latest`` tag is replaced by the version, any other explicit tag is used
    as-is, and a bare repository gets the version as its tag.
    """
    if VERSION_PLACEHOLDER in template:
        return template.replace(VERSION_PLACEHOLDER, python_version)

    repository, tag = split_image_tag(template)
    if repository == template:
        return f"{template}:{python_version}"
    if tag == "latest":
        return f"{repository}:{python_version}"
    return template


def build_tags(image: str) -> list[str]:
    """Tags applied by a build: the image itself plus a ``latest`` alias."""
    repository, tag = split_image_tag(image)
    if tag == "latest":
        return [image]
    return [image, f"{repository}:latest"]


class ImageProvisioner:
    """Ensures runtime images exist locally, building them on demand.

    Concurrent requests for the same tag share one in-flight build. The build
    entry is dropped once it settles, so a failed build is retried on the next
    request. Builds for different tags run in parallel.
    """

    def __init__(self, runtime: ContainerRuntime, config: RuntimeConfig | None = None):
        self.runtime = runtime
        self.config = config or RuntimeConfig()
        self._builds: dict[str, asyncio.Task[None]] = {}

    def image_for(self, python_version: str) -> str:
        return image_name(self.config.image_template, python_version)

    def is_building(self, image: str) -> bool:
        return image in self._builds

    async def ensure_image(self, python_version: str) -> str:
        """Return the image tag for ``python_version``, building it if needed.

        Raises:
            ImageMissing: If the image is absent and auto-build is disabled.
            BuildFailed: If the build fails.
        """
        image = self.image_for(python_version)
        if await self.runtime.image_exists(image):
            return image

        if not self.config.auto_build_image:
            raise ImageMissing(image)

        existing = self._builds.get(image)
        if existing is not None:
            logger.info(f"Waiting for in-flight build of {image}")
            await asyncio.shield(existing)
            return image

        task = asyncio.create_task(self._build(image, python_version))
        self._builds[image] = task
        # Drop the entry when the build settles, even if every waiter was cancelled.
        task.add_done_callback(lambda done: self._forget_build(image, done))
        await asyncio.shield(task)
        return image

    def _forget_build(self, image: str, task: "asyncio.Task[None]") -> None:
        if self._builds.get(image) is task:
            del self._builds[image]

    async def _build(self, image: str, python_version: str) -> None:
        dockerfile = self.config.runtime_dockerfile
        logger.info(f"Building runtime image: {image}")
        await self.runtime.build_image(
            dockerfile=dockerfile,
            context=dockerfile.parent,
            tags=build_tags(image),
            build_args={"PYTHON_VERSION": python_version},
            platform=self.config.docker_platform,
        )
        logger.info(f"Built runtime image: {image}")
