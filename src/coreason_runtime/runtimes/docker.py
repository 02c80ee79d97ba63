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
import codecs
import re
from pathlib import Path
from typing import Any, Callable, TypeVar

import docker
from docker.errors import BuildError, DockerException, ImageNotFound, NotFound

from coreason_runtime.exceptions import BuildFailed, RuntimeCommandError, RuntimeUnavailable
from coreason_runtime.runtime import (
    CommandResult,
    ContainerRuntime,
    ContainerSpec,
    ContainerSummary,
    ExecProcess,
    OutputCallback,
    Stream,
)
from coreason_runtime.utils.logger import logger

T = TypeVar("T")

_ERE_SPECIAL = re.compile(r"([.\[\]()*+?{}|^$\\])")


def ere_escape(text: str) -> str:
    """Escape ``text`` for use as a POSIX extended regex (pkill -f)."""
    return _ERE_SPECIAL.sub(r"\\\1", text)


def split_image_tag(image: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into repository and tag, honouring registry ports."""
    repository, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repository, tag


class DockerExecProcess(ExecProcess):
    """A ``docker exec`` whose output stream is pumped from a worker thread."""

    def __init__(
        self,
        runtime: "DockerRuntime",
        container_id: str,
        exec_id: str,
        kill_pattern: str,
        on_output: OutputCallback | None = None,
    ):
        self._runtime = runtime
        self._container_id = container_id
        self._exec_id = exec_id
        self._kill_pattern = kill_pattern
        self._on_output = on_output
        self._buffers: dict[Stream, list[str]] = {"stdout": [], "stderr": []}
        self._decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        self._loop = asyncio.get_running_loop()
        self._pump = self._loop.run_in_executor(None, self._read_stream)

    @property
    def stdout(self) -> str:
        return "".join(self._buffers["stdout"])

    @property
    def stderr(self) -> str:
        return "".join(self._buffers["stderr"])

    def _read_stream(self) -> None:
        stream = self._runtime.client.api.exec_start(self._exec_id, stream=True, demux=True)
        for out, err in stream:
            if out:
                self._feed("stdout", out)
            if err:
                self._feed("stderr", err)
        for name in ("stdout", "stderr"):
            tail = self._decoders[name].decode(b"", final=True)
            if tail:
                self._loop.call_soon_threadsafe(self._deliver, name, tail)

    def _feed(self, name: Stream, data: bytes) -> None:
        text = self._decoders[name].decode(data)
        if text:
            # Buffers are only touched on the event loop thread.
            self._loop.call_soon_threadsafe(self._deliver, name, text)

    def _deliver(self, name: Stream, text: str) -> None:
        self._buffers[name].append(text)
        if self._on_output:
            try:
                self._on_output(name, text)
            except Exception as e:
                logger.warning(f"Output callback failed: {e}")

    async def wait(self) -> int:
        try:
            await asyncio.shield(self._pump)
        except (DockerException, OSError) as e:
            raise RuntimeCommandError(f"Exec stream failed: {e}") from e
        info = await self._runtime._call(self._runtime.client.api.exec_inspect, self._exec_id)
        exit_code = info.get("ExitCode")
        return -1 if exit_code is None else int(exit_code)

    async def kill(self) -> None:
        logger.info(f"Killing process matching '{self._kill_pattern}' in {self._container_id[:12]}")
        await self._runtime.pkill(self._container_id, self._kill_pattern)


class DockerRuntime(ContainerRuntime):
    """
    Docker-based implementation of the ContainerRuntime.

    The docker client is created on first use, so constructing the runtime
    never contacts the daemon.
    """

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailable(f"Docker runtime is unavailable: {e}") from e
        return self._client

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call in a worker thread and translate its errors."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (NotFound, ImageNotFound, BuildError):
            raise
        except DockerException as e:
            raise RuntimeCommandError(str(e)) from e
        except OSError as e:
            # requests' ConnectionError is an OSError: the daemon went away.
            raise RuntimeUnavailable(f"Docker runtime is unavailable: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._call(self.client.ping))
        except Exception as e:
            logger.debug(f"Docker ping failed: {e}")
            return False

    async def image_exists(self, image: str) -> bool:
        try:
            await self._call(self.client.images.get, image)
            return True
        except ImageNotFound:
            return False

    async def build_image(
        self,
        dockerfile: Path,
        context: Path,
        tags: list[str],
        build_args: dict[str, str],
        platform: str | None = None,
    ) -> None:
        if not tags:
            raise ValueError("At least one tag is required")

        primary = tags[0]
        dockerfile_arg = dockerfile.name if dockerfile.parent == context else str(dockerfile)
        logger.info(f"Building image {primary} from {dockerfile}")
        try:
            image, _ = await self._call(
                self.client.images.build,
                path=str(context),
                dockerfile=dockerfile_arg,
                tag=primary,
                buildargs=build_args,
                platform=platform,
                rm=True,
            )
            for extra in tags[1:]:
                repository, tag = split_image_tag(extra)
                await self._call(image.tag, repository, tag)
        except BuildError as e:
            raise BuildFailed(primary, e.msg) from e
        except RuntimeCommandError as e:
            raise BuildFailed(primary, str(e)) from e

    async def run_container(self, spec: ContainerSpec) -> str:
        volumes = {
            str(mount.source): {"bind": mount.target, "mode": "ro" if mount.read_only else "rw"}
            for mount in spec.mounts
        }
        try:
            container = await self._call(
                self.client.containers.run,
                spec.image,
                command=spec.command,
                detach=True,
                name=spec.name,
                mem_limit=f"{spec.memory_mb}m",
                nano_cpus=int(spec.cpu_percent / 100 * 1e9),
                network_mode=spec.network_mode,
                read_only=True,
                tmpfs={"/tmp": f"rw,nosuid,size={spec.tmpfs_mb}m"},
                volumes=volumes,
                working_dir=spec.working_dir,
                user=spec.user,
                environment=spec.environment,
                labels=spec.labels,
            )
        except (NotFound, ImageNotFound) as e:
            raise RuntimeCommandError(str(e)) from e
        return str(container.id)

    async def _exec_once(self, container_id: str, command: list[str]) -> CommandResult:
        created = await self._call(self.client.api.exec_create, container_id, command, stdout=True, stderr=True)
        exec_id = created["Id"]
        output = await self._call(self.client.api.exec_start, exec_id, demux=True)
        stdout_bytes, stderr_bytes = output if output else (None, None)
        info = await self._call(self.client.api.exec_inspect, exec_id)
        exit_code = info.get("ExitCode")
        return CommandResult(
            exit_code=-1 if exit_code is None else int(exit_code),
            stdout=stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else "",
            stderr=stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else "",
        )

    async def exec(
        self,
        container_id: str,
        command: list[str],
        timeout: float | None = None,
        kill_pattern: str | None = None,
    ) -> CommandResult:
        try:
            return await self._exec_in(container_id, command, timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Command timed out after {timeout}s in {container_id[:12]}: {command[:4]}")
            await self.pkill(container_id, kill_pattern or " ".join(command))
            raise TimeoutError(f"Command exceeded {timeout} seconds limit.") from e

    async def _exec_in(self, container_id: str, command: list[str], timeout: float | None) -> CommandResult:
        try:
            if timeout is None:
                return await self._exec_once(container_id, command)
            return await asyncio.wait_for(self._exec_once(container_id, command), timeout=timeout)
        except NotFound as e:
            raise RuntimeCommandError(f"Container {container_id[:12]} not found") from e

    async def spawn(
        self,
        container_id: str,
        command: list[str],
        on_output: OutputCallback | None = None,
        kill_pattern: str | None = None,
    ) -> ExecProcess:
        try:
            created = await self._call(
                self.client.api.exec_create, container_id, command, stdout=True, stderr=True
            )
        except NotFound as e:
            raise RuntimeCommandError(f"Container {container_id[:12]} not found") from e
        return DockerExecProcess(
            self,
            container_id,
            created["Id"],
            kill_pattern=kill_pattern or " ".join(command),
            on_output=on_output,
        )

    async def pkill(self, container_id: str, pattern: str) -> None:
        """Kill every process in the container whose command line matches ``pattern``."""
        try:
            await self._exec_once(container_id, ["pkill", "-KILL", "-f", ere_escape(pattern)])
        except (RuntimeCommandError, NotFound) as e:
            logger.warning(f"Failed to kill '{pattern}' in {container_id[:12]}: {e}")

    async def list_containers(self, name_prefix: str) -> list[ContainerSummary]:
        containers = await self._call(self.client.containers.list, all=True, filters={"name": name_prefix})
        summaries = []
        for container in containers:
            name = str(container.name or "")
            if name.startswith(name_prefix):
                summaries.append(ContainerSummary(id=str(container.id), name=name, status=str(container.status)))
        return summaries

    async def remove_container(self, container_id: str) -> None:
        try:
            container = await self._call(self.client.containers.get, container_id)
            await self._call(container.remove, force=True)
        except NotFound:
            logger.debug(f"Container {container_id[:12]} already removed")
