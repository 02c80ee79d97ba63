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
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.exceptions import BuildFailed, RuntimeCommandError
from coreason_runtime.images import ImageProvisioner
from coreason_runtime.registry import SandboxRegistry
from coreason_runtime.runtime import (
    CommandResult,
    ContainerRuntime,
    ContainerSpec,
    ContainerSummary,
    ExecProcess,
    OutputCallback,
    Stream,
)


@dataclass
class Scripted:
    """Canned output for a spawned command."""

    chunks: list[tuple[Stream, str]] = field(default_factory=list)
    exit_code: int = 0


class FakeProcess(ExecProcess):
    """A host subprocess standing in for a command inside a sandbox."""

    def __init__(self, proc: asyncio.subprocess.Process, on_output: OutputCallback | None):
        self._proc = proc
        self._on_output = on_output
        self._buffers: dict[Stream, list[str]] = {"stdout": [], "stderr": []}
        assert proc.stdout is not None and proc.stderr is not None
        self._pumps = [
            asyncio.create_task(self._pump(proc.stdout, "stdout")),
            asyncio.create_task(self._pump(proc.stderr, "stderr")),
        ]

    async def _pump(self, reader: asyncio.StreamReader, name: Stream) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await reader.read(4096)
            text = decoder.decode(data, final=not data)
            if text:
                self._buffers[name].append(text)
                if self._on_output:
                    self._on_output(name, text)
            if not data:
                break

    @property
    def stdout(self) -> str:
        return "".join(self._buffers["stdout"])

    @property
    def stderr(self) -> str:
        return "".join(self._buffers["stderr"])

    async def wait(self) -> int:
        code = await self._proc.wait()
        await asyncio.gather(*self._pumps)
        return code

    async def kill(self) -> None:
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass
        await self._proc.wait()
        for pump in self._pumps:
            pump.cancel()


class ScriptedProcess(ExecProcess):
    def __init__(self, scripted: Scripted, on_output: OutputCallback | None):
        self._scripted = scripted
        self._on_output = on_output
        self._buffers: dict[Stream, list[str]] = {"stdout": [], "stderr": []}

    @property
    def stdout(self) -> str:
        return "".join(self._buffers["stdout"])

    @property
    def stderr(self) -> str:
        return "".join(self._buffers["stderr"])

    async def wait(self) -> int:
        for stream, text in self._scripted.chunks:
            await asyncio.sleep(0)
            self._buffers[stream].append(text)
            if self._on_output:
                self._on_output(stream, text)
        return self._scripted.exit_code

    async def kill(self) -> None:
        pass


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime.

    Containers are bookkeeping only. Commands run as host processes with the
    workspace mount mapped to the sandbox's host directory, unless a scripted
    response matches the command line.
    """

    def __init__(self) -> None:
        self.available = True
        self.images: set[str] = set()
        self.builds: list[dict[str, Any]] = []
        self.build_delay = 0.0
        self.build_error: str | None = None
        self.run_error: Exception | None = None
        self.containers: dict[str, ContainerSpec] = {}
        self.removed: list[str] = []
        self.remove_errors: set[str] = set()
        self.commands: list[list[str]] = []
        self._scripts: list[tuple[str, list[Any]]] = []
        self._counter = 0

    def script(self, pattern: str, *responses: Any) -> None:
        """Answer commands containing ``pattern`` with ``responses`` in order; the last one repeats."""
        self._scripts.append((pattern, list(responses)))

    def _scripted(self, command: list[str]) -> Any:
        line = " ".join(command)
        for pattern, responses in self._scripts:
            if pattern in line:
                return responses.pop(0) if len(responses) > 1 else responses[0]
        return None

    def add_container(self, name: str, image: str = "orphan:latest") -> str:
        self._counter += 1
        container_id = f"ctr-{self._counter:04d}"
        self.containers[container_id] = ContainerSpec(
            name=name,
            image=image,
            command=[],
            memory_mb=1,
            cpu_percent=1,
            network_mode="none",
            tmpfs_mb=1,
            working_dir="/workspace",
            user="sandbox",
        )
        return container_id

    def host_path(self, container_id: str, path: str) -> str:
        spec = self.containers.get(container_id)
        if spec is None:
            raise RuntimeCommandError(f"No such container: {container_id}")
        mount = spec.working_dir
        for bind in spec.mounts:
            if bind.target == mount and (path == mount or path.startswith(mount + "/")):
                return str(bind.source) + path[len(mount) :]
        return path

    def _host_command(self, container_id: str, command: list[str]) -> tuple[list[str], dict[str, str]]:
        args = [self.host_path(container_id, arg) for arg in command]
        if args and args[0] == "python":
            args[0] = sys.executable
        spec = self.containers[container_id]
        env = dict(os.environ)
        env.update({key: self.host_path(container_id, value) for key, value in spec.environment.items()})
        return args, env

    async def ping(self) -> bool:
        return self.available

    async def image_exists(self, image: str) -> bool:
        return image in self.images

    async def build_image(
        self,
        dockerfile: Path,
        context: Path,
        tags: list[str],
        build_args: dict[str, str],
        platform: str | None = None,
    ) -> None:
        self.builds.append({"dockerfile": dockerfile, "tags": tags, "build_args": build_args, "platform": platform})
        await asyncio.sleep(self.build_delay)
        if self.build_error:
            raise BuildFailed(tags[0], self.build_error)
        self.images.update(tags)

    async def run_container(self, spec: ContainerSpec) -> str:
        if self.run_error:
            raise self.run_error
        self._counter += 1
        container_id = f"ctr-{self._counter:04d}"
        self.containers[container_id] = spec
        return container_id

    async def exec(
        self,
        container_id: str,
        command: list[str],
        timeout: float | None = None,
        kill_pattern: str | None = None,
    ) -> CommandResult:
        self.commands.append(command)
        response = self._scripted(command)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, CommandResult):
            return response

        args, env = self._host_command(container_id, command)
        proc = await asyncio.create_subprocess_exec(
            *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, env=env
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TimeoutError(f"Command exceeded {timeout} seconds limit.") from e
        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )

    async def spawn(
        self,
        container_id: str,
        command: list[str],
        on_output: OutputCallback | None = None,
        kill_pattern: str | None = None,
    ) -> ExecProcess:
        self.commands.append(command)
        response = self._scripted(command)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, Scripted):
            return ScriptedProcess(response, on_output)

        args, env = self._host_command(container_id, command)
        proc = await asyncio.create_subprocess_exec(
            *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, env=env
        )
        return FakeProcess(proc, on_output)

    async def list_containers(self, name_prefix: str) -> list[ContainerSummary]:
        return [
            ContainerSummary(id=cid, name=spec.name, status="running")
            for cid, spec in self.containers.items()
            if spec.name.startswith(name_prefix)
        ]

    async def remove_container(self, container_id: str) -> None:
        if container_id in self.remove_errors:
            raise RuntimeCommandError(f"cannot remove {container_id}")
        self.containers.pop(container_id, None)
        self.removed.append(container_id)


@pytest.fixture
def config(tmp_path: Path) -> RuntimeConfig:
    return RuntimeConfig(
        workspace_dir=tmp_path / "workspaces",
        dataset_storage_dir=tmp_path / "datasets",
        cache_dir=tmp_path / "cache",
        execution_timeout=10.0,
        package_install_timeout=30.0,
    )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def provisioner(fake_runtime: FakeRuntime, config: RuntimeConfig) -> ImageProvisioner:
    return ImageProvisioner(fake_runtime, config)


@pytest.fixture
def registry(fake_runtime: FakeRuntime, provisioner: ImageProvisioner, config: RuntimeConfig) -> SandboxRegistry:
    return SandboxRegistry(fake_runtime, provisioner, config)
