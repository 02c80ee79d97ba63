# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

import json
import posixpath
import re
import textwrap
from dataclasses import dataclass
from typing import Callable

from packaging.utils import canonicalize_name

from coreason_runtime.config import RuntimeConfig
from coreason_runtime.exceptions import RuntimeCommandError
from coreason_runtime.models import (
    InstallEvent,
    InstallFailure,
    InstallLogLine,
    InstallProgress,
    PackageInfo,
    PackageInstallOutcome,
    Sandbox,
)
from coreason_runtime.runtime import ContainerRuntime, Stream
from coreason_runtime.utils.logger import logger
from coreason_runtime.workspace import PACKAGES_DIR

EventCallback = Callable[[InstallEvent], None]

# Legacy or import names that install under a different distribution name.
PACKAGE_ALIASES = {
    "pytorch": "torch",
    "sklearn": "scikit-learn",
    "pil": "pillow",
    "cv2": "opencv-python",
}

# Ordered: a later marker never lowers the reported percentage.
PROGRESS_MARKERS: tuple[tuple[str, str, int], ...] = (
    ("Collecting", "collecting", 10),
    ("Downloading", "downloading", 30),
    ("Building wheel", "building", 55),
    ("Installing collected packages", "installing", 80),
    ("Successfully installed", "complete", 100),
)

_TOKEN = re.compile(r"^([A-Za-z0-9._-]+)(.*)$")
_PACKAGE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SPLIT = re.compile(r"[,\s]+")

_MISSING_BINARY_SIGNATURES = (
    "No matching distribution found",
    "Could not find a version that satisfies",
    "No compatible wheels",
)
_DISK_SIGNATURES = ("No space left on device", "Errno 28")
_BUILD_SIGNATURES = ("subprocess-exited-with-error", "Failed building wheel")

LIST_SCRIPT = textwrap.dedent(
    """\
    import importlib.metadata as m
    import json
    packages = []
    for dist in m.distributions():
        meta = dist.metadata
        name = meta.get("Name") or getattr(dist, "name", "")
        homepage = meta.get("Home-page") or meta.get("Home-Page") or ""
        packages.append({
            "name": name,
            "version": dist.version,
            "summary": meta.get("Summary") or "",
            "homepage": homepage,
        })
    packages.sort(key=lambda p: (p.get("name") or "").lower())
    print(json.dumps(packages))
    """
)

# pip has no --target aware uninstall, so the sandbox removes the files
# recorded for the distribution found in the package directory.
UNINSTALL_SCRIPT = textwrap.dedent(
    """\
    import importlib.metadata as m
    import json
    import re
    import sys
    from pathlib import Path

    target = Path(sys.argv[1]).resolve()
    wanted = sys.argv[2]

    def canonical(name):
        return re.sub(r"[-_.]+", "-", name or "").lower()

    found = None
    for dist in m.distributions(path=[str(target)]):
        if canonical(dist.metadata.get("Name")) == canonical(wanted):
            found = dist
            break

    if found is None:
        status = "not_installed"
        try:
            m.distribution(wanted)
            status = "base_image"
        except m.PackageNotFoundError:
            pass
        print(json.dumps({"status": status, "name": wanted}))
        sys.exit(0)

    # METADATA is one of the recorded files
    name = found.metadata.get("Name") or wanted
    version = found.version
    removed = 0
    parents = set()
    for record in found.files or []:
        path = Path(found.locate_file(record)).resolve()
        if target not in path.parents or not path.is_file():
            continue
        path.unlink()
        removed += 1
        parents.add(path.parent)

    for parent in sorted(parents, key=lambda p: len(p.parts), reverse=True):
        while parent != target and target in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    print(json.dumps({
        "status": "removed",
        "name": name,
        "version": version,
        "files": removed,
    }))
    """
)


def normalize_package_input(text: str) -> tuple[list[str], str]:
    """Split a comma/space separated package list and apply aliases.

    Returns:
        tuple[list[str], str]: The requirement tokens, and a notice describing
        every alias applied (empty when none were).
    """
    tokens = [token for token in _SPLIT.split(text.strip()) if token]

    notices: list[str] = []
    requirements = []
    for token in tokens:
        match = _TOKEN.match(token)
        if not match:
            requirements.append(token)
            continue
        base, suffix = match.group(1), match.group(2)
        alias = PACKAGE_ALIASES.get(canonicalize_name(base))
        if alias is None:
            requirements.append(token)
            continue
        notice = f'"{base}" installs as "{alias}".'
        if notice not in notices:
            notices.append(notice)
        requirements.append(f"{alias}{suffix}")

    alias_notice = f"Note: {' '.join(notices)} " if notices else ""
    return requirements, alias_notice


def is_missing_binary_error(details: str) -> bool:
    return any(signature in details for signature in _MISSING_BINARY_SIGNATURES)


def missing_binary_message(requirements: list[str]) -> str:
    return f"No compatible binary wheels found for {', '.join(requirements)} on this runtime."


def classify_install_error(details: str, requirements: list[str]) -> tuple[InstallFailure, str]:
    """Map pip output from a failed install to a failure kind and an actionable message."""
    if not details.strip():
        return InstallFailure.UNKNOWN, f"Failed to install {', '.join(requirements)}."
    if any(signature in details for signature in _DISK_SIGNATURES):
        return (
            InstallFailure.DISK_EXHAUSTED,
            "Install ran out of disk space in the runtime. Increase COREASON_RUNTIME_TMPFS_MB "
            "or clean up runtime storage and try again.",
        )
    if any(signature in details for signature in _BUILD_SIGNATURES):
        return (
            InstallFailure.BUILD_FAILED,
            "Package requires a native build step that failed in this runtime. Consider using a "
            "package with prebuilt wheels or extend the runtime image with build tools.",
        )
    if is_missing_binary_error(details):
        return InstallFailure.MISSING_BINARY, missing_binary_message(requirements)

    lines = [line.strip() for line in details.splitlines() if line.strip()]
    return InstallFailure.UNKNOWN, " ".join(lines[-6:])


def progress_for_line(line: str) -> InstallProgress | None:
    """The progress event announced by a pip output line, if any."""
    stripped = line.strip()
    for marker, stage, percent in PROGRESS_MARKERS:
        if stripped.startswith(marker):
            return InstallProgress(stage=stage, percent=percent)
    return None


@dataclass
class _Attempt:
    success: bool
    output: str
    details: str


class _LineSplitter:
    """Turns streamed output chunks into complete lines, per stream."""

    def __init__(self, on_line: Callable[[Stream, str], None]):
        self._on_line = on_line
        self._partial: dict[Stream, str] = {"stdout": "", "stderr": ""}

    def feed(self, stream: Stream, chunk: str) -> None:
        text = self._partial[stream] + chunk
        # A trailing \r may be the first half of a \r\n split across chunks
        held = "\r" if text.endswith("\r") else ""
        text = text[: len(text) - len(held)].replace("\r\n", "\n").replace("\r", "\n")
        *lines, rest = text.split("\n")
        self._partial[stream] = rest + held
        for line in lines:
            self._on_line(stream, line)

    def flush(self) -> None:
        for stream in ("stdout", "stderr"):
            rest = self._partial[stream].rstrip("\r")
            self._partial[stream] = ""
            if rest:
                self._on_line(stream, rest)


class PackageManager:
    """Installs, uninstalls and lists packages inside a sandbox.

    Packages go to the workspace package directory (``pip install --target``),
    so they live exactly as long as the sandbox workspace. Mutations on one
    sandbox are serialized by its ``package_lock``.
    """

    def __init__(self, runtime: ContainerRuntime, config: RuntimeConfig | None = None):
        self.runtime = runtime
        self.config = config or RuntimeConfig()

    @property
    def target_dir(self) -> str:
        return posixpath.join(self.config.workspace_mount, PACKAGES_DIR)

    def _pip_install_command(self, requirements: list[str], binary_only: bool) -> list[str]:
        command = [
            "python",
            "-m",
            "pip",
            "install",
            "--prefer-binary",
            "--no-cache-dir",
            "--target",
            self.target_dir,
        ]
        if binary_only:
            command += ["--only-binary", ":all:"]
        return command + requirements

    @staticmethod
    def _invalid_input(requirements: list[str]) -> PackageInstallOutcome | None:
        if not requirements:
            return PackageInstallOutcome(
                success=False, message="No valid package name provided.", failure=InstallFailure.INVALID_INPUT
            )
        options = [token for token in requirements if token.startswith("-")]
        if options:
            return PackageInstallOutcome(
                success=False,
                message=f"Installer options are not accepted: {', '.join(options)}",
                failure=InstallFailure.INVALID_INPUT,
                requirements=requirements,
            )
        return None

    async def install(self, sandbox: Sandbox, spec: str) -> PackageInstallOutcome:
        """Install packages, preferring prebuilt wheels.

        The first attempt only accepts binary distributions. When pip reports
        that none exists the install stops there; any other failure is retried
        with source builds allowed.

        Args:
            sandbox: Target sandbox.
            spec: One or more requirement specifiers, comma or space separated.

        Returns:
            PackageInstallOutcome: Never raises for install failures.
        """
        requirements, notice = normalize_package_input(spec)
        invalid = self._invalid_input(requirements)
        if invalid:
            return invalid

        async with sandbox.package_lock:
            logger.info(f"Installing {', '.join(requirements)} in sandbox {sandbox.id}", sandbox_id=sandbox.id)
            try:
                outcome = await self._install(sandbox, requirements)
            finally:
                sandbox.touch()

        outcome.message = f"{notice}{outcome.message}"
        if outcome.success:
            logger.info(f"Installed {', '.join(requirements)} in sandbox {sandbox.id}")
        else:
            logger.warning(f"Install of {', '.join(requirements)} failed in sandbox {sandbox.id}: {outcome.failure}")
        return outcome

    async def _install(self, sandbox: Sandbox, requirements: list[str]) -> PackageInstallOutcome:
        try:
            binary = await self._run_pip(sandbox, self._pip_install_command(requirements, binary_only=True))
            if binary.success:
                return self._succeeded(binary, requirements)

            if is_missing_binary_error(binary.details):
                return PackageInstallOutcome(
                    success=False,
                    message=missing_binary_message(requirements)
                    + " Try another package or build a custom runtime image.",
                    failure=InstallFailure.MISSING_BINARY,
                    requirements=requirements,
                )

            logger.info(f"Binary-only install failed for {', '.join(requirements)}; retrying with source builds")
            source = await self._run_pip(sandbox, self._pip_install_command(requirements, binary_only=False))
        except TimeoutError:
            return PackageInstallOutcome(
                success=False,
                message=f"Package install exceeded {self.config.package_install_timeout:.0f} seconds and was stopped.",
                failure=InstallFailure.TIMEOUT,
                requirements=requirements,
            )
        except RuntimeCommandError as e:
            return PackageInstallOutcome(
                success=False,
                message=f"Failed to install {', '.join(requirements)}: {e}",
                failure=InstallFailure.UNKNOWN,
                requirements=requirements,
            )

        if source.success:
            return self._succeeded(source, requirements)

        failure, message = classify_install_error(source.details, requirements)
        return PackageInstallOutcome(success=False, message=message, failure=failure, requirements=requirements)

    async def _run_pip(self, sandbox: Sandbox, command: list[str]) -> _Attempt:
        result = await self.runtime.exec(
            sandbox.external_id, command, timeout=self.config.package_install_timeout
        )
        return _Attempt(
            success=result.exit_code == 0,
            output=result.stdout or result.stderr,
            details=f"{result.stderr}\n{result.stdout}",
        )

    @staticmethod
    def _succeeded(attempt: _Attempt, requirements: list[str]) -> PackageInstallOutcome:
        lines = reversed(attempt.output.splitlines())
        summary = next(
            (line.strip() for line in lines if line.startswith("Successfully installed")),
            f"Successfully installed {', '.join(requirements)}",
        )
        return PackageInstallOutcome(success=True, message=summary, requirements=requirements)

    async def install_streaming(
        self,
        sandbox: Sandbox,
        spec: str,
        on_event: EventCallback | None = None,
    ) -> PackageInstallOutcome:
        """Install packages while reporting progress and log lines as they arrive.

        Progress comes from well-known pip output markers and never goes
        backwards. There is no timeout on this path.

        Args:
            sandbox: Target sandbox.
            spec: One or more requirement specifiers, comma or space separated.
            on_event: Called with every ``InstallProgress`` and ``InstallLogLine``.

        Returns:
            PackageInstallOutcome: Includes every emitted progress event and log line.
        """
        requirements, notice = normalize_package_input(spec)
        invalid = self._invalid_input(requirements)
        if invalid:
            return invalid

        progress: list[InstallProgress] = []
        logs: list[str] = []

        def emit(event: InstallEvent) -> None:
            if on_event is None:
                return
            try:
                on_event(event)
            except Exception as e:
                logger.warning(f"Install event callback failed: {e}")

        def on_line(stream: Stream, line: str) -> None:
            logs.append(line)
            emit(InstallLogLine(stream=stream, line=line))
            event = progress_for_line(line)
            if event and (not progress or event.percent > progress[-1].percent):
                progress.append(event)
                emit(event)

        splitter = _LineSplitter(on_line)
        command = self._pip_install_command(requirements, binary_only=False)

        async with sandbox.package_lock:
            logger.info(f"Streaming install of {', '.join(requirements)} in sandbox {sandbox.id}")
            try:
                process = await self.runtime.spawn(sandbox.external_id, command, on_output=splitter.feed)
                exit_code = await process.wait()
            except RuntimeCommandError as e:
                splitter.flush()
                return PackageInstallOutcome(
                    success=False,
                    message=f"{notice}Failed to install {', '.join(requirements)}: {e}",
                    failure=InstallFailure.UNKNOWN,
                    requirements=requirements,
                    progress=progress,
                    logs=logs,
                )
            finally:
                sandbox.touch()
            splitter.flush()

        if exit_code == 0:
            if not progress or progress[-1].percent < 100:
                final = InstallProgress(stage="complete", percent=100)
                progress.append(final)
                emit(final)
            summary = next(
                (line.strip() for line in reversed(logs) if line.startswith("Successfully installed")),
                f"Successfully installed {', '.join(requirements)}",
            )
            return PackageInstallOutcome(
                success=True,
                message=f"{notice}{summary}",
                requirements=requirements,
                progress=progress,
                logs=logs,
            )

        failure, message = classify_install_error("\n".join(logs), requirements)
        logger.warning(f"Streaming install failed in sandbox {sandbox.id} with exit code {exit_code}")
        return PackageInstallOutcome(
            success=False,
            message=f"{notice}{message}",
            failure=failure,
            requirements=requirements,
            progress=progress,
            logs=logs,
        )

    async def uninstall(self, sandbox: Sandbox, name: str) -> PackageInstallOutcome:
        """Remove a package from the sandbox package directory.

        A package that is not installed there is a successful no-op.
        """
        requirements, notice = normalize_package_input(name)
        if len(requirements) != 1 or not _PACKAGE_NAME.match(requirements[0]):
            return PackageInstallOutcome(
                success=False,
                message="Provide exactly one package name to uninstall.",
                failure=InstallFailure.INVALID_INPUT,
                requirements=requirements,
            )
        package = requirements[0]

        async with sandbox.package_lock:
            try:
                result = await self.runtime.exec(
                    sandbox.external_id,
                    ["python", "-c", UNINSTALL_SCRIPT, self.target_dir, package],
                    timeout=self.config.package_install_timeout,
                )
            except TimeoutError:
                return PackageInstallOutcome(
                    success=False,
                    message=f"Uninstalling {package} timed out.",
                    failure=InstallFailure.TIMEOUT,
                    requirements=[package],
                )
            except RuntimeCommandError as e:
                return PackageInstallOutcome(
                    success=False,
                    message=f"Failed to uninstall {package}: {e}",
                    failure=InstallFailure.UNKNOWN,
                    requirements=[package],
                )
            finally:
                sandbox.touch()

        try:
            report = json.loads(result.stdout.strip().splitlines()[-1])
        except (IndexError, ValueError):
            report = {}

        status = report.get("status") if result.exit_code == 0 else None
        if status == "removed":
            version = report.get("version") or ""
            logger.info(f"Uninstalled {package} from sandbox {sandbox.id}")
            return PackageInstallOutcome(
                success=True,
                message=f"{notice}Successfully uninstalled {report.get('name', package)} {version}".rstrip(),
                requirements=[package],
            )
        if status == "not_installed":
            return PackageInstallOutcome(
                success=True,
                message=f"{notice}{package} is not installed in this sandbox; nothing to remove.",
                requirements=[package],
            )
        if status == "base_image":
            return PackageInstallOutcome(
                success=False,
                message=f"{notice}{package} is part of the runtime image and cannot be uninstalled.",
                failure=InstallFailure.INVALID_INPUT,
                requirements=[package],
            )

        details = result.stderr.strip() or result.stdout.strip()
        logger.warning(f"Uninstall of {package} failed in sandbox {sandbox.id}: {details}")
        return PackageInstallOutcome(
            success=False,
            message=f"{notice}Failed to uninstall {package}. {details}".strip(),
            failure=InstallFailure.UNKNOWN,
            requirements=[package],
        )

    async def list_packages(self, sandbox: Sandbox) -> list[PackageInfo]:
        """Installed distributions sorted by name. Empty on any failure."""
        try:
            result = await self.runtime.exec(
                sandbox.external_id,
                ["python", "-c", LIST_SCRIPT],
                timeout=self.config.execution_timeout,
            )
            if result.exit_code != 0:
                logger.warning(f"Package listing exited with {result.exit_code} in sandbox {sandbox.id}")
                return []
            parsed = json.loads(result.stdout)
            if not isinstance(parsed, list):
                return []
            return [PackageInfo(**item) for item in parsed if isinstance(item, dict) and item.get("name")]
        except Exception as e:
            logger.warning(f"Could not list packages in sandbox {sandbox.id}: {e}")
            return []
        finally:
            sandbox.touch()
