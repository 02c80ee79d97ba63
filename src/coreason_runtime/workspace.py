# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

"""Host-side workspace directories bind-mounted into sandboxes.

Layout::

    <workspace>/
      datasets/        project datasets (symlinks into the read-only mount)
      .python/         pip --target destination, on the interpreter's path
      .tmp/            TMPDIR
      .cache/pip/      pip cache
"""

import json
import posixpath
import re
import shutil
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

import anyio

from coreason_runtime.models import DatasetLink, DatasetRef, DatasetSyncResult
from coreason_runtime.utils.logger import logger

DATASETS_DIR = "datasets"
PACKAGES_DIR = ".python"
TMP_DIR = ".tmp"
PIP_CACHE_DIR = ".cache/pip"
MANIFEST_NAME = "_manifest.json"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def _make_layout(path: Path) -> None:
    for sub in (DATASETS_DIR, PACKAGES_DIR, TMP_DIR, PIP_CACHE_DIR):
        (path / sub).mkdir(parents=True, exist_ok=True)


async def prepare_workspace(path: Path) -> Path:
    """Create the workspace tree and return its absolute path."""
    absolute = path.resolve()
    await anyio.to_thread.run_sync(_make_layout, absolute)
    return absolute


async def remove_workspace(path: Path) -> None:
    """Delete a workspace tree. A missing directory is not an error."""
    if not path.exists():
        return
    await anyio.to_thread.run_sync(shutil.rmtree, path)


def sandbox_environment(workspace_mount: str) -> dict[str, str]:
    """Environment pointing the sandbox interpreter at its workspace."""
    return {
        "HOME": workspace_mount,
        "PYTHONPATH": posixpath.join(workspace_mount, PACKAGES_DIR),
        "PIP_CACHE_DIR": posixpath.join(workspace_mount, PIP_CACHE_DIR),
        "PIP_DISABLE_PIP_VERSION_CHECK": "1",
        "TMPDIR": posixpath.join(workspace_mount, TMP_DIR),
    }


def dataset_alias(filename: str, dataset_id: str) -> str:
    """``report.csv`` + ``3f2a-...`` -> ``report__3f2a....csv``."""
    path = Path(filename)
    suffix = _NON_ALNUM.sub("", dataset_id)[:8]
    return f"{path.stem}__{suffix}{path.suffix}"


def _ensure_symlink(link_path: Path, target: str) -> bool:
    """Create ``link_path`` -> ``target``. False if something else occupies the name."""
    if link_path.is_symlink():
        return str(link_path.readlink()) == target
    if link_path.exists():
        return False
    link_path.symlink_to(target)
    return True


def _sync(
    workspace: Path,
    datasets: list[DatasetRef],
    storage_dir: Path,
    datasets_mount: str,
) -> DatasetSyncResult:
    datasets_dir = workspace / DATASETS_DIR
    datasets_dir.mkdir(parents=True, exist_ok=True)

    claimed: set[str] = set()
    result = DatasetSyncResult()

    for dataset in datasets:
        host_path = storage_dir / dataset.dataset_id / dataset.filename
        if not host_path.exists():
            logger.debug(f"Dataset file missing from store: {host_path}")
            continue

        target = posixpath.join(datasets_mount, dataset.dataset_id, dataset.filename)
        alias = dataset.filename

        if alias in claimed or not _ensure_symlink(datasets_dir / alias, target):
            alias = dataset_alias(dataset.filename, dataset.dataset_id)
            _ensure_symlink(datasets_dir / alias, target)
            result.collisions.append(dataset.filename)

        claimed.add(alias)
        result.links.append(
            DatasetLink(alias=alias, dataset_id=dataset.dataset_id, filename=dataset.filename, target=target)
        )

    manifest = {
        "updatedAt": datetime.now(timezone.utc).isoformat(),
        "links": [link.model_dump() for link in result.links],
    }
    (datasets_dir / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return result


async def sync_workspace_datasets(
    workspace: Path,
    datasets: Iterable[DatasetRef],
    storage_dir: Path,
    datasets_mount: str = "/datasets",
) -> DatasetSyncResult:
    """Link each stored dataset into ``<workspace>/datasets``.

    Links point at the read-only dataset mount inside the sandbox, so they
    only resolve from within it. Filenames already taken get an alias derived
    from the dataset id. A ``_manifest.json`` records the resulting links.

    Args:
        workspace: Host workspace directory.
        datasets: Datasets belonging to the workspace's project.
        storage_dir: Host dataset store, laid out as ``<id>/<filename>``.
        datasets_mount: Mount point of the dataset store inside the sandbox.

    Returns:
        DatasetSyncResult: The links created and the filenames that collided.
    """
    return await anyio.to_thread.run_sync(_sync, workspace, list(datasets), storage_dir, datasets_mount)
