# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

"""PyPI-backed package search with in-memory and on-disk caching."""

import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote

import aiofiles  # type: ignore[import-untyped]
import anyio
import httpx
from pydantic import BaseModel, Field, ValidationError

from coreason_runtime.models import PackageInfo
from coreason_runtime.utils.logger import logger

PYPI_INDEX_URL = "https://pypi.org/simple/"
PYPI_JSON_URL = "https://pypi.org/pypi"
INDEX_CACHE_NAME = "pypi-index.json"
INDEX_TTL = 12 * 60 * 60.0
METADATA_TTL = 2 * 60 * 60.0
USER_AGENT = "coreason-runtime"

FALLBACK_PACKAGES: list[PackageInfo] = [
    PackageInfo(name="numpy", summary="Fast array and numerical computing."),
    PackageInfo(name="pandas", summary="Data structures and analysis tools."),
    PackageInfo(name="scikit-learn", summary="Machine learning algorithms and utilities."),
    PackageInfo(name="matplotlib", summary="Plotting and visualization library."),
    PackageInfo(name="seaborn", summary="Statistical data visualization."),
    PackageInfo(name="scipy", summary="Scientific computing and optimization."),
    PackageInfo(name="plotly", summary="Interactive visualization library."),
    PackageInfo(name="xgboost", summary="Gradient boosting library for ML."),
    PackageInfo(name="lightgbm", summary="Gradient boosting framework from Microsoft."),
    PackageInfo(name="catboost", summary="Gradient boosting with categorical features."),
    PackageInfo(name="optuna", summary="Hyperparameter optimization framework."),
    PackageInfo(name="statsmodels", summary="Statistical models and tests."),
    PackageInfo(name="imbalanced-learn", summary="Tools for imbalanced datasets."),
    PackageInfo(name="feature-engine", summary="Feature engineering utilities."),
    PackageInfo(name="category-encoders", summary="Encoding techniques for categorical variables."),
    PackageInfo(name="shap", summary="Model explainability with SHAP values."),
    PackageInfo(name="lime", summary="Local model explainability."),
    PackageInfo(name="mlflow", summary="ML lifecycle tracking and deployment."),
    PackageInfo(name="polars", summary="Fast DataFrame library."),
    PackageInfo(name="duckdb", summary="In-process analytical database."),
    PackageInfo(name="pyarrow", summary="Apache Arrow Python bindings."),
    PackageInfo(name="sqlalchemy", summary="SQL toolkit and ORM."),
]

_ANCHOR = re.compile(r"<a[^>]*>([^<]+)</a>", re.IGNORECASE)


class IndexCache(BaseModel):
    names: list[str]
    fetched_at: float
    etag: str | None = None
    last_modified: str | None = None


class _MetadataEntry(BaseModel):
    info: PackageInfo
    fetched_at: float = Field(default_factory=time.time)


def parse_index(html: str) -> list[str]:
    """Project names from a PEP 503 simple index page, de-duplicated in order."""
    names = (match.strip() for match in _ANCHOR.findall(html))
    return list(dict.fromkeys(name for name in names if name))


def _fallback_for(name: str) -> PackageInfo | None:
    key = name.lower()
    return next((pkg for pkg in FALLBACK_PACKAGES if pkg.name.lower() == key), None)


class PackageIndex:
    """Searches package names on PyPI.

    The simple index (hundreds of thousands of names) is fetched at most every
    12 hours, revalidated with ETag/Last-Modified and persisted under
    ``cache_dir``. Any network failure falls back to a built-in list of
    common data-science packages.
    """

    def __init__(self, cache_dir: Path, client: httpx.AsyncClient | None = None):
        self.cache_dir = cache_dir
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT}, timeout=30.0, follow_redirects=True
        )
        self._index: IndexCache | None = None
        self._index_task: asyncio.Task[IndexCache] | None = None
        self._metadata: dict[str, _MetadataEntry] = {}

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / INDEX_CACHE_NAME

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

    async def search(self, query: str, limit: int = 8) -> list[PackageInfo]:
        """Find packages whose name starts with, then contains, ``query``.

        Args:
            query: Search text, case-insensitive. Empty returns popular packages.
            limit: Maximum number of results.

        Returns:
            list[PackageInfo]: Matches enriched with PyPI metadata where available.
        """
        needle = query.strip().lower()
        if not needle:
            return FALLBACK_PACKAGES[:limit]

        try:
            names = await self.load_index()
        except (httpx.HTTPError, OSError) as e:
            logger.warning(f"PyPI index unavailable, using built-in package list: {e}")
            names = [pkg.name for pkg in FALLBACK_PACKAGES]

        prefix_matches = []
        contains_matches = []
        for name in names:
            lower = name.lower()
            if lower.startswith(needle):
                prefix_matches.append(name)
            elif needle in lower:
                contains_matches.append(name)

        candidates = (prefix_matches + contains_matches)[:limit]
        return list(await asyncio.gather(*(self.metadata(name) for name in candidates)))

    async def load_index(self) -> list[str]:
        """Package names from memory, disk or PyPI, in that order of preference."""
        if self._index and time.time() - self._index.fetched_at < INDEX_TTL:
            return self._index.names

        # Concurrent callers share one refresh.
        if self._index_task is None or self._index_task.done():
            self._index_task = asyncio.create_task(self._refresh_index())
        cache = await asyncio.shield(self._index_task)
        return cache.names

    async def _refresh_index(self) -> IndexCache:
        previous = self._index or await self._read_cache()
        if previous and time.time() - previous.fetched_at < INDEX_TTL:
            self._index = previous
            return previous

        fetched = await self._fetch_index(previous)
        self._index = fetched
        try:
            await self._write_cache(fetched)
        except OSError as e:
            logger.warning(f"Could not persist PyPI index cache: {e}")
        return fetched

    async def _fetch_index(self, previous: IndexCache | None) -> IndexCache:
        headers = {"Accept": "text/html"}
        if previous and previous.etag:
            headers["If-None-Match"] = previous.etag
        if previous and previous.last_modified:
            headers["If-Modified-Since"] = previous.last_modified

        response = await self._client.get(PYPI_INDEX_URL, headers=headers)
        if response.status_code == 304 and previous:
            logger.debug("PyPI index not modified")
            return previous.model_copy(update={"fetched_at": time.time()})
        response.raise_for_status()

        names = parse_index(response.text)
        logger.info(f"Fetched PyPI index with {len(names)} projects")
        return IndexCache(
            names=names,
            fetched_at=time.time(),
            etag=response.headers.get("etag") or (previous.etag if previous else None),
            last_modified=response.headers.get("last-modified") or (previous.last_modified if previous else None),
        )

    async def _read_cache(self) -> IndexCache | None:
        if not self.cache_path.exists():
            return None
        try:
            async with aiofiles.open(self.cache_path, "r", encoding="utf-8") as f:
                return IndexCache.model_validate_json(await f.read())
        except (OSError, ValidationError) as e:
            logger.debug(f"Ignoring unreadable PyPI index cache: {e}")
            return None

    async def _write_cache(self, cache: IndexCache) -> None:
        await anyio.to_thread.run_sync(lambda: self.cache_dir.mkdir(parents=True, exist_ok=True))
        async with aiofiles.open(self.cache_path, "w", encoding="utf-8") as f:
            await f.write(cache.model_dump_json())

    async def metadata(self, name: str) -> PackageInfo:
        """Version, summary and homepage for ``name`` from the PyPI JSON API."""
        key = name.lower()
        cached = self._metadata.get(key)
        if cached and time.time() - cached.fetched_at < METADATA_TTL:
            return cached.info

        fallback = _fallback_for(name)
        try:
            response = await self._client.get(f"{PYPI_JSON_URL}/{quote(name)}/json")
            if response.status_code != 200:
                return fallback or PackageInfo(name=name)
            payload: dict[str, Any] = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.debug(f"Metadata lookup for {name} failed: {e}")
            return fallback or PackageInfo(name=name)

        info = payload.get("info") or {}
        project_urls = info.get("project_urls") or {}
        homepage = (
            info.get("project_url")
            or info.get("home_page")
            or project_urls.get("Homepage")
            or project_urls.get("homepage")
        )
        result = PackageInfo(
            name=info.get("name") or name,
            version=info.get("version"),
            summary=info.get("summary") or (fallback.summary if fallback else None),
            homepage=homepage or (fallback.homepage if fallback else None),
        )
        self._metadata[key] = _MetadataEntry(info=result)
        return result
