"""
External library resolution (BOSL2) with a process-wide cache.

Resolution runs once per library+version:

  1. GET the flat file listing (jsDelivr data API shape:
     ``{"files": [{"name": "/std.scad", ...}, ...]}``)
  2. keep only library source files (``.scad``)
  3. GET file bodies in sequential batches of concurrent requests,
     reporting progress after each batch

A body that fails to download is dropped and the rest of the set is still
cached. A listing failure aborts resolution and caches nothing.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import httpx

from ..schemas import LogLevel
from .engine import LIBRARY_ROOT, EngineInstance, LogSink, null_sink
from .errors import DependencyListingError
from .once import SingleFlight

logger = logging.getLogger(__name__)

DEFAULT_LISTING_URL = "https://data.jsdelivr.com/v1/packages/gh/{repo}@{version}?structure=flat"
DEFAULT_FILE_URL = "https://cdn.jsdelivr.net/gh/{repo}@{version}/{path}"


def library_directive_re(library_name: str) -> re.Pattern[str]:
    return re.compile(
        r"^\s*(?:include|use)\s*<\s*" + re.escape(library_name) + r"/",
        re.MULTILINE,
    )


def references_library(source_text: str, library_name: str = "BOSL2") -> bool:
    return bool(library_directive_re(library_name).search(source_text))


class DependencyCache:
    def __init__(
        self,
        library_name: str = "BOSL2",
        repo: str = "BelfrySCAD/BOSL2",
        version: str = "master",
        listing_url: str = DEFAULT_LISTING_URL,
        file_url: str = DEFAULT_FILE_URL,
        file_suffix: str = ".scad",
        batch_size: int = 8,
        http_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.library_name = library_name
        self.repo = repo
        self.version = version
        self.listing_url = listing_url
        self.file_url = file_url
        self.file_suffix = file_suffix
        self.batch_size = max(1, batch_size)
        self.http_timeout = http_timeout
        self._transport = transport
        self._directive_re = library_directive_re(library_name)
        self._cache: SingleFlight[tuple[str, str], dict[str, bytes]] = SingleFlight("dependency_cache")

    @property
    def key(self) -> tuple[str, str]:
        return (self.library_name, self.version)

    def cached_libraries(self) -> list[str]:
        return [f"{name}@{version}" for name, version in self._cache.keys()]

    def is_referenced(self, source_text: str) -> bool:
        return bool(self._directive_re.search(source_text))

    async def resolve(self, log: LogSink = null_sink) -> dict[str, bytes]:
        """Return ``relative path -> body`` for the configured library version."""
        cached = self._cache.peek(self.key)
        if cached is not None:
            log(f"{self.library_name} ({len(cached)} files) loaded from cache.", LogLevel.info)
            return cached
        return await self._cache.get(self.key, lambda: self._populate(log))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.http_timeout),
            transport=self._transport,
            follow_redirects=True,
        )

    async def _populate(self, log: LogSink) -> dict[str, bytes]:
        log(f"Resolving {self.library_name}@{self.version}...", LogLevel.info)
        async with self._client() as client:
            paths = await self._list_files(client)
            log(f"{self.library_name}: downloading {len(paths)} files...", LogLevel.info)

            files: dict[str, bytes] = {}
            total = len(paths)
            for start in range(0, total, self.batch_size):
                batch = paths[start:start + self.batch_size]
                bodies = await asyncio.gather(*(self._fetch_file(client, p) for p in batch))
                for path, body in zip(batch, bodies):
                    if body is not None:
                        files[path] = body
                done = min(start + len(batch), total)
                log(f"{self.library_name}: {done}/{total} files", LogLevel.info)

        missing = total - len(files)
        if missing:
            log(f"{self.library_name}: {missing} file(s) could not be downloaded.", LogLevel.warning)
        log(f"{self.library_name} ready ({len(files)} files).", LogLevel.success)
        logger.info(
            "dependency_cache_populated library=%s version=%s files=%d missing=%d",
            self.library_name, self.version, len(files), missing,
        )
        return files

    async def _list_files(self, client: httpx.AsyncClient) -> list[str]:
        url = self.listing_url.format(repo=self.repo, version=self.version)
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            payload: Any = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("dependency_listing_failed url=%s error=%s", url, exc)
            raise DependencyListingError(
                f"Could not list {self.library_name}@{self.version} files: {exc}"
            ) from exc

        entries = payload.get("files") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise DependencyListingError(
                f"Unexpected listing format for {self.library_name}@{self.version}"
            )

        paths: list[str] = []
        for entry in entries:
            name = entry.get("name") if isinstance(entry, dict) else entry
            if isinstance(name, str) and name.endswith(self.file_suffix):
                paths.append(name.lstrip("/"))
        return paths

    async def _fetch_file(self, client: httpx.AsyncClient, path: str) -> bytes | None:
        url = self.file_url.format(repo=self.repo, version=self.version, path=path)
        try:
            resp = await client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("dependency_file_failed path=%s error=%s", path, exc)
            return None
        return resp.content


def stage_library(instance: EngineInstance, library_name: str, files: dict[str, bytes]) -> int:
    """Write files under ``libraries/<library_name>/`` keeping their relative layout."""
    staged = 0
    for rel_path, body in files.items():
        try:
            instance.write_file(f"{LIBRARY_ROOT}/{library_name}/{rel_path}", body)
        except ValueError as exc:
            logger.warning("dependency_stage_skipped path=%s error=%s", rel_path, exc)
            continue
        staged += 1
    return staged
