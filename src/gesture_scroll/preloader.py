"""Concurrent asset preloader with global progress and all-or-nothing results.

Downloads every model asset in parallel, reports one unified progress value
across all streams, and keeps the fully received bodies in memory as
ResourceHandles. If anything fails the whole batch fails with PreloadError and
the caller falls back to direct remote URLs for every asset.

Usage:
    preloader = AssetPreloader()
    handles = await preloader.preload(
        [AssetRequest("hand_landmarker.task", url)],
        on_progress=lambda pct, speed, loaded, total: print(f"{pct:.0f}%"),
    )
    locator = AssetLocator(base_url, handles)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional, Union

import aiohttp

from gesture_scroll.errors import PreloadError, TransferError
from gesture_scroll.metrics import MetricsCollector
from gesture_scroll.transfer import (
    DEFAULT_PROGRESS_INTERVAL,
    ByteStreamTracker,
    ProgressAggregate,
    ProgressCallback,
    Transfer,
    is_success,
)

logger = logging.getLogger("gesture_scroll.preloader")


@dataclass(frozen=True)
class AssetRequest:
    """One asset to fetch, keyed by its file name."""
    identifier: str
    url: str


@dataclass(frozen=True)
class ResourceHandle:
    """A fully downloaded asset held in memory."""
    identifier: str
    data: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)

    def buffer(self) -> memoryview:
        return memoryview(self.data)

    @classmethod
    def from_transfer(cls, transfer: Transfer) -> ResourceHandle:
        return cls(transfer.identifier, transfer.data, transfer.content_type)


def requests_for(base_url: str, files: Iterable[str]) -> list[AssetRequest]:
    """Build requests for `files` relative to `base_url`."""
    return [AssetRequest(f, base_url + f) for f in files]


class AssetPreloader:
    """Fetches a batch of assets concurrently.

    Args:
        session: aiohttp ClientSession (or a compatible object). When omitted a
            session is created per preload() call and closed afterwards.
        progress_interval: Minimum seconds between progress callbacks.
        clock: Monotonic clock, injectable for tests.
        metrics: Optional collector for download statistics.
    """

    def __init__(
        self,
        session=None,
        *,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._session = session
        self._progress_interval = progress_interval
        self._clock = clock
        self._metrics = metrics
        self.last_progress = None

    async def preload(
        self,
        requests: list[AssetRequest],
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict[str, ResourceHandle]:
        """Download every request and return identifier → ResourceHandle.

        Raises:
            PreloadError: any request failed; no partial mapping is returned.
            ValueError: two requests share an identifier.
        """
        identifiers = [r.identifier for r in requests]
        if len(set(identifiers)) != len(identifiers):
            raise ValueError(f"Duplicate asset identifiers in {identifiers}")

        if self._session is not None:
            return await self._preload(self._session, requests, on_progress)

        async with aiohttp.ClientSession() as session:
            return await self._preload(session, requests, on_progress)

    async def _preload(self, session, requests, on_progress) -> dict[str, ResourceHandle]:
        started = self._clock()
        responses: list = []
        try:
            responses = await self._request_all(session, requests)

            total = 0
            for request, response in zip(requests, responses):
                if not is_success(response.status):
                    raise TransferError(request.identifier, status=response.status)
                if response.content_length is None:
                    total = None
                elif total is not None:
                    total += response.content_length

            aggregate = ProgressAggregate(
                total_bytes=total or 0,
                on_progress=on_progress,
                interval=self._progress_interval,
                clock=self._clock,
            )
            trackers = [
                ByteStreamTracker(
                    request.identifier,
                    response,
                    sink=aggregate.add,
                    interval=self._progress_interval,
                    clock=self._clock,
                )
                for request, response in zip(requests, responses)
            ]
            transfers = await self._read_all(trackers)
            self.last_progress = aggregate.finish()
        except TransferError as e:
            logger.warning("Preload failed on %s: %s", e.identifier, e)
            raise PreloadError(f"Preload failed: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning("Preload request failed: %s", e)
            raise PreloadError(f"Preload request failed: {e}") from e
        finally:
            for response in responses:
                response.release()

        handles = {t.identifier: ResourceHandle.from_transfer(t) for t in transfers}
        elapsed = self._clock() - started
        nbytes = sum(h.size for h in handles.values())
        logger.info("Preloaded %d assets (%.2f MB) in %.2fs", len(handles), nbytes / 1e6, elapsed)
        if self._metrics:
            self._metrics.record_download(nbytes, elapsed)
        return handles

    async def _request_all(self, session, requests: list[AssetRequest]) -> list:
        tasks = [asyncio.ensure_future(self._request(session, r)) for r in requests]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            # Release whatever did arrive before the failure
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is None:
                    task.result().release()
            raise

    async def _request(self, session, request: AssetRequest):
        logger.debug("GET %s", request.url)
        return await session.get(request.url)

    async def _read_all(self, trackers: list[ByteStreamTracker]) -> list[Transfer]:
        tasks = [asyncio.ensure_future(t.read()) for t in trackers]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.exception() is not None:
                    raise task.exception()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return [task.result() for task in tasks]


Location = Union[ResourceHandle, str]


class AssetLocator:
    """Resolves an asset identifier to a preloaded handle or its remote URL."""

    def __init__(self, base_url: str, handles: Optional[Mapping[str, ResourceHandle]] = None):
        self.base_url = base_url
        self._handles = dict(handles or {})

    @classmethod
    def fallback(cls, base_url: str) -> AssetLocator:
        """A locator that sends every asset to the network."""
        return cls(base_url)

    @property
    def preloaded(self) -> bool:
        return bool(self._handles)

    def locate(self, identifier: str) -> Location:
        handle = self._handles.get(identifier)
        if handle is not None:
            return handle
        return self.base_url + identifier

    def __call__(self, identifier: str) -> Location:
        return self.locate(identifier)


async def preload_with_fallback(
    preloader: AssetPreloader,
    requests: list[AssetRequest],
    base_url: str,
    on_progress: Optional[ProgressCallback] = None,
    on_fallback: Optional[Callable[[PreloadError], None]] = None,
    metrics: Optional[MetricsCollector] = None,
) -> AssetLocator:
    """Preload `requests`; on PreloadError fall back to direct URLs for all of them."""
    try:
        handles = await preloader.preload(requests, on_progress)
    except PreloadError as e:
        logger.warning("Model preload failed, falling back to standard load: %s", e)
        if metrics:
            metrics.record_fallback()
        if on_fallback:
            on_fallback(e)
        return AssetLocator.fallback(base_url)
    return AssetLocator(base_url, handles)
