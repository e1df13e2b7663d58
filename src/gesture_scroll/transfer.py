"""Byte-level transfer tracking for streamed HTTP bodies.

A ByteStreamTracker reads one response body chunk by chunk, accumulating the
bytes and reporting progress. Several trackers share one ProgressAggregate so
the caller sees a single global progress value across all streams.

Usage:
    aggregate = ProgressAggregate(total_bytes=1_000_000, on_progress=print)
    tracker = ByteStreamTracker("model.task", response, sink=aggregate.add)
    transfer = await tracker.read()
    aggregate.finish()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import aiohttp

from gesture_scroll.errors import TransferError

logger = logging.getLogger("gesture_scroll.transfer")

DEFAULT_PROGRESS_INTERVAL = 0.1  # seconds

ProgressCallback = Callable[[float, float, float, float], None]


def is_success(status: int) -> bool:
    return 200 <= status < 300


@dataclass(frozen=True)
class TransferProgress:
    """Progress of a single stream."""
    identifier: str
    bytes_so_far: int
    bytes_total: Optional[int]  # None when the server sent no length


@dataclass(frozen=True)
class Transfer:
    """A fully received stream."""
    identifier: str
    data: bytes
    content_type: str


@dataclass(frozen=True)
class AssetProgress:
    """Global progress across every stream of a preload batch."""
    bytes_loaded: int
    bytes_total: int  # 0 = unknown
    elapsed_seconds: float

    @property
    def percent(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return self.bytes_loaded / self.bytes_total * 100.0

    @property
    def speed_mbps(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return (self.bytes_loaded / 1e6) / self.elapsed_seconds

    @property
    def loaded_mb(self) -> float:
        return self.bytes_loaded / 1e6

    @property
    def total_mb(self) -> float:
        return self.bytes_total / 1e6


class ProgressAggregate:
    """Shared byte counter for a batch of concurrent streams.

    Trackers call add() for every chunk. The counter is only touched from the
    event loop thread, so increments are serialized without a lock. The
    caller's callback fires at most once per `interval` seconds.
    """

    def __init__(
        self,
        total_bytes: int = 0,
        on_progress: Optional[ProgressCallback] = None,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_bytes = max(0, total_bytes)
        self.loaded_bytes = 0
        self._on_progress = on_progress
        self._interval = interval
        self._clock = clock
        self._started = clock()
        self._last_emit = float("-inf")
        self.emissions = 0

    def add(self, nbytes: int):
        self.loaded_bytes += nbytes
        now = self._clock()
        if now - self._last_emit > self._interval:
            self._last_emit = now
            self._emit(self.snapshot(now))

    def snapshot(self, now: Optional[float] = None) -> AssetProgress:
        now = self._clock() if now is None else now
        return AssetProgress(
            bytes_loaded=self.loaded_bytes,
            bytes_total=self.total_bytes,
            elapsed_seconds=max(0.0, now - self._started),
        )

    def finish(self) -> AssetProgress:
        """Emit the final update, pinned at 100 percent."""
        progress = self.snapshot()
        self._emit(progress, percent=100.0)
        return progress

    def _emit(self, progress: AssetProgress, percent: Optional[float] = None):
        self.emissions += 1
        if self._on_progress is None:
            return
        self._on_progress(
            progress.percent if percent is None else percent,
            progress.speed_mbps,
            progress.loaded_mb,
            progress.total_mb,
        )


class ByteStreamTracker:
    """Reads one response body while counting bytes.

    `response` follows the aiohttp ClientResponse surface: `status`,
    `content_length`, `content_type` and `content.iter_any()`.

    Args:
        identifier: Asset key, carried on errors and progress snapshots.
        response: The response whose body to read.
        sink: Receives every chunk size, unthrottled (e.g. ProgressAggregate.add).
        on_progress: Receives TransferProgress, at most once per `interval`.
    """

    def __init__(
        self,
        identifier: str,
        response,
        *,
        sink: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[TransferProgress], None]] = None,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.identifier = identifier
        self._response = response
        self._sink = sink
        self._on_progress = on_progress
        self._interval = interval
        self._clock = clock
        self._chunks: list[bytes] = []
        self._consumed = False
        self.bytes_so_far = 0

    @property
    def bytes_total(self) -> Optional[int]:
        return self._response.content_length

    @property
    def content_type(self) -> str:
        return self._response.content_type or "application/octet-stream"

    async def snapshots(self) -> AsyncIterator[TransferProgress]:
        """Yield a progress snapshot per received chunk.

        Each call restarts accumulation from an empty buffer. A response body
        can only be streamed once, so a second call raises TransferError
        instead of returning an empty body.
        """
        status = self._response.status
        if not is_success(status):
            raise TransferError(self.identifier, status=status)
        if self._consumed:
            raise TransferError(self.identifier, "response body already consumed")
        self._consumed = True

        self._chunks = []
        self.bytes_so_far = 0
        last_report = float("-inf")

        try:
            async for chunk in self._response.content.iter_any():
                if not chunk:
                    continue
                self._chunks.append(chunk)
                self.bytes_so_far += len(chunk)
                if self._sink is not None:
                    self._sink(len(chunk))

                snapshot = TransferProgress(self.identifier, self.bytes_so_far, self.bytes_total)
                now = self._clock()
                if self._on_progress is not None and now - last_report > self._interval:
                    last_report = now
                    self._on_progress(snapshot)
                yield snapshot
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransferError(self.identifier, str(e) or type(e).__name__) from e

    async def read(self) -> Transfer:
        """Drain the stream and return the complete body."""
        async for _ in self.snapshots():
            pass
        logger.debug("%s: received %d bytes", self.identifier, self.bytes_so_far)
        return Transfer(
            identifier=self.identifier,
            data=b"".join(self._chunks),
            content_type=self.content_type,
        )
