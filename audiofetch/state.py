"""State shared between an audio file reader and its background fetcher."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum, auto

from .range_set import Range, RangeSet

MINIMUM_DOWNLOAD_SIZE = 1024 * 16
"""Smallest block requested from the server in one request."""

INITIAL_DOWNLOAD_SIZE = 1024 * 16
"""Amount requested when a file is first opened."""

INITIAL_PING_TIME_ESTIMATE = 0.5
"""Ping time in seconds assumed before one is measured."""

MAXIMUM_ASSUMED_PING_TIME = 1.5
"""Measured ping times are capped to this many seconds."""

READ_AHEAD_BEFORE_PLAYBACK = 1.0
"""Seconds of data that must be present before playback starts."""

READ_AHEAD_BEFORE_PLAYBACK_ROUNDTRIPS = 2.0
"""Read-ahead before playback, as a multiple of the ping time."""

READ_AHEAD_DURING_PLAYBACK = 5.0
"""Seconds of data requested ahead of the read position while playing."""

READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS = 10.0
"""Read-ahead during playback, as a multiple of the ping time."""

PREFETCH_THRESHOLD_FACTOR = 4.0
"""Pending bytes below this factor times ping time times data rate trigger a prefetch."""

FAST_PREFETCH_THRESHOLD_FACTOR = 1.5
"""Like PREFETCH_THRESHOLD_FACTOR, but against the measured download rate."""

MAX_PREFETCH_REQUESTS = 4
"""Prefetching only sends requests while fewer than this many are pending."""

DOWNLOAD_TIMEOUT = 1.0
"""Seconds to wait for download progress before checking again."""


class DownloadStrategy(Enum):
    RANDOM_ACCESS = auto()
    STREAMING = auto()


class CommandKind(Enum):
    FETCH = auto()
    RANDOM_ACCESS_MODE = auto()
    STREAM_MODE = auto()
    CLOSE = auto()


@dataclass(frozen=True)
class StreamLoaderCommand:
    """A request sent to the background stream loader."""

    kind: CommandKind
    range: Range | None = None

    @classmethod
    def fetch(cls, range: Range) -> StreamLoaderCommand:
        return cls(CommandKind.FETCH, range)

    @classmethod
    def random_access_mode(cls) -> StreamLoaderCommand:
        return cls(CommandKind.RANDOM_ACCESS_MODE)

    @classmethod
    def stream_mode(cls) -> StreamLoaderCommand:
        return cls(CommandKind.STREAM_MODE)

    @classmethod
    def close(cls) -> StreamLoaderCommand:
        return cls(CommandKind.CLOSE)


@dataclass
class DownloadStatus:
    """Ranges that have been requested and ranges that have arrived."""

    requested: RangeSet = field(default_factory=RangeSet)
    downloaded: RangeSet = field(default_factory=RangeSet)


class AudioFileShared:
    """Bookkeeping for one streamed file.

    ``cond`` guards ``download_status`` and is notified whenever it changes.
    """

    def __init__(self, file_id, file_size: int, stream_data_rate: int) -> None:
        if file_size < 0:
            raise ValueError(f"file size must be non-negative, got {file_size}")
        if stream_data_rate < 0:
            raise ValueError(f"data rate must be non-negative, got {stream_data_rate}")
        self.file_id = file_id
        self.file_size = file_size
        self.stream_data_rate = stream_data_rate
        self.cond = threading.Condition()
        self.download_status = DownloadStatus()
        self.download_strategy = DownloadStrategy.RANDOM_ACCESS
        self.number_of_open_requests = 0
        self.ping_time_ms = 0
        self.read_position = 0

    def ping_time_seconds(self) -> float:
        return self.ping_time_ms / 1000.0