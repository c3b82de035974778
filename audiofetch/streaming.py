"""Readable, seekable audio files that are fetched on demand in the background."""

from __future__ import annotations

import io
import logging
import os
import queue
import struct
import tempfile
import time
import weakref
from collections.abc import Callable, Iterable
from typing import Any, BinaryIO, Protocol

from .range_set import Range, RangeSet
from .receive import audio_file_fetch, request_range
from .state import (
    DOWNLOAD_TIMEOUT,
    INITIAL_DOWNLOAD_SIZE,
    INITIAL_PING_TIME_ESTIMATE,
    READ_AHEAD_DURING_PLAYBACK,
    READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS,
    AudioFileShared,
    DownloadStrategy,
    StreamLoaderCommand,
)

log = logging.getLogger(__name__)

_FILE_SIZE_HEADER = 0x3


class _Cache(Protocol):
    def file(self, file_id: Any) -> BinaryIO | None: ...

    def save_file(self, file_id: Any, contents: BinaryIO) -> None: ...


class _Session(Protocol):
    def allocate_channel(self) -> tuple[int, Any]: ...

    def send_packet(self, cmd: int, data: bytes) -> None: ...

    def spawn(self, target: Callable[..., object], *args: object) -> object: ...

    def download_rate_estimate(self) -> int: ...

    def cache(self) -> _Cache | None: ...


def _describe(file_id: Any) -> str:
    try:
        return bytes(file_id).hex()
    except TypeError:
        return str(file_id)


def _stream_size(file: BinaryIO) -> int:
    try:
        return os.fstat(file.fileno()).st_size
    except (AttributeError, OSError, ValueError):
        position = file.tell()
        size = file.seek(0, io.SEEK_END)
        file.seek(position)
        return size


class StreamLoaderController:
    """Lets a reader steer and observe the background loading of one file."""

    def __init__(
        self,
        file_size: int,
        command_queue: queue.Queue | None = None,
        shared: AudioFileShared | None = None,
    ) -> None:
        self._command_queue = command_queue
        self._shared = shared
        self._file_size = file_size

    def __len__(self) -> int:
        return self._file_size

    def is_empty(self) -> bool:
        return self._file_size == 0

    def range_available(self, range: Range) -> bool:
        """Whether all of ``range`` has been downloaded."""
        if self._shared is not None:
            with self._shared.cond:
                downloaded = self._shared.download_status.downloaded
                return range.length <= downloaded.contained_length_from_value(range.start)
        return range.length <= len(self) - range.start

    def range_to_end_available(self) -> bool:
        """Whether everything from the read position to the end has been downloaded."""
        if self._shared is None:
            return True
        with self._shared.cond:
            read_position = min(self._shared.read_position, len(self))
        return self.range_available(Range(read_position, len(self) - read_position))

    def ping_time(self) -> float:
        """The estimated round trip time to the server, in seconds."""
        if self._shared is None:
            return 0.0
        with self._shared.cond:
            return self._shared.ping_time_seconds()

    def _send(self, command: StreamLoaderCommand) -> None:
        if self._command_queue is not None:
            self._command_queue.put(command)

    def fetch(self, range: Range) -> None:
        """Ask the loader to fetch ``range``."""
        self._send(StreamLoaderCommand.fetch(range))

    def fetch_blocking(self, range: Range) -> None:
        """Ask the loader to fetch ``range`` and wait until it has arrived."""
        if range.start >= len(self):
            range = Range(range.start, 0)
        elif range.end() > len(self):
            range = Range(range.start, len(self) - range.start)

        self.fetch(range)

        if self._shared is None:
            return
        shared = self._shared
        with shared.cond:
            status = shared.download_status
            while range.length > status.downloaded.contained_length_from_value(range.start):
                shared.cond.wait(DOWNLOAD_TIMEOUT)
                known = status.downloaded.union(status.requested)
                if range.length > known.contained_length_from_value(range.start):
                    # Neither downloaded nor pending, perhaps after a network error.
                    self.fetch(range)

    def _next_range(self, length: int) -> Range | None:
        if self._shared is None:
            return None
        with self._shared.cond:
            return Range(self._shared.read_position, length)

    def fetch_next(self, length: int) -> None:
        """Ask for ``length`` bytes from the current read position."""
        range = self._next_range(length)
        if range is not None:
            self.fetch(range)

    def fetch_next_blocking(self, length: int) -> None:
        """Fetch ``length`` bytes from the current read position and wait for them."""
        range = self._next_range(length)
        if range is not None:
            self.fetch_blocking(range)

    def set_random_access_mode(self) -> None:
        self._send(StreamLoaderCommand.random_access_mode())

    def set_stream_mode(self) -> None:
        self._send(StreamLoaderCommand.stream_mode())

    def close(self) -> None:
        """Stop loading; no more data is fetched for this file."""
        self._send(StreamLoaderCommand.close())


def _cleanup(read_file: BinaryIO, path: str | None) -> None:
    read_file.close()
    if path is not None:
        try:
            os.unlink(path)
        except OSError:
            pass


class AudioFileStreaming:
    """A file being downloaded; reads wait until the data they need has arrived."""

    def __init__(
        self,
        read_file: BinaryIO,
        command_queue: queue.Queue,
        shared: AudioFileShared,
        temp_path: str | None = None,
    ) -> None:
        self._read_file = read_file
        self._position = 0
        self._command_queue = command_queue
        self._shared = shared
        self._finalizer = weakref.finalize(self, _cleanup, read_file, temp_path)

    @classmethod
    def open(
        cls,
        session: _Session,
        initial_data_rx: Iterable[bytes],
        initial_data_length: int,
        initial_request_sent_time: float,
        headers: Iterable[tuple[int, bytes]],
        file_id: Any,
        complete: Callable[[BinaryIO], object],
        streaming_data_rate: int,
    ) -> AudioFileStreaming:
        """Wait for the file size header, then start the background loader."""
        size = None
        for header_id, data in headers:
            if header_id == _FILE_SIZE_HEADER:
                (words,) = struct.unpack(">I", bytes(data[:4]))
                size = words * 4
                break
        if size is None:
            raise ValueError("channel closed without a file size header")

        shared = AudioFileShared(file_id, size, streaming_data_rate)

        fd, path = tempfile.mkstemp(prefix="audiofetch-")
        write_file = os.fdopen(fd, "w+b")
        write_file.truncate(size)
        write_file.seek(0)
        read_file = open(path, "rb")
        temp_path: str | None = path
        try:
            os.unlink(path)
            temp_path = None
        except OSError:
            pass

        command_queue: queue.Queue = queue.Queue()
        session.spawn(
            audio_file_fetch,
            session,
            shared,
            initial_data_rx,
            initial_request_sent_time,
            initial_data_length,
            write_file,
            command_queue,
            complete,
        )
        return cls(read_file, command_queue, shared, temp_path)

    def _controller(self) -> StreamLoaderController:
        return StreamLoaderController(self._shared.file_size, self._command_queue, self._shared)

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes; a negative size reads to the end of the file.

        A read with a non-negative size may return fewer bytes than asked
        for: only data that is contiguous with the read position is returned.
        """
        if size is None or size < 0:
            chunks = []
            while chunk := self._read_chunk(self._shared.file_size):
                chunks.append(chunk)
            return b"".join(chunks)
        return self._read_chunk(size)

    def _read_chunk(self, size: int) -> bytes:
        shared = self._shared
        offset = self._position
        if offset >= shared.file_size:
            return b""

        length = min(size, shared.file_size - offset)

        with shared.cond:
            strategy = shared.download_strategy
            ping_time_seconds = shared.ping_time_seconds()

        if strategy is DownloadStrategy.STREAMING:
            read_ahead = max(
                int(READ_AHEAD_DURING_PLAYBACK * shared.stream_data_rate),
                int(READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS * ping_time_seconds * shared.stream_data_rate),
            )
            length_to_request = min(length + read_ahead, shared.file_size - offset)
        else:
            length_to_request = length

        ranges_to_request = RangeSet([Range(offset, length_to_request)])

        with shared.cond:
            status = shared.download_status
            ranges_to_request.subtract_range_set(status.downloaded)
            ranges_to_request.subtract_range_set(status.requested)
            for item in ranges_to_request:
                self._command_queue.put(StreamLoaderCommand.fetch(item))

            if length == 0:
                return b""

            waiting_reported = False
            while not status.downloaded.contains(offset):
                if shared.download_strategy is DownloadStrategy.STREAMING and not waiting_reported:
                    log.debug(
                        "Stream waiting for download of file position %d. "
                        "Downloaded ranges: %s. Pending ranges: %s",
                        offset,
                        status.downloaded,
                        status.requested.minus(status.downloaded),
                    )
                    waiting_reported = True
                shared.cond.wait(DOWNLOAD_TIMEOUT)
            available_length = status.downloaded.contained_length_from_value(offset)

        self._position = self._read_file.seek(offset)
        data = self._read_file.read(min(length, available_length))

        if waiting_reported:
            log.debug(
                "Read at position %d completed. %d bytes returned, %d bytes were requested.",
                offset,
                len(data),
                size,
            )

        self._position += len(data)
        with shared.cond:
            shared.read_position = self._position
        return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._position = self._read_file.seek(offset, whence)
        with self._shared.cond:
            self._shared.read_position = self._position
        return self._position


class AudioFile:
    """An audio file that is either read from the cache or streamed from the server."""

    def __init__(self, source: BinaryIO | AudioFileStreaming) -> None:
        self._source = source

    @classmethod
    def open(
        cls,
        session: _Session,
        file_id: Any,
        bytes_per_second: int,
        play_from_beginning: bool,
    ) -> AudioFile:
        """Open ``file_id`` from the cache, or start downloading it."""
        cache = session.cache()
        if cache is not None:
            cached = cache.file(file_id)
            if cached is not None:
                log.debug("File %s already in cache", _describe(file_id))
                return cls(cached)

        log.debug("Downloading file %s", _describe(file_id))

        initial_data_length = INITIAL_DOWNLOAD_SIZE
        if play_from_beginning:
            initial_data_length += max(
                int(READ_AHEAD_DURING_PLAYBACK * bytes_per_second),
                int(INITIAL_PING_TIME_ESTIMATE * READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS * bytes_per_second),
            )
        if initial_data_length % 4 != 0:
            initial_data_length += 4 - initial_data_length % 4

        sent_time = time.monotonic()
        headers, data = request_range(session, file_id, 0, initial_data_length).split()

        def on_complete(file: BinaryIO) -> None:
            try:
                completed_cache = session.cache()
                if completed_cache is not None:
                    log.debug("File %s complete, saving to cache", _describe(file_id))
                    completed_cache.save_file(file_id, file)
                else:
                    log.debug("File %s complete", _describe(file_id))
            finally:
                file.close()

        streaming = AudioFileStreaming.open(
            session,
            data,
            initial_data_length,
            sent_time,
            headers,
            file_id,
            on_complete,
            bytes_per_second,
        )
        return cls(streaming)

    def get_stream_loader_controller(self) -> StreamLoaderController:
        if isinstance(self._source, AudioFileStreaming):
            return self._source._controller()
        return StreamLoaderController(_stream_size(self._source))

    def is_cached(self) -> bool:
        return not isinstance(self._source, AudioFileStreaming)

    def read(self, size: int = -1) -> bytes:
        return self._source.read(size)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._source.seek(offset, whence)