"""Background fetching of audio file ranges over a channel-based session."""

from __future__ import annotations

import logging
import struct
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, BinaryIO, Protocol

from .range_set import Range, RangeSet
from .state import (
    FAST_PREFETCH_THRESHOLD_FACTOR,
    MAX_PREFETCH_REQUESTS,
    MAXIMUM_ASSUMED_PING_TIME,
    MINIMUM_DOWNLOAD_SIZE,
    PREFETCH_THRESHOLD_FACTOR,
    AudioFileShared,
    CommandKind,
    DownloadStrategy,
    StreamLoaderCommand,
)

log = logging.getLogger(__name__)

_REQUEST_RANGE_PACKET = 0x8
_HEADER = struct.Struct(">HBBHIII")
_BOUNDS = struct.Struct(">II")


class _Channel(Protocol):
    def split(self) -> tuple[Iterable[Any], Iterable[bytes]]: ...


class _Session(Protocol):
    def allocate_channel(self) -> tuple[int, _Channel]: ...

    def send_packet(self, cmd: int, data: bytes) -> None: ...

    def spawn(self, target: Callable[..., object], *args: object) -> object: ...

    def download_rate_estimate(self) -> int: ...


class _Queue(Protocol):
    def put(self, item: Any) -> None: ...

    def get(self) -> Any: ...


@dataclass(frozen=True)
class ResponseTime:
    """Time in seconds between sending a request and receiving its first data."""

    duration: float


@dataclass(frozen=True)
class PartialFileData:
    """A chunk of file data received for position ``offset``."""

    offset: int
    data: bytes


def build_range_request(channel_id: int, file_id: bytes, offset: int, length: int) -> bytes:
    """Build the packet body that requests ``length`` bytes at ``offset``."""
    if offset % 4 != 0:
        raise ValueError("Range request start positions must be aligned by 4 bytes.")
    if length % 4 != 0:
        raise ValueError("Range request range lengths must be aligned by 4 bytes.")
    start = offset // 4
    end = (offset + length) // 4
    header = _HEADER.pack(channel_id, 0, 1, 0x0000, 0x00000000, 0x00009C40, 0x00020000)
    return header + bytes(file_id) + _BOUNDS.pack(start, end)


def request_range(session: _Session, file_id: bytes, offset: int, length: int) -> _Channel:
    """Allocate a channel, send a range request on it and return the channel."""
    channel_id, channel = session.allocate_channel()
    packet = build_range_request(channel_id, file_id, offset, length)
    session.send_packet(_REQUEST_RANGE_PACKET, packet)
    return channel


def receive_data(
    shared: AudioFileShared,
    file_data_queue: _Queue,
    data_rx: Iterable[bytes],
    initial_data_offset: int,
    initial_request_length: int,
    request_sent_time: float,
) -> None:
    """Forward the chunks of one range request to ``file_data_queue``.

    ``request_sent_time`` is a ``time.monotonic()`` value. Any part of the
    range that never arrives is removed from the requested set again.
    """
    data_offset = initial_data_offset
    request_length = initial_request_length

    with shared.cond:
        old_number_of_requests = shared.number_of_open_requests
        shared.number_of_open_requests += 1
    measure_ping_time = old_number_of_requests == 0

    failed = False
    try:
        for chunk in data_rx:
            if measure_ping_time:
                duration = min(time.monotonic() - request_sent_time, MAXIMUM_ASSUMED_PING_TIME)
                file_data_queue.put(ResponseTime(duration))
                measure_ping_time = False
            chunk = bytes(chunk)
            file_data_queue.put(PartialFileData(data_offset, chunk))
            data_offset += len(chunk)
            if request_length < len(chunk):
                log.warning(
                    "Data receiver for range %d (+%d) received more data from server than requested.",
                    initial_data_offset,
                    initial_request_length,
                )
                request_length = 0
            else:
                request_length -= len(chunk)
            if request_length == 0:
                break
    except Exception:  # the channel reports failures by raising from its iterator
        failed = True

    with shared.cond:
        if request_length > 0:
            shared.download_status.requested.subtract_range(Range(data_offset, request_length))
            shared.cond.notify_all()
        shared.number_of_open_requests -= 1

    if failed:
        log.warning(
            "Error from channel for data receiver for range %d (+%d).",
            initial_data_offset,
            initial_request_length,
        )
    elif request_length > 0:
        log.warning(
            "Data receiver for range %d (+%d) received less data from server than requested.",
            initial_data_offset,
            initial_request_length,
        )


class AudioFileFetch:
    """Writes received data to ``output`` and decides what to request next."""

    def __init__(
        self,
        session: _Session,
        shared: AudioFileShared,
        output: BinaryIO,
        file_data_queue: _Queue,
        complete: Callable[[BinaryIO], object],
    ) -> None:
        self.session = session
        self.shared = shared
        self.output: BinaryIO | None = output
        self.file_data_queue = file_data_queue
        self.complete: Callable[[BinaryIO], object] | None = complete
        self.network_response_times: list[float] = []

    def get_download_strategy(self) -> DownloadStrategy:
        with self.shared.cond:
            return self.shared.download_strategy

    def download_range(self, offset: int, length: int) -> None:
        """Request a range, widened and aligned, minus what is already known."""
        file_size = self.shared.file_size
        length = max(length, MINIMUM_DOWNLOAD_SIZE)

        if offset >= file_size or length == 0:
            return
        if offset + length > file_size:
            length = file_size - offset
        if offset % 4 != 0:
            length += offset % 4
            offset -= offset % 4
        if length % 4 != 0:
            length += 4 - (length % 4)

        ranges_to_request = RangeSet([Range(offset, length)])

        with self.shared.cond:
            status = self.shared.download_status
            ranges_to_request.subtract_range_set(status.downloaded)
            ranges_to_request.subtract_range_set(status.requested)

            for item in ranges_to_request:
                _headers, data = request_range(
                    self.session, self.shared.file_id, item.start, item.length
                ).split()
                status.requested.add_range(item)
                self.session.spawn(
                    receive_data,
                    self.shared,
                    self.file_data_queue,
                    data,
                    item.start,
                    item.length,
                    time.monotonic(),
                )

    def pre_fetch_more_data(self, num_bytes: int, max_requests_to_send: int) -> None:
        """Request up to ``num_bytes`` of missing data, preferring the tail."""
        bytes_to_go = num_bytes
        requests_to_go = max_requests_to_send
        file_size = self.shared.file_size

        while bytes_to_go > 0 and requests_to_go > 0:
            missing_data = RangeSet([Range(0, file_size)])
            with self.shared.cond:
                status = self.shared.download_status
                missing_data.subtract_range_set(status.downloaded)
                missing_data.subtract_range_set(status.requested)
                read_position = self.shared.read_position

            tail_start = min(read_position, file_size)
            tail_end = RangeSet([Range(tail_start, file_size - tail_start)]).intersection(
                missing_data
            )

            if not tail_end.is_empty():
                candidate = tail_end.get_range(0)
            elif not missing_data.is_empty():
                candidate = missing_data.get_range(0)
            else:
                return

            length = min(candidate.length, bytes_to_go)
            self.download_range(candidate.start, length)
            requests_to_go -= 1
            bytes_to_go -= length

    def handle_file_data(self, data: ResponseTime | PartialFileData) -> bool:
        """Process one received item. Return True once the file is complete."""
        if isinstance(data, ResponseTime):
            times = self.network_response_times
            while len(times) >= 3:
                del times[0]
            times.append(data.duration)

            if len(times) == 1:
                ping_time = times[0]
            elif len(times) == 2:
                ping_time = (times[0] + times[1]) / 2
            else:
                ping_time = sorted(times)[1]

            ping_ms = int(round(ping_time * 1_000_000)) // 1000
            with self.shared.cond:
                self.shared.ping_time_ms = ping_ms
            return False

        if self.output is None:
            raise RuntimeError("received file data after the download was finished")
        self.output.seek(data.offset)
        self.output.write(data.data)

        with self.shared.cond:
            downloaded = self.shared.download_status.downloaded
            downloaded.add_range(Range(data.offset, len(data.data)))
            self.shared.cond.notify_all()
            full = downloaded.contained_length_from_value(0) >= self.shared.file_size

        if full:
            self.finish()
            return True
        return False

    def handle_stream_loader_command(self, cmd: StreamLoaderCommand) -> bool:
        """Carry out a loader command. Return True when loading should stop."""
        if cmd.kind is CommandKind.FETCH:
            if cmd.range is None:
                raise ValueError("fetch command carries no range")
            self.download_range(cmd.range.start, cmd.range.length)
        elif cmd.kind is CommandKind.RANDOM_ACCESS_MODE:
            with self.shared.cond:
                self.shared.download_strategy = DownloadStrategy.RANDOM_ACCESS
        elif cmd.kind is CommandKind.STREAM_MODE:
            with self.shared.cond:
                self.shared.download_strategy = DownloadStrategy.STREAMING
        elif cmd.kind is CommandKind.CLOSE:
            return True
        return False

    def finish(self) -> None:
        """Hand the completed output, rewound to the start, to the completion callback."""
        if self.output is None or self.complete is None:
            raise RuntimeError("download already finished")
        output, complete = self.output, self.complete
        self.output = None
        self.complete = None
        output.seek(0)
        complete(output)

    def _prefetch_if_needed(self) -> None:
        with self.shared.cond:
            open_requests = self.shared.number_of_open_requests
            status = self.shared.download_status
            bytes_pending = len(status.requested.minus(status.downloaded))
            ping_time_seconds = self.shared.ping_time_seconds()
        if open_requests >= MAX_PREFETCH_REQUESTS:
            return
        max_requests_to_send = MAX_PREFETCH_REQUESTS - open_requests
        download_rate = self.session.download_rate_estimate()

        desired_pending_bytes = max(
            int(PREFETCH_THRESHOLD_FACTOR * ping_time_seconds * self.shared.stream_data_rate),
            int(FAST_PREFETCH_THRESHOLD_FACTOR * ping_time_seconds * download_rate),
        )
        if bytes_pending < desired_pending_bytes:
            self.pre_fetch_more_data(desired_pending_bytes - bytes_pending, max_requests_to_send)


def audio_file_fetch(
    session: _Session,
    shared: AudioFileShared,
    initial_data_rx: Iterable[bytes],
    initial_request_sent_time: float,
    initial_data_length: int,
    output: BinaryIO,
    command_queue: _Queue,
    complete: Callable[[BinaryIO], object],
) -> None:
    """Run the loader until the file is complete or a close command arrives.

    ``command_queue`` carries both loader commands and received data; putting
    ``None`` on it stops the loader as well.
    """
    with shared.cond:
        shared.download_status.requested.add_range(Range(0, initial_data_length))

    session.spawn(
        receive_data,
        shared,
        command_queue,
        initial_data_rx,
        0,
        initial_data_length,
        initial_request_sent_time,
    )

    fetch = AudioFileFetch(session, shared, output, command_queue, complete)

    while True:
        item = command_queue.get()
        if item is None:
            break
        if isinstance(item, StreamLoaderCommand):
            stop = fetch.handle_stream_loader_command(item)
        else:
            stop = fetch.handle_file_data(item)
        if stop:
            break

        if fetch.get_download_strategy() is DownloadStrategy.STREAMING:
            fetch._prefetch_if_needed()