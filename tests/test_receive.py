import io
import queue
import threading
import time

import pytest

from audiofetch.range_set import Range, RangeSet
from audiofetch.receive import (
    AudioFileFetch,
    PartialFileData,
    ResponseTime,
    audio_file_fetch,
    build_range_request,
    receive_data,
    request_range,
)
from audiofetch.state import (
    MAXIMUM_ASSUMED_PING_TIME,
    MINIMUM_DOWNLOAD_SIZE,
    AudioFileShared,
    DownloadStrategy,
    StreamLoaderCommand,
)

FILE_ID = bytes(range(1, 21))


class FakeChannel:
    def __init__(self, chunk_size):
        self.payload = b""
        self.chunk_size = chunk_size

    def _data(self):
        payload = self.payload
        for start in range(0, len(payload), self.chunk_size):
            yield payload[start : start + self.chunk_size]

    def split(self):
        return (), self._data()


class FakeSession:
    def __init__(self, content=b"", threaded=False, chunk_size=4096):
        self.content = content
        self.threaded = threaded
        self.chunk_size = chunk_size
        self.packets = []
        self.spawned = []
        self.threads = []
        self.channels = {}
        self.rate = 0
        self._next_id = 0

    def allocate_channel(self):
        channel_id = self._next_id
        self._next_id += 1
        channel = FakeChannel(self.chunk_size)
        self.channels[channel_id] = channel
        return channel_id, channel

    def send_packet(self, cmd, data):
        self.packets.append((cmd, data))
        channel_id = int.from_bytes(data[:2], "big")
        start = int.from_bytes(data[-8:-4], "big") * 4
        end = int.from_bytes(data[-4:], "big") * 4
        self.channels[channel_id].payload = self.content[start:end]

    def spawn(self, target, *args):
        if self.threaded:
            thread = threading.Thread(target=target, args=args, daemon=True)
            thread.start()
            self.threads.append(thread)
        else:
            self.spawned.append((target, args))

    def download_rate_estimate(self):
        return self.rate


def drain(q):
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


def _failing_channel():
    yield b"abcd"
    raise ConnectionError("channel closed")


def make_fetch(file_size, session=None, output=None):
    session = session or FakeSession()
    shared = AudioFileShared(FILE_ID, file_size, 1000)
    completed = []
    fetch = AudioFileFetch(
        session, shared, output or io.BytesIO(bytes(file_size)), queue.Queue(), completed.append
    )
    return fetch, session, shared, completed


def test_build_range_request_layout():
    packet = build_range_request(7, FILE_ID, 16, 32)
    assert len(packet) == 16 + len(FILE_ID) + 8
    assert packet[:2] == (7).to_bytes(2, "big")
    assert packet[2:4] == b"\x00\x01"
    assert packet[4:8] == bytes(4)
    assert packet[8:12] == (0x00009C40).to_bytes(4, "big")
    assert packet[12:16] == (0x00020000).to_bytes(4, "big")
    assert packet[16:36] == FILE_ID
    assert int.from_bytes(packet[36:40], "big") == 16 // 4
    assert int.from_bytes(packet[40:44], "big") == (16 + 32) // 4


@pytest.mark.parametrize("offset,length", [(2, 8), (4, 6)])
def test_build_range_request_rejects_misalignment(offset, length):
    with pytest.raises(ValueError):
        build_range_request(0, FILE_ID, offset, length)


def test_request_range_sends_packet_and_returns_channel():
    session = FakeSession(content=bytes(range(64)))
    channel = request_range(session, FILE_ID, 8, 16)
    assert session.packets[0][0] == 0x8
    assert session.packets[0][1] == build_range_request(0, FILE_ID, 8, 16)
    _headers, data = channel.split()
    assert b"".join(data) == bytes(range(64))[8:24]


def test_receive_data_forwards_chunks_and_measures_ping():
    shared = AudioFileShared(FILE_ID, 100, 10)
    q = queue.Queue()
    receive_data(shared, q, iter([b"ab", b"cd"]), 8, 4, time.monotonic())
    items = drain(q)
    assert isinstance(items[0], ResponseTime)
    assert 0 <= items[0].duration <= MAXIMUM_ASSUMED_PING_TIME
    assert items[1:] == [PartialFileData(8, b"ab"), PartialFileData(10, b"cd")]
    assert shared.number_of_open_requests == 0


def test_receive_data_caps_ping_time():
    shared = AudioFileShared(FILE_ID, 100, 10)
    q = queue.Queue()
    receive_data(shared, q, iter([b"abcd"]), 0, 4, time.monotonic() - 10)
    assert drain(q)[0] == ResponseTime(MAXIMUM_ASSUMED_PING_TIME)


def test_receive_data_skips_ping_when_other_requests_open():
    shared = AudioFileShared(FILE_ID, 100, 10)
    shared.number_of_open_requests = 1
    q = queue.Queue()
    receive_data(shared, q, iter([b"abcd"]), 0, 4, time.monotonic())
    assert drain(q) == [PartialFileData(0, b"abcd")]
    assert shared.number_of_open_requests == 1


def test_receive_data_short_response_unrequests_missing_part():
    shared = AudioFileShared(FILE_ID, 100, 10)
    shared.download_status.requested.add_range(Range(0, 8))
    q = queue.Queue()
    receive_data(shared, q, iter([b"abcd"]), 0, 8, time.monotonic())
    assert shared.download_status.requested == RangeSet([Range(0, 4)])


def test_receive_data_channel_error_unrequests_missing_part():
    shared = AudioFileShared(FILE_ID, 100, 10)
    shared.download_status.requested.add_range(Range(0, 12))
    q = queue.Queue()
    receive_data(shared, q, _failing_channel(), 0, 12, time.monotonic())
    assert shared.download_status.requested == RangeSet([Range(0, 4)])
    assert shared.number_of_open_requests == 0


def test_handle_file_data_ping_uses_median_of_three():
    fetch, _, shared, _ = make_fetch(100)
    fetch.handle_file_data(ResponseTime(0.1))
    assert shared.ping_time_ms == 100
    fetch.handle_file_data(ResponseTime(0.4))
    fetch.handle_file_data(ResponseTime(0.25))
    assert shared.ping_time_ms == 250
    fetch.handle_file_data(ResponseTime(0.9))
    assert len(fetch.network_response_times) == 3
    assert shared.ping_time_ms == 400


def test_handle_file_data_writes_and_completes():
    output = io.BytesIO(bytes(8))
    fetch, _, shared, completed = make_fetch(8, output=output)
    assert fetch.handle_file_data(PartialFileData(4, b"wxyz")) is False
    assert shared.download_status.downloaded == RangeSet([Range(4, 4)])
    assert completed == []
    assert fetch.handle_file_data(PartialFileData(0, b"abcd")) is True
    assert completed == [output]
    assert output.tell() == 0
    assert output.getvalue() == b"abcdwxyz"


def test_finish_twice_raises():
    fetch, _, _, completed = make_fetch(8)
    fetch.finish()
    assert len(completed) == 1
    with pytest.raises(RuntimeError):
        fetch.finish()


def test_stream_loader_commands():
    fetch, _, shared, _ = make_fetch(100)
    assert fetch.handle_stream_loader_command(StreamLoaderCommand.stream_mode()) is False
    assert fetch.get_download_strategy() is DownloadStrategy.STREAMING
    assert fetch.handle_stream_loader_command(StreamLoaderCommand.random_access_mode()) is False
    assert shared.download_strategy is DownloadStrategy.RANDOM_ACCESS
    assert fetch.handle_stream_loader_command(StreamLoaderCommand.close()) is True


def test_fetch_command_requests_range():
    fetch, session, shared, _ = make_fetch(1000)
    fetch.handle_stream_loader_command(StreamLoaderCommand.fetch(Range(0, 10)))
    assert shared.download_status.requested == RangeSet([Range(0, 1000)])
    assert len(session.packets) == 1
    assert len(session.spawned) == 1


def test_download_range_aligns_and_widens():
    fetch, session, shared, _ = make_fetch(100_000)
    fetch.download_range(5, 10)
    requested = list(shared.download_status.requested)
    assert len(requested) == 1
    item = requested[0]
    assert item.start % 4 == 0 and item.length % 4 == 0
    assert item.start <= 5 and item.end() >= 15
    assert item.length >= MINIMUM_DOWNLOAD_SIZE
    assert session.spawned[0][1][3:5] == (item.start, item.length)


def test_download_range_skips_known_data():
    fetch, session, shared, _ = make_fetch(100_000)
    shared.download_status.downloaded.add_range(Range(0, MINIMUM_DOWNLOAD_SIZE))
    fetch.download_range(0, MINIMUM_DOWNLOAD_SIZE)
    assert session.packets == []
    assert shared.download_status.requested.is_empty()


def test_download_range_past_end_does_nothing():
    fetch, session, shared, _ = make_fetch(1000)
    fetch.download_range(1000, 10)
    assert session.packets == []
    assert shared.download_status.requested.is_empty()


def test_pre_fetch_prefers_tail_after_read_position():
    fetch, _, shared, _ = make_fetch(100_000)
    shared.read_position = 50_000
    fetch.pre_fetch_more_data(20_000, 1)
    requested = list(shared.download_status.requested)
    assert len(requested) == 1
    assert requested[0].start == 50_000
    assert requested[0].length >= 20_000


def test_pre_fetch_with_nothing_missing_sends_nothing():
    fetch, session, shared, _ = make_fetch(1000)
    shared.download_status.downloaded.add_range(Range(0, 1000))
    fetch.pre_fetch_more_data(500, 4)
    assert session.packets == []


def test_audio_file_fetch_downloads_whole_file():
    size = 40_000
    content = bytes(i % 251 for i in range(size))
    session = FakeSession(content=content, threaded=True)
    shared = AudioFileShared(FILE_ID, size, 1000)
    initial_length = 16_384
    _headers, data = request_range(session, FILE_ID, 0, initial_length).split()
    commands = queue.Queue()
    commands.put(StreamLoaderCommand.fetch(Range(initial_length, size - initial_length)))
    completed = []

    worker = threading.Thread(
        target=audio_file_fetch,
        args=(session, shared, data, time.monotonic(), initial_length,
              io.BytesIO(bytes(size)), commands, completed.append),
        daemon=True,
    )
    worker.start()
    worker.join(10)

    assert not worker.is_alive()
    assert len(completed) == 1
    assert completed[0].getvalue() == content
    assert shared.download_status.downloaded.contained_length_from_value(0) == size


def test_audio_file_fetch_stops_on_close():
    size = 100_000
    session = FakeSession(content=bytes(size), threaded=False)
    shared = AudioFileShared(FILE_ID, size, 1000)
    commands = queue.Queue()
    commands.put(StreamLoaderCommand.close())
    completed = []

    audio_file_fetch(
        session, shared, iter(()), time.monotonic(), 16_384,
        io.BytesIO(bytes(size)), commands, completed.append,
    )

    assert completed == []
    assert shared.download_status.requested == RangeSet([Range(0, 16_384)])
    assert len(session.spawned) == 1