# audiofetch

Streaming access to large remote audio files that are fetched in byte
ranges over a channel-based session. A file can be read and seeked as if it
were local. A read blocks until the bytes it needs have arrived. Meanwhile a
background task requests the missing ranges and, in streaming mode,
prefetches data ahead of the read position. Encrypted audio can be decrypted
on the fly with AES-128 in CTR mode.

## Installation

```
pip install audiofetch
```

For the test suite:

```
pip install "audiofetch[test]"
pytest
```

## Modules

- `audiofetch.range_set` holds `Range` and `RangeSet`. A `RangeSet` is a
  sorted set of disjoint, non-touching ranges with `add_range`,
  `subtract_range`, `union`, `minus`, `intersection`, `contains` and
  `contained_length_from_value`. `len()` of a set is the number of positions
  it covers.
- `audiofetch.decrypt` holds `AudioDecrypt`, which wraps a readable stream
  and decrypts its bytes with a 16-byte audio key. Its `seek` moves the
  keystream along with the position of the underlying stream.
- `audiofetch.state` holds the state that the reader and the fetch task
  share: `AudioFileShared`, `DownloadStatus`, `DownloadStrategy`,
  `CommandKind` and `StreamLoaderCommand`. It also holds the tuning
  constants, such as `MINIMUM_DOWNLOAD_SIZE`, `READ_AHEAD_DURING_PLAYBACK`
  and `MAX_PREFETCH_REQUESTS`.
- `audiofetch.receive` is the fetch side:
  - `build_range_request` builds the request packet body.
  - `request_range` sends a request on a newly allocated channel.
  - `receive_data` forwards the chunks received on one channel.
  - `AudioFileFetch` writes received data and decides what to request next.
  - `audio_file_fetch` is the loader loop.
- `audiofetch.streaming` is the read side: `AudioFile`,
  `AudioFileStreaming` and `StreamLoaderController`.

## Working with range sets

```python
from audiofetch.range_set import Range, RangeSet

downloaded = RangeSet()
downloaded.add_range(Range(0, 100))
downloaded.add_range(Range(100, 50))   # touching ranges merge
print(downloaded)                      # ([0, 149])

downloaded.subtract_range(Range(20, 10))
print(downloaded)                      # ([0, 19][30, 149])
print(downloaded.contained_length_from_value(40))  # 110
print(len(downloaded))                 # 140
```

## Decrypting audio

CTR mode is symmetric, so applying `AudioDecrypt` to plain bytes gives the
encrypted form:

```python
import io
from audiofetch.decrypt import AudioDecrypt

audio_key = bytes(16)                  # a made-up 16-byte audio key
plain = bytes(range(256)) * 40
encrypted = AudioDecrypt(audio_key, io.BytesIO(plain)).read()

reader = AudioDecrypt(audio_key, io.BytesIO(encrypted))
reader.seek(4096, io.SEEK_SET)
assert reader.read(1024) == plain[4096:5120]
```

A key that is not 16 bytes long raises `ValueError`.

## Opening a file

`AudioFile.open(session, file_id, bytes_per_second, play_from_beginning)`
first asks `session.cache()` for a cache. If the cache's `file(file_id)`
returns a file, that file is used as is. Otherwise the method sends a
request for the first block, waits for the file size header and starts the
background loader with `session.spawn`. When every byte has arrived, the
completed file is passed to the cache's `save_file(file_id, file)`, if there
is a cache.

`AudioFile.read(size)` and `AudioFile.seek(offset, whence)` work on either
kind of file. On a streamed file, a read with a non-negative size may
return fewer bytes than asked for, because only data contiguous with the
read position is returned. `read(-1)` reads to the end.

`get_stream_loader_controller()` returns a `StreamLoaderController`, which
offers the following:

- `set_stream_mode()` switches on read-ahead and prefetching, and
  `set_random_access_mode()` switches them off.
- `fetch(range)` and `fetch_next(length)` ask for data. `fetch_blocking`
  and `fetch_next_blocking` also wait until the data has arrived.
- `range_available(range)` and `range_to_end_available()` report what has
  been downloaded.
- `ping_time()` gives the current round-trip estimate in seconds.
- `close()` stops the loader.

For a cached file, the controller reports everything as available and
ignores commands.

## The session object

The application supplies the session. It must provide these methods:

- `allocate_channel()` returns `(channel_id, channel)`. `channel.split()`
  returns `(headers, data)`. `headers` iterates over `(header_id, bytes)`
  pairs, and `data` iterates over received chunks. An exception raised by
  the data iterator counts as a channel error.
- `send_packet(cmd, data)` sends one packet.
- `spawn(target, *args)` runs `target(*args)` in the background, for
  example on a thread.
- `download_rate_estimate()` returns bytes per second.
- `cache()` returns an object with `file` and `save_file`, or `None`.

## What it does not do

The package makes no network connections, performs no authentication and
contains no session, channel or cache implementation of its own; all of
these come from the session object passed in. It does not decode or play
audio either: it only delivers the bytes of a file.