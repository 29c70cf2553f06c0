"""
Log Stream Module

Demultiplexes the engine's log stream. For containers without a TTY the
engine interleaves stdout and stderr as frames, each prefixed by an 8 byte
header: stream id, three zero bytes, big-endian payload length. TTY
containers (Config.Tty set) send raw bytes, which are reported as stdout.

``iter_frames`` is the producer (incremental, works on arbitrary chunking);
``collect_logs`` is the buffering consumer used by the engine client.
"""

import struct
from dataclasses import dataclass
from typing import Iterable, Iterator

STDIN = 0
STDOUT = 1
STDERR = 2
SYSTEMERR = 3

_HEADER = struct.Struct(">BxxxL")
_STREAM_NAMES = {STDIN: "stdout", STDOUT: "stdout", STDERR: "stderr"}


class LogStreamError(Exception):
    """Log stream could not be demultiplexed"""


@dataclass(frozen=True)
class LogFrame:
    stream: str
    data: bytes


@dataclass(frozen=True)
class ContainerLogs:
    stdout: str = ""
    stderr: str = ""

    def render(self) -> str:
        return f"STDOUT:\n{self.stdout}\nSTDERR:\n{self.stderr}"


def iter_frames(chunks: Iterable[bytes], tty: bool = False) -> Iterator[LogFrame]:
    """Yield frames from raw log chunks of any size.

    ``tty`` must match the container's ``Config.Tty``: TTY output carries no
    frame headers and is passed through as stdout.
    """
    if tty:
        for chunk in chunks:
            if chunk:
                yield LogFrame("stdout", bytes(chunk))
        return

    buffer = bytearray()
    for chunk in chunks:
        if not chunk:
            continue
        buffer.extend(chunk)

        while len(buffer) >= _HEADER.size:
            stream_id, size = _HEADER.unpack_from(buffer)
            end = _HEADER.size + size
            if len(buffer) < end:
                break
            data = bytes(buffer[_HEADER.size : end])
            del buffer[:end]
            if stream_id == SYSTEMERR:
                raise LogStreamError(
                    "engine reported: " + data.decode("utf-8", errors="replace")
                )
            if stream_id not in _STREAM_NAMES:
                raise LogStreamError(f"unrecognized stream id {stream_id}")
            yield LogFrame(_STREAM_NAMES[stream_id], data)

    if buffer:
        raise LogStreamError(
            f"log stream ended inside a frame ({len(buffer)} bytes left)"
        )


def collect_logs(frames: Iterable[LogFrame]) -> ContainerLogs:
    """Buffer every frame and split it into stdout and stderr text."""
    out = bytearray()
    err = bytearray()
    for frame in frames:
        if frame.stream == "stderr":
            err.extend(frame.data)
        else:
            out.extend(frame.data)
    return ContainerLogs(
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )
