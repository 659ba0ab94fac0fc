"""Incremental decoder for ``text/event-stream`` bodies.

Chunks are fed as they arrive from the transport. Bytes are decoded with an
incremental UTF-8 decoder so a multi-byte character split across two chunks
is reassembled, and a block is only turned into a :class:`Frame` once its
terminating blank line has been seen.
"""

from __future__ import annotations

import asyncio
import codecs
import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator

from loguru import logger

from forkchat.errors import StreamCancelled

EVENT = "event"
RETRY_INTERVAL = "retry-interval"

_LINE_END = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class Frame:
    kind: str
    data: str
    event: str = "message"
    id: str | None = None
    retry: int | None = None


class FrameParser:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._seen_input = False
        self._reset_block()

    def feed(self, chunk: bytes | str) -> list[Frame]:
        """Consume one transport chunk and return the frames it completed."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        if not self._seen_input:
            self._seen_input = True
            if text.startswith("\ufeff"):
                text = text[1:]
        self._buffer += text
        return self._drain()

    def close(self) -> list[Frame]:
        """Flush the decoder and return any frames completed by a trailing CR.

        An unterminated trailing block is discarded.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        frames: list[Frame] = []
        if self._buffer.endswith("\r"):
            # No LF can follow any more, so the held-back CR ends its line.
            self._buffer = self._buffer[:-1] + "\n"
            frames = self._drain()
        if self._buffer or self._has_fields:
            logger.debug(f"Discarding incomplete event-stream block ({len(self._buffer)} chars buffered)")
        self._buffer = ""
        self._reset_block()
        return frames

    def _drain(self) -> list[Frame]:
        frames: list[Frame] = []
        pos = 0
        while True:
            match = _LINE_END.search(self._buffer, pos)
            if match is None:
                break
            # A trailing CR may be the first half of a CRLF split across chunks.
            if match.group() == "\r" and match.end() == len(self._buffer):
                break
            line = self._buffer[pos:match.start()]
            pos = match.end()
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        self._buffer = self._buffer[pos:]
        return frames

    def _process_line(self, line: str) -> Frame | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data_lines.append(value)
            self._has_fields = True
        elif field == "event":
            self._event_type = value
            self._has_fields = True
        elif field == "id":
            if "\0" not in value:
                self._event_id = value
                self._has_fields = True
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> Frame | None:
        frame: Frame | None = None
        if self._has_fields:
            frame = Frame(
                kind=EVENT,
                data="\n".join(self._data_lines),
                event=self._event_type or "message",
                id=self._event_id,
                retry=self._retry,
            )
        elif self._retry is not None:
            frame = Frame(kind=RETRY_INTERVAL, data=str(self._retry), retry=self._retry)
        self._reset_block()
        return frame

    def _reset_block(self) -> None:
        self._data_lines: list[str] = []
        self._event_type: str | None = None
        self._event_id: str | None = None
        self._retry: int | None = None
        self._has_fields = False


def check_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise StreamCancelled("Stream cancelled by caller")


async def iter_frames(
    chunks: AsyncIterable[bytes | str],
    *,
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[Frame]:
    """Lazily parse frames from a chunk source, one connection per call."""
    parser = FrameParser()
    async for chunk in chunks:
        check_cancelled(cancel)
        for frame in parser.feed(chunk):
            check_cancelled(cancel)
            yield frame
    for frame in parser.close():
        check_cancelled(cancel)
        yield frame
