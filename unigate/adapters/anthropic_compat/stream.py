"""Incremental Anthropic event stream -> chat-completion chunk stream."""

from __future__ import annotations

import json
from typing import AsyncIterable, AsyncIterator

from unigate.adapters.openai_compat.stream_utils import (
    _extract_sse_data_payload,
    _stream_delta_sse_chunk,
    _stream_done_sse_chunk,
    _stream_finish_sse_chunk,
)
from unigate.util.logger import logger


class StreamTranscoder:
    """Rewrites upstream SSE events as they arrive.

    Only an incomplete trailing line is held between network chunks.
    ``content_block_delta`` events with text become delta chunks,
    ``message_stop`` becomes a finish chunk plus ``[DONE]``; everything else
    is dropped and lines that fail to decode are skipped.
    """

    def __init__(self, model: str) -> None:
        self.model = model
        self._pending = b""
        self.finished = False

    def _convert_line(self, line: bytes) -> list[bytes]:
        data = _extract_sse_data_payload(line)
        if data is None:
            return []
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("skip undecodable stream line bytes=%d", len(line))
            return []
        if not isinstance(event, dict):
            return []

        event_type = event.get("type")
        if event_type == "content_block_delta":
            delta = event.get("delta")
            text = delta.get("text") if isinstance(delta, dict) else None
            if isinstance(text, str) and text:
                return [_stream_delta_sse_chunk(self.model, text)]
            return []
        if event_type == "message_stop":
            self.finished = True
            return [_stream_finish_sse_chunk(self.model, "stop"), _stream_done_sse_chunk()]
        return []

    def feed(self, chunk: bytes) -> list[bytes]:
        buffered = self._pending + chunk
        *lines, self._pending = buffered.split(b"\n")
        frames: list[bytes] = []
        for line in lines:
            frames.extend(self._convert_line(line))
        return frames

    def flush(self) -> list[bytes]:
        remainder, self._pending = self._pending, b""
        return self._convert_line(remainder) if remainder.strip() else []

    async def transcode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for chunk in chunks:
            for frame in self.feed(chunk):
                yield frame
        for frame in self.flush():
            yield frame
