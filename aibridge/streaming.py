"""Decoder for provider event streams.

Providers stream newline-delimited event blocks, each terminated by a blank
line::

    data: {"choices":[{"delta":{"content":"Hi"}}]}

    data: [DONE]

:class:`StreamDecoder` turns raw byte chunks into text deltas. The end of the
stream is signalled by the byte source only; ``data: [DONE]`` is consumed and
ignored. Leftover bytes at the end of the stream mean the stream was
truncated and fail the request.
"""

import codecs
import inspect
import json
import logging
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, List, Optional

from aibridge.errors import StreamProtocolError

logger = logging.getLogger(__name__)

BLOCK_TERMINATOR = "\n\n"
ERROR_PREFIX = "error:"
DONE_SENTINEL = "data: [DONE]"
DATA_PREFIX = "data:"


class StreamState(str, Enum):
    ACCUMULATING = "accumulating"
    EVENT_READY = "event_ready"
    DONE = "done"
    ERROR = "error"


def extract_delta(payload: Any) -> str:
    """Return the text delta of one event payload.

    Chat streams nest it under ``choices[0].delta.content``, legacy completion
    streams use ``choices[0].text``. A ``choices`` field that is not a list
    raises :class:`TypeError`; anything else yields an empty delta.
    """
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if choices is not None and not isinstance(choices, list):
        raise TypeError(f"choices must be a list, not {type(choices).__name__}")
    if not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    delta = choice.get("delta")
    if isinstance(delta, dict) and delta.get("content"):
        return str(delta["content"])
    if choice.get("text"):
        return str(choice["text"])
    return ""


class StreamDecoder:
    """Incremental, single-consumer decoder for one streaming response."""

    def __init__(self) -> None:
        self.state = StreamState.ACCUMULATING
        self.buffer = ""
        self._parts: List[str] = []
        self._utf8 = codecs.getincrementaldecoder("utf-8")()

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one raw chunk and return the deltas of every completed block."""
        self._ensure_open()
        if chunk:
            try:
                self.buffer += self._utf8.decode(chunk)
            except UnicodeDecodeError as exc:
                self._fail(f"Stream is not valid UTF-8: {exc}")
            self.buffer = self.buffer.replace("\r\n", "\n")

        deltas: List[str] = []
        while True:
            self.buffer = self.buffer.lstrip("\n")
            end = self.buffer.find(BLOCK_TERMINATOR)
            if end < 0:
                break
            block = self.buffer[:end].strip()
            self.buffer = self.buffer[end + len(BLOCK_TERMINATOR):]

            self.state = StreamState.EVENT_READY
            delta = self._process_block(block)
            self.state = StreamState.ACCUMULATING
            if delta is not None:
                self._parts.append(delta)
                deltas.append(delta)
        return deltas

    def close(self) -> str:
        """Signal end of stream and return the full accumulated text."""
        self._ensure_open()
        try:
            self.buffer += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            self._fail(f"Stream ended inside a UTF-8 sequence: {exc}")

        leftover = self.buffer.strip()
        if leftover:
            logger.warning("Unexpected end of stream, with unprocessed data: %r", leftover)
            self._fail(f"Unexpected end of stream, with unprocessed data: {leftover!r}")

        self.state = StreamState.DONE
        return self.text

    def _process_block(self, block: str) -> Optional[str]:
        if block.startswith(ERROR_PREFIX):
            first_line = block.split("\n", 1)[0]
            self._fail(f"Unexpected stream request error: {first_line[len(ERROR_PREFIX):].strip()}")

        if block.startswith(DONE_SENTINEL):
            return None

        if block.startswith(DATA_PREFIX) and block[len(DATA_PREFIX):].lstrip().startswith("{"):
            try:
                payload = json.loads(block[len(DATA_PREFIX):].strip())
            except json.JSONDecodeError as exc:
                self._fail(f"Invalid JSON in data event: {exc}")
            try:
                return extract_delta(payload)
            except (TypeError, KeyError, IndexError, AttributeError) as exc:
                self._fail(f"Unexpected data event payload: {exc!r}")

        logger.warning("Unexpected data event format: %r", block)
        self._fail(f"Unexpected data event format: {block!r}")

    def _ensure_open(self) -> None:
        if self.state in (StreamState.DONE, StreamState.ERROR):
            raise StreamProtocolError(f"Stream decoder already finished ({self.state.value}).")

    def _fail(self, detail: str) -> None:
        self.state = StreamState.ERROR
        raise StreamProtocolError(detail)


async def iter_deltas(
    chunks: AsyncIterable[bytes], decoder: Optional[StreamDecoder] = None
) -> AsyncIterator[str]:
    """Yield decoded text deltas in arrival order until the byte source ends."""
    decoder = decoder or StreamDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
    decoder.close()


async def notify(listener: Optional[Callable[[str], Any]], delta: str) -> None:
    """Deliver ``delta`` to a sync or async listener."""
    if listener is None:
        return
    result = listener(delta)
    if inspect.isawaitable(result):
        await result


async def decode_stream(
    chunks: AsyncIterable[bytes],
    listener: Optional[Callable[[str], Any]] = None,
    decoder: Optional[StreamDecoder] = None,
) -> str:
    """Drain ``chunks``, forwarding each delta to ``listener``, and return the full text."""
    decoder = decoder or StreamDecoder()
    async for delta in iter_deltas(chunks, decoder):
        await notify(listener, delta)
    return decoder.text
