"""
Chunk Decoders.

Turn raw upstream bytes into text fragments. Network reads do not align to
line boundaries, so each decoder keeps the trailing incomplete line (and any
incomplete UTF-8 sequence) for the next call. Malformed lines are skipped:
a corrupted chunk must never abort a stream.
"""
import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class DecodeResult:
    """
    Output of one feed() call.

    Attributes:
        fragments: Text fragments in stream order
        done: Provider signalled end of stream
        error: Error message the provider embedded in the stream, if any
    """

    fragments: list[str] = field(default_factory=list)
    done: bool = False
    error: Optional[str] = None


class ChunkDecoder:
    """Line-oriented decoder base. Subclasses implement _parse_line()."""

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.done = False
        self.error: Optional[str] = None

    def feed(self, data: Union[bytes, str]) -> DecodeResult:
        """Decode every complete line in data plus the carried-over buffer."""
        text = self._utf8.decode(data) if isinstance(data, bytes) else data
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> DecodeResult:
        """Decode whatever is left once the body has ended."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._decode_lines([tail] if tail.strip() else [])

    def _decode_lines(self, lines: list[str]) -> DecodeResult:
        result = DecodeResult()
        for raw in lines:
            line = raw.strip()
            if not line or self.done:
                continue
            self._parse_line(line, result)
        result.done = self.done
        result.error = self.error
        return result

    def _parse_line(self, line: str, result: DecodeResult) -> None:
        raise NotImplementedError


def _load_object(payload: str) -> Optional[dict[str, Any]]:
    try:
        data = json.loads(payload)
    except ValueError:
        logger.debug("Skipping malformed stream line: %.80s", payload)
        return None
    return data if isinstance(data, dict) else None


def _error_text(data: dict[str, Any]) -> Optional[str]:
    error = data.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class NDJSONDecoder(ChunkDecoder):
    """
    Newline-delimited JSON, as sent by Ollama's /api/chat.

    Each line: {"message": {"content": "..."}, "done": false}
    The final line carries "done": true.
    """

    def _parse_line(self, line: str, result: DecodeResult) -> None:
        data = _load_object(line)
        if data is None:
            return

        error = _error_text(data)
        if error:
            self.error = error
            return

        message = data.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content:
                result.fragments.append(content)

        if data.get("done") is True:
            self.done = True


class SSEDeltaDecoder(ChunkDecoder):
    """
    Server-sent events carrying OpenAI chat-completion deltas.

    Each event: data: {"choices": [{"delta": {"content": "..."}}]}
    End of stream: data: [DONE]
    """

    PREFIX = "data:"
    DONE = "[DONE]"

    def _parse_line(self, line: str, result: DecodeResult) -> None:
        if not line.startswith(self.PREFIX):
            # event:, id:, retry: and comment lines carry no text
            return

        payload = line[len(self.PREFIX):].strip()
        if payload == self.DONE:
            self.done = True
            return

        data = _load_object(payload)
        if data is None:
            return

        error = _error_text(data)
        if error:
            self.error = error
            return

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return
        content = delta.get("content")
        if isinstance(content, str) and content:
            result.fragments.append(content)
