"""Incremental decoder for ``text/event-stream`` bodies.

Network chunks do not respect event boundaries, so the decoder buffers
text until a blank line terminates an event and only then yields it.
"""

from __future__ import annotations

from dataclasses import dataclass

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True, slots=True)
class ServerSentEvent:
    data: str
    event: str | None = None
    id: str | None = None


class SSEDecoder:
    """Feed text chunks in, get complete events out.

    Example:
        >>> decoder = SSEDecoder()
        >>> decoder.feed('data: {"a"')
        []
        >>> decoder.feed(': 1}\\n\\n')
        [ServerSentEvent(data='{"a": 1}', event=None, id=None)]
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[ServerSentEvent]:
        text = self._buffer + chunk
        # A trailing CR may be the first half of a CRLF split across chunks.
        held = ""
        if text.endswith("\r"):
            text, held = text[:-1], "\r"
        self._buffer = text.replace("\r\n", "\n").replace("\r", "\n")
        events = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse(raw)
            if event is not None:
                events.append(event)
        self._buffer += held
        return events

    def flush(self) -> list[ServerSentEvent]:
        """Decode whatever is left once the body has ended.

        An unterminated trailing event is still delivered if it carries data.
        """
        raw, self._buffer = self._buffer.replace("\r", ""), ""
        event = self._parse(raw)
        return [event] if event is not None else []

    @staticmethod
    def _parse(raw: str) -> ServerSentEvent | None:
        data_lines: list[str] = []
        event_name = None
        event_id = None
        for line in raw.split("\n"):
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            match name:
                case "data":
                    data_lines.append(value)
                case "event":
                    event_name = value
                case "id":
                    event_id = value
        if not data_lines:
            return None
        return ServerSentEvent(data="\n".join(data_lines), event=event_name, id=event_id)
