from __future__ import annotations

import json
from collections.abc import Iterable, Iterator


class JsonArrayElementSplitter:
    """Incrementally cut a streamed JSON array into its top-level element texts.

    Text before the opening ``[`` (a code fence, a wrapper key) is skipped.
    Elements are returned verbatim and unparsed, so a malformed element still
    comes out as one piece of text instead of breaking the rest of the array.
    """

    def __init__(self) -> None:
        self._started = False
        self._finished = False
        self._depth = 0
        self._in_string = False
        self._escape = False
        self._buf: list[str] = []

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: str) -> list[str]:
        out: list[str] = []
        for ch in chunk:
            if self._finished:
                break
            if not self._started:
                if ch == "[":
                    self._started = True
                continue

            if self._in_string:
                self._buf.append(ch)
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
                continue

            if ch == '"':
                self._in_string = True
                self._buf.append(ch)
            elif ch in "[{":
                self._depth += 1
                self._buf.append(ch)
            elif ch in "]}":
                if self._depth == 0 and ch == "]":
                    self._emit(out)
                    self._finished = True
                else:
                    self._depth = max(0, self._depth - 1)
                    self._buf.append(ch)
            elif ch == "," and self._depth == 0:
                self._emit(out)
            else:
                self._buf.append(ch)
        return out

    def close(self) -> list[str]:
        """Flush a trailing element when the stream ends without ``]``."""
        out: list[str] = []
        if self._started and not self._finished:
            self._emit(out)
            self._finished = True
        return out

    def _emit(self, out: list[str]) -> None:
        text = "".join(self._buf).strip()
        self._buf = []
        if text:
            out.append(text)


def iter_sse_content(lines: Iterable[str]) -> Iterator[str]:
    """Yield ``delta.content`` text from an OpenAI-style chat completion SSE stream."""
    for line in lines:
        if not line or not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except ValueError:
            continue
        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list):
            continue
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta")
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str) and content:
                yield content


def iter_raw_elements(chunks: Iterable[str]) -> Iterator[object]:
    """Turn streamed text into raw array elements, parsed when they are valid JSON."""
    splitter = JsonArrayElementSplitter()
    for chunk in chunks:
        for text in splitter.feed(chunk):
            yield _decode(text)
        if splitter.finished:
            return
    for text in splitter.close():
        yield _decode(text)


def _decode(text: str) -> object:
    try:
        return json.loads(text)
    except ValueError:
        return text
