"""
Incremental decoding of a streamed top-level JSON array.
"""

from __future__ import annotations

import json
import typing as t

_WHITESPACE = " \t\n\r"

_VALUE_OR_END = "value_or_end"
_VALUE = "value"
_COMMA_OR_END = "comma_or_end"


class UnexpectedJsonPayload(ValueError):
    """
    The stream held a JSON document that is not an array.

    Parameters
    ----------
    payload : typing.Any
        Decoded document, typically a remote error object.
    """

    def __init__(self, payload: t.Any) -> None:
        self.payload = payload
        super().__init__(f"expected a JSON array, got {type(payload).__name__}")


class JsonArrayStreamDecoder:
    """
    Decode the elements of a top-level JSON array as text arrives.

    Elements are yielded as soon as they are complete, so memory use is
    bounded by the largest single element rather than the whole document.
    A document that is not an array is buffered and reported by
    :meth:`close` as an ``UnexpectedJsonPayload``.
    """

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()
        self._buffer = ""
        self._started = False
        self._finished = False
        self._expect = _VALUE_OR_END
        self._not_array = False

    def feed(self, text: str) -> list[t.Any]:
        """
        Add text and return the elements completed by it.

        Parameters
        ----------
        text : str
            Next chunk of the document.

        Returns
        -------
        list[typing.Any]
            Decoded elements, in document order.
        """
        self._buffer += text
        if self._not_array:
            return []
        return self._drain(final=False)

    def close(self) -> list[t.Any]:
        """
        Signal end of input and return any remaining elements.

        Raises
        ------
        UnexpectedJsonPayload
            If the document was valid JSON but not an array.
        ValueError
            If the document is truncated or malformed.
        """
        items = [] if self._not_array else self._drain(final=True)
        if self._not_array:
            try:
                payload = json.loads(s=self._buffer)
            except json.JSONDecodeError as error:
                raise ValueError(f"malformed JSON document: {error}") from error
            raise UnexpectedJsonPayload(payload=payload)
        if not self._started:
            # An empty body carries no rows.
            return items
        if not self._finished:
            raise ValueError("truncated JSON array")
        return items

    def _drain(self, *, final: bool) -> list[t.Any]:
        items: list[t.Any] = []
        buffer = self._buffer
        position = 0
        while True:
            while position < len(buffer) and buffer[position] in _WHITESPACE:
                position += 1
            if position >= len(buffer):
                break
            char = buffer[position]

            if not self._started:
                if char != "[":
                    self._not_array = True
                    return items
                self._started = True
                self._expect = _VALUE_OR_END
                position += 1
                continue

            if self._finished:
                raise ValueError("unexpected data after JSON array")

            if char == "]" and self._expect in (_VALUE_OR_END, _COMMA_OR_END):
                self._finished = True
                position += 1
                continue

            if self._expect == _COMMA_OR_END:
                if char != ",":
                    raise ValueError(f"expected ',' or ']' in JSON array, got {char!r}")
                self._expect = _VALUE
                position += 1
                continue

            try:
                value, end = self._decoder.raw_decode(buffer, position)
            except json.JSONDecodeError as error:
                if final:
                    raise ValueError(f"malformed JSON array element: {error}") from error
                break
            if end == len(buffer) and not final and not isinstance(value, (dict, list)):
                # A scalar at the end of the buffer may continue in the next chunk.
                break
            items.append(value)
            self._expect = _COMMA_OR_END
            position = end

        self._buffer = buffer[position:]
        return items
