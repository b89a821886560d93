"""Parts of a ``multipart/form-data`` request, in the order they were sent.

Robyn decodes multipart bodies before a handler runs. Text fields end up in
``request.form_data`` keyed by field name, file parts in ``request.files``
keyed by filename (the field name of a file part is not kept), and
``request.body`` holds the payloads of all parts joined back to back in
arrival order. Both dicts lose that order, so ``FormReader`` puts it back by
locating each payload in the joined body.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Deque, Mapping, Optional, Sequence

from errors import ClientInputError, PayloadTooLargeError


class MalformedFormError(ClientInputError):
    """The body is not usable multipart data."""


class PartTooLargeError(ClientInputError):
    """A single part exceeded the configured size limit."""


def is_multipart(content_type: Optional[str]) -> bool:
    mimetype = (content_type or "").split(";", 1)[0].strip().lower()
    return mimetype == "multipart/form-data"


@dataclass
class FormPart:
    name: str
    data: bytes
    filename: Optional[str] = None

    async def read(self) -> bytes:
        return self.data

    async def text(self) -> str:
        try:
            return self.data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFormError(f"part {self.name!r} is not valid utf-8") from exc


def arrival_offsets(body: bytes, payloads: Sequence[bytes]) -> list[int]:
    """Offset of each payload in ``body``; no two payloads claim the same bytes.

    Longer payloads are placed first so a short one that also occurs inside a
    longer one is matched against its own bytes. Payloads that cannot be
    placed (and empty ones) get ``len(body)``.
    """
    offsets = [len(body)] * len(payloads)
    claimed: list[tuple[int, int]] = []
    for index in sorted(range(len(payloads)), key=lambda i: -len(payloads[i])):
        data = payloads[index]
        if not data:
            continue
        start = body.find(data)
        while start != -1:
            end = start + len(data)
            overlap = next(
                (span_end for span_start, span_end in claimed
                 if start < span_end and span_start < end),
                None,
            )
            if overlap is None:
                break
            start = body.find(data, overlap)
        if start != -1:
            offsets[index] = start
            claimed.append((start, start + len(data)))
    return offsets


class FormReader:
    """Yields ``FormPart`` objects from Robyn's decoded form, in arrival order.

    Text fields keep their field name. File parts are named after their
    filename, since that is all Robyn keeps. Two file parts sharing a
    filename have already been collapsed into one entry by Robyn.
    """

    def __init__(
        self,
        fields: Mapping[str, str],
        files: Mapping[str, bytes],
        body: bytes = b"",
        *,
        max_part_size: Optional[int] = None,
        max_parts: Optional[int] = None,
        max_body_size: Optional[int] = None,
    ) -> None:
        self._fields = fields
        self._files = files
        self._body = body
        self._max_part_size = max_part_size
        self._max_parts = max_parts
        self._max_body_size = max_body_size
        self._pending: Optional[Deque[FormPart]] = None

    def _arrange(self) -> Deque[FormPart]:
        if self._max_body_size is not None and len(self._body) > self._max_body_size:
            raise PayloadTooLargeError(f"body exceeds {self._max_body_size} bytes")
        parts = [
            FormPart(str(name), str(value).encode("utf-8"))
            for name, value in self._fields.items()
        ]
        parts += [
            FormPart(str(filename), bytes(data), filename=str(filename))
            for filename, data in sorted(self._files.items())
        ]
        if self._max_parts is not None and len(parts) > self._max_parts:
            raise MalformedFormError(f"more than {self._max_parts} parts")
        offsets = arrival_offsets(self._body, [part.data for part in parts])
        order = sorted(range(len(parts)), key=lambda i: (offsets[i], i))
        return deque(parts[i] for i in order)

    def __aiter__(self) -> "FormReader":
        return self

    async def __anext__(self) -> FormPart:
        if self._pending is None:
            self._pending = self._arrange()
        if not self._pending:
            raise StopAsyncIteration
        # Give timeouts and cancellation a chance between parts.
        await asyncio.sleep(0)
        part = self._pending.popleft()
        if self._max_part_size is not None and len(part.data) > self._max_part_size:
            raise PartTooLargeError(f"part {part.name!r} exceeds {self._max_part_size} bytes")
        return part
