"""
Range negotiation between the browser and the upstream store.

Upstream stores differ in how much of a ``Range`` request they honour. Some
seek and answer 206, some ignore the header and send the whole file with a
200. Everything here branches on what upstream actually delivered, never on
what was asked for, and produces the status line and headers the browser
will see. There is no I/O in this module.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from mediaproxy.upstream import (
    ByteRange,
    Delivery,
    FileDescriptor,
    RangeNotSatisfiable,
    UpstreamResult,
)

_RANGE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$")


@dataclass
class Envelope:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)


def parse_range(header: str | None, size: int) -> ByteRange | None:
    """
    Parse a client ``Range`` header against a file of ``size`` bytes.

    Returns None when no header was sent. Supports ``bytes=a-b``, ``bytes=a-``
    and the suffix form ``bytes=-n``. An end past the last byte is clamped.

    Raises:
        RangeNotSatisfiable: the header is malformed, uses several ranges or
            another unit, has start > end, or starts at or beyond ``size``.
    """
    if header is None:
        return None
    match = _RANGE.match(header)
    if match is None:
        raise RangeNotSatisfiable(size, f"Malformed range header: {header!r}")
    first, last = match.groups()
    if not first and not last:
        raise RangeNotSatisfiable(size, f"Malformed range header: {header!r}")

    if not first:
        # suffix range: the final n bytes
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size, f"Empty suffix range: {header!r}")
        return ByteRange(start=max(size - suffix, 0), end=size - 1)

    start = int(first)
    end = int(last) if last else size - 1
    if start > end:
        raise RangeNotSatisfiable(size, f"Range start after end: {header!r}")
    if start >= size:
        raise RangeNotSatisfiable(size, f"Range starts beyond {size} bytes: {header!r}")
    return ByteRange(start=start, end=min(end, size - 1))


def _base_headers(descriptor: FileDescriptor) -> dict[str, str]:
    return {
        "Content-Type": descriptor.mime_type,
        "Accept-Ranges": "bytes",
    }


def head_envelope(descriptor: FileDescriptor) -> Envelope:
    headers = _base_headers(descriptor)
    headers["Content-Length"] = str(descriptor.size)
    return Envelope(status_code=200, headers=headers)


def unsatisfiable_envelope(size: int) -> Envelope:
    return Envelope(
        status_code=416,
        headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
    )


def negotiate(
    client_range: ByteRange | None,
    descriptor: FileDescriptor,
    result: UpstreamResult,
) -> Envelope:
    """
    Decide the status code and headers for a GET given what upstream sent.

    When upstream ignored a range it returns the whole body. A range starting
    at 0 is then answered with a 206 spanning the entire file, which players
    probing with ``bytes=0-`` accept. A range starting later is answered with
    a plain 200 and the full body; the client gets bytes from offset 0 rather
    than from the offset it asked for. Skipping ahead would mean buffering or
    a second upstream request, so neither is attempted.
    """
    size = descriptor.size
    headers = _base_headers(descriptor)

    if result.delivery is Delivery.PARTIAL:
        if client_range is None:
            # upstream answered a range nobody asked for, forward it as is
            if result.content_range:
                headers["Content-Range"] = result.content_range
            if result.content_length:
                headers["Content-Length"] = result.content_length
            return Envelope(status_code=206, headers=headers)
        delivered = result.delivered_range or client_range
        headers["Content-Range"] = f"bytes {delivered.start}-{delivered.end}/{size}"
        headers["Content-Length"] = str(delivered.length)
        return Envelope(status_code=206, headers=headers)

    headers["Content-Length"] = str(size)
    if client_range is not None and client_range.start == 0 and size > 0:
        headers["Content-Range"] = f"bytes 0-{size - 1}/{size}"
        return Envelope(status_code=206, headers=headers)
    return Envelope(status_code=200, headers=headers)
