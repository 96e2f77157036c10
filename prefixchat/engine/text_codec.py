"""UTF-8 safe assembly of raw token bytes.

Backends hand back the raw bytes of each token. A single token may end in the
middle of a multi-byte codepoint (or carry bytes that are not valid UTF-8 at
all), so text is assembled by scanning the bytes and only keeping complete
sequences. Malformed or truncated lead bytes are dropped; this never raises.
"""

from __future__ import annotations


def _sequence_length(lead: int) -> int:
    """Expected sequence length for a lead byte, or 0 if it cannot start one."""
    if lead < 0x80:  # 0xxxxxxx
        return 1
    if 0xC0 <= lead <= 0xDF:  # 110xxxxx
        return 2
    if 0xE0 <= lead <= 0xEF:  # 1110xxxx
        return 3
    if 0xF0 <= lead <= 0xF7:  # 11110xxx
        return 4
    return 0


def _is_continuation(byte: int) -> bool:
    return byte & 0xC0 == 0x80


def assemble(raw: bytes) -> str:
    """Decode `raw` into text, dropping incomplete or malformed sequences.

    Complete, well-formed input round-trips exactly. A multi-byte sequence is
    kept only when every continuation byte is present; otherwise its lead byte
    is skipped and scanning resumes at the following byte.
    """
    if not raw:
        return ""

    out = bytearray()
    i = 0
    end = len(raw)
    while i < end:
        width = _sequence_length(raw[i])
        if width == 1:
            out.append(raw[i])
            i += 1
            continue
        if width and i + width <= end and all(_is_continuation(b) for b in raw[i + 1 : i + width]):
            out += raw[i : i + width]
            i += width
            continue
        i += 1

    return out.decode("utf-8", errors="ignore")
