"""Text chunker: splits file content into overlapping bounded windows.

Every window except the first starts exactly ``overlap`` characters before
the end of the previous one, so the original text is recovered with::

    chunks[0] + "".join(c[overlap:] for c in chunks[1:])

Windows prefer to end just after a newline so that chunks line up with
source lines; a window with no usable newline is cut at ``max_size``.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterator

from patchwarden.core.errors import ConfigurationError

DEFAULT_MAX_SIZE = 1500
DEFAULT_OVERLAP = 200


def measure(text: str) -> int:
    """Size of ``text`` as seen by the chunker and the embedding gateway."""
    return len(text)


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` down to ``limit`` units of :func:`measure`."""
    if measure(text) <= limit:
        return text
    return text[:limit]


@dataclass(frozen=True)
class TextSpan:
    """One chunk window with its character offsets and 1-based line range."""

    start: int
    end: int
    start_line: int
    end_line: int
    text: str


def validate_sizes(max_size: int, overlap: int) -> None:
    if max_size <= 0:
        raise ConfigurationError(f"max_size must be positive, got {max_size}")
    if overlap < 0:
        raise ConfigurationError(f"overlap must not be negative, got {overlap}")
    if overlap >= max_size:
        raise ConfigurationError(
            f"overlap ({overlap}) must be smaller than max_size ({max_size})",
            details={"max_size": max_size, "overlap": overlap},
        )


def chunk_spans(
    text: str,
    max_size: int = DEFAULT_MAX_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> Iterator[TextSpan]:
    """Yield overlapping windows over ``text``.

    Args:
        text: Content to split
        max_size: Maximum window size, as measured by :func:`measure`
        overlap: Characters shared by consecutive windows

    Raises:
        ConfigurationError: sizes are inconsistent. Raised on the first
            ``next()`` since this is a generator; :func:`chunk_text`
            validates eagerly.
    """
    validate_sizes(max_size, overlap)

    newlines = [i for i, ch in enumerate(text) if ch == "\n"]

    def line_of(offset: int) -> int:
        return bisect_right(newlines, offset - 1) + 1

    total = measure(text)
    if total <= max_size:
        yield TextSpan(0, total, 1, line_of(max(total - 1, 0)), text)
        return

    start = 0
    while True:
        end = min(start + max_size, total)
        if end < total:
            # Last newline strictly past the overlap point keeps the next
            # window moving forward.
            cut = text.rfind("\n", start + overlap + 1, end)
            if cut >= 0:
                end = cut + 1
        yield TextSpan(start, end, line_of(start), line_of(end - 1), text[start:end])
        if end >= total:
            return
        start = end - overlap


def chunk_text(
    text: str,
    max_size: int = DEFAULT_MAX_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[str]:
    """Split ``text`` into an ordered list of overlapping chunks."""
    validate_sizes(max_size, overlap)
    return [span.text for span in chunk_spans(text, max_size, overlap)]
