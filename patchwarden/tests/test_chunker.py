"""Tests for the overlapping text chunker."""

from __future__ import annotations

import pytest

from patchwarden.context.chunker import chunk_spans, chunk_text, truncate
from patchwarden.core.errors import ConfigurationError


def _reconstruct(chunks: list[str], overlap: int) -> str:
    return chunks[0] + "".join(c[overlap:] for c in chunks[1:])


SOURCE = "\n".join(f"line {i:03d}: value = compute({i}) + offset" for i in range(120)) + "\n"


class TestChunkText:
    def test_short_text_single_chunk(self):
        assert chunk_text("abc", 10, 2) == ["abc"]

    def test_exact_size_single_chunk(self):
        assert chunk_text("x" * 10, 10, 2) == ["x" * 10]

    def test_empty_text(self):
        assert chunk_text("", 10, 2) == [""]

    @pytest.mark.parametrize("max_size, overlap", [(200, 40), (150, 0), (97, 13), (64, 63)])
    def test_reconstruction_and_bounds(self, max_size, overlap):
        chunks = chunk_text(SOURCE, max_size, overlap)
        assert len(chunks) > 1
        assert all(len(c) <= max_size for c in chunks)
        assert _reconstruct(chunks, overlap) == SOURCE

    def test_consecutive_chunks_share_overlap(self):
        chunks = chunk_text(SOURCE, 200, 40)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev[-40:] == nxt[:40]

    def test_prefers_line_boundaries(self):
        chunks = chunk_text(SOURCE, 200, 40)
        assert all(c.endswith("\n") for c in chunks)

    def test_text_without_newlines_cut_at_max_size(self):
        text = "a" * 95
        chunks = chunk_text(text, 30, 5)
        assert [len(c) for c in chunks[:-1]] == [30] * (len(chunks) - 1)
        assert _reconstruct(chunks, 5) == text

    @pytest.mark.parametrize("max_size, overlap", [(0, 0), (-5, 0), (10, -1), (10, 10), (10, 20)])
    def test_invalid_sizes(self, max_size, overlap):
        with pytest.raises(ConfigurationError):
            chunk_text("abc", max_size, overlap)


class TestChunkSpans:
    def test_line_numbers(self):
        text = "one\ntwo\nthree\nfour\nfive\n"
        spans = list(chunk_spans(text, 10, 2))
        assert spans[0].start_line == 1
        assert spans[0].text == "one\ntwo\n"
        assert spans[0].end_line == 2
        for span in spans:
            assert text[span.start:span.end] == span.text
            assert span.start_line == text.count("\n", 0, span.start) + 1

    def test_offsets_are_monotonic(self):
        spans = list(chunk_spans(SOURCE, 120, 30))
        starts = [s.start for s in spans]
        assert starts == sorted(set(starts))
        assert spans[-1].end == len(SOURCE)


def test_truncate():
    assert truncate("abcdef", 3) == "abc"
    assert truncate("ab", 3) == "ab"
