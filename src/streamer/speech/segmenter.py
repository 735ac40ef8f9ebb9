"""
Sentence segmenter for streaming narration.

Splits a growing text stream into speakable fragments. A fragment ends right
after a run of sentence-terminal punctuation; the run is only considered
finished once a non-terminal character follows it, so a run that straddles two
incoming chunks is never split.

Usage:
    segmenter = TextSegmenter()

    async for delta in model_stream:
        for segment in segmenter.consume(delta):
            yield segment

    yield segmenter.flush()  # may be "" when the text ended on a boundary

Concatenating every consumed segment plus the flushed remainder reproduces the
input exactly; nothing is stripped.
"""

import re
from typing import Iterator, List, Optional

DEFAULT_TERMINALS = "。．！？!?"


class TextSegmenter:
    """
    Stateful scanner that emits complete sentence segments.

    Attributes:
        terminals: Characters that end a sentence. Commas (、) are deliberately
                   absent so that clauses stay with their sentence.
    """

    def __init__(self, terminals: Optional[str] = None):
        self.terminals = terminals or DEFAULT_TERMINALS
        self._buffer = ""
        self._total_emitted = 0
        self._boundary_pattern = self._compile_pattern(self.terminals)

    @staticmethod
    def _compile_pattern(terminals: str) -> re.Pattern:
        """Match a terminal run only when a non-terminal character follows it."""
        charset = "".join(re.escape(ch) for ch in terminals)
        return re.compile(f"[{charset}]+(?=[^{charset}])")

    def consume(self, chunk: str) -> Iterator[str]:
        """
        Append a chunk and yield every segment it completes.

        Args:
            chunk: Any amount of text, from a single character upwards.

        Yields:
            Segments ending in a full run of terminal punctuation.
        """
        if not chunk:
            return

        self._buffer += chunk

        while True:
            match = self._boundary_pattern.search(self._buffer)
            if not match:
                break
            end_pos = match.end()
            segment = self._buffer[:end_pos]
            self._buffer = self._buffer[end_pos:]
            self._total_emitted += len(segment)
            yield segment

    def flush(self) -> str:
        """
        Return the retained remainder and clear it.

        Always returns a string, which is empty when the input ended exactly on
        a segment boundary. Callers treat an empty remainder as a no-op.
        """
        remainder = self._buffer
        self._buffer = ""
        self._total_emitted += len(remainder)
        return remainder

    def reset(self) -> None:
        """Reset segmenter state for reuse."""
        self._buffer = ""
        self._total_emitted = 0

    @property
    def total_emitted_chars(self) -> int:
        """Total characters emitted across all segments."""
        return self._total_emitted

    @property
    def buffer_size(self) -> int:
        """Current buffer size in characters."""
        return len(self._buffer)


def split_segments(text: str, terminals: Optional[str] = None) -> List[str]:
    """Split literal text with the same boundary rule, trailing remainder included."""
    segmenter = TextSegmenter(terminals)
    segments = list(segmenter.consume(text))
    segments.append(segmenter.flush())
    return segments


__all__ = ["DEFAULT_TERMINALS", "TextSegmenter", "split_segments"]
