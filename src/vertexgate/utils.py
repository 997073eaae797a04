"""Utility functions for the vertexgate proxy."""

import logging
from typing import Tuple

logger = logging.getLogger(__name__)


def vertex_host(location: str) -> str:
    """Return the API host serving a region; ``global`` has no regional prefix."""
    if not location or location == "global":
        return "aiplatform.googleapis.com"
    return f"{location}-aiplatform.googleapis.com"


def mask_key(key: str) -> str:
    """Mask a credential for logs, keeping only the last four characters."""
    if len(key) <= 4:
        return "***"
    return f"***{key[-4:]}"


def _held_suffix_length(text: str, delimiter: str) -> int:
    """
    Length of the longest suffix of ``text`` that is a proper prefix of ``delimiter``.

    Those characters could still turn into the delimiter once more text arrives,
    so they must not be emitted yet.
    """
    longest = min(len(text), len(delimiter) - 1)
    for size in range(longest, 0, -1):
        if text.endswith(delimiter[:size]):
            return size
    return 0


class ReasoningSplitter:
    """
    Incrementally separates reasoning regions from visible content in a text stream.

    A reasoning region is delimited by ``<tag>`` ... ``</tag>``. Text is fed in
    arbitrarily sized fragments; each call to :meth:`feed` returns the
    ``(content, reasoning)`` text that is safe to emit so far. Only a possible
    partial delimiter at the very end of the input is held back, so the pending
    buffer never grows past the delimiter length. Regions do not nest: an open
    delimiter seen inside a region is ordinary reasoning text.

    Reasoning emitted for successive regions is separated by a newline, so the
    concatenated reasoning output equals the region bodies joined with ``"\\n"``.
    """

    def __init__(self, tag: str = "vertex_think_tag"):
        self.open_tag = f"<{tag}>"
        self.close_tag = f"</{tag}>"
        self.in_reasoning = False
        self.buffer = ""
        self._regions_seen = 0

    @property
    def max_buffer(self) -> int:
        return max(len(self.open_tag), len(self.close_tag))

    def feed(self, text: str) -> Tuple[str, str]:
        """
        Add new text and return the ``(content, reasoning)`` ready for output.
        """
        remaining = self.buffer + text
        self.buffer = ""
        content = []
        reasoning = []

        while remaining:
            if self.in_reasoning:
                idx = remaining.find(self.close_tag)
                if idx >= 0:
                    reasoning.append(remaining[:idx])
                    remaining = remaining[idx + len(self.close_tag) :]
                    self.in_reasoning = False
                    continue
                held = _held_suffix_length(remaining, self.close_tag)
                reasoning.append(remaining[: len(remaining) - held])
                self.buffer = remaining[len(remaining) - held :]
                break
            else:
                idx = remaining.find(self.open_tag)
                if idx >= 0:
                    content.append(remaining[:idx])
                    remaining = remaining[idx + len(self.open_tag) :]
                    self.in_reasoning = True
                    if self._regions_seen:
                        reasoning.append("\n")
                    self._regions_seen += 1
                    continue
                held = _held_suffix_length(remaining, self.open_tag)
                content.append(remaining[: len(remaining) - held])
                self.buffer = remaining[len(remaining) - held :]
                break

        return "".join(content), "".join(reasoning)

    def flush(self) -> Tuple[str, str]:
        """
        Release whatever is still buffered at end of stream.

        An unterminated region is tolerated: its pending text is reasoning.
        """
        pending = self.buffer
        self.buffer = ""
        if self.in_reasoning:
            return "", pending
        return pending, ""


def split_reasoning(text: str, tag: str = "vertex_think_tag") -> Tuple[str, str]:
    """
    Split a complete text into ``(content, reasoning)`` in one pass.

    Args:
        text: The full model output
        tag: Name of the reasoning tag (without angle brackets)

    Returns:
        The visible content with every reasoning region removed, and the
        region bodies joined with newlines
    """
    splitter = ReasoningSplitter(tag)
    content, reasoning = splitter.feed(text)
    tail_content, tail_reasoning = splitter.flush()
    return content + tail_content, reasoning + tail_reasoning
