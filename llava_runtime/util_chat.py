from enum import Enum
from typing import Iterable, List, Optional, Tuple

HUMAN_MARKER = "###Human:"
ASSISTANT_MARKER = "###Assistant:"

DEFAULT_SYSTEM_PROMPT = (
    "A chat between a curious human and an artificial intelligence assistant. "
    "The assistant gives helpful, detailed, and polite answers to the human's questions."
)
# Appended by the engine after every prompt so the model answers as the assistant
DEFAULT_TURN_SEPARATOR = ASSISTANT_MARKER

EOS_MARKER = "</s>"


def boundary_markers_for(human_marker: str = HUMAN_MARKER,
                         assistant_marker: str = ASSISTANT_MARKER) -> Tuple[str, ...]:
    """Either role marker starts a new turn; end-of-sequence ends the reply too."""
    return (human_marker, assistant_marker, EOS_MARKER)


# Full role markers, so a markdown heading such as "### Steps" is plain text
BOUNDARY_MARKERS: Tuple[str, ...] = boundary_markers_for()
# Opening-sequence artifacts and unknown tokens mean the output has degenerated
INVALID_MARKERS: Tuple[str, ...] = ("<s>", "<unk>")


def human_segment(text: str, marker: str = HUMAN_MARKER) -> str:
    return f"{marker} {text} "


def assistant_segment(text: str, marker: str = ASSISTANT_MARKER) -> str:
    return f"{marker} {text} "


class ScanOutcome(Enum):
    CONTINUE = "continue"
    BOUNDARY = "boundary"
    INVALID = "invalid"


class BoundaryScanner:
    """
    Watches a stream of generated fragments for the model's turn conventions.

    Markers are matched over the stream, not per fragment: a tail that could
    be the start of a marker is held back until the next fragment decides it.
    The first marker in stream order settles the turn.
    """

    def __init__(self, boundary_markers: Iterable[str] = BOUNDARY_MARKERS,
                 invalid_markers: Iterable[str] = INVALID_MARKERS):
        self._markers: List[Tuple[str, ScanOutcome]] = (
            [(m, ScanOutcome.BOUNDARY) for m in boundary_markers if m]
            + [(m, ScanOutcome.INVALID) for m in invalid_markers if m]
        )
        if not self._markers:
            raise ValueError("BoundaryScanner needs at least one marker")
        self._pending = ""
        self._parts: List[str] = []
        self.outcome = ScanOutcome.CONTINUE

    @property
    def text(self) -> str:
        """Text released so far, excluding any held-back tail."""
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self.outcome is not ScanOutcome.CONTINUE

    def feed(self, fragment: str) -> Tuple[str, ScanOutcome]:
        """Consume one fragment. Returns the newly released text and the outcome."""
        if self.finished:
            raise RuntimeError(f"scanner already finished with {self.outcome.value}")

        buf = self._pending + (fragment or "")
        hit = self._earliest_marker(buf)
        if hit is not None:
            pos, kind = hit
            self._pending = ""
            self.outcome = kind
            if kind is ScanOutcome.INVALID:
                return "", kind
            released = buf[:pos].rstrip()
            # Whitespace released just before the marker is not part of the reply
            self._parts = ["".join(self._parts + [released]).rstrip()]
            return released, kind

        cut = len(buf) - self._held_tail_length(buf)
        released, self._pending = buf[:cut], buf[cut:]
        if released:
            self._parts.append(released)
        return released, ScanOutcome.CONTINUE

    def _earliest_marker(self, buf: str) -> Optional[Tuple[int, ScanOutcome]]:
        best: Optional[Tuple[int, ScanOutcome]] = None
        for marker, kind in self._markers:
            idx = buf.find(marker)
            if idx != -1 and (best is None or idx < best[0]):
                best = (idx, kind)
        return best

    def _held_tail_length(self, buf: str) -> int:
        longest = max(len(m) for m, _ in self._markers) - 1
        for k in range(min(longest, len(buf)), 0, -1):
            tail = buf[-k:]
            if any(m.startswith(tail) for m, _ in self._markers):
                return k
        return 0

