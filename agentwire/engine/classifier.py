"""Line classifier for agent CLI stdout.

The agent CLI mixes start-up chrome (banner, metadata, echoed prompt),
bracketed reasoning markers, and a token-usage footer in with the text
the user should actually see. ``StreamClassifier`` turns decoded text
chunks into a tagged sequence of ``Segment`` objects so the caller can
forward only ``CONTENT`` segments.

States:

    HEADER ──(first substantive line)──> BODY <──> THINKING

- HEADER: lines matching ``HEADER_PREDICATES`` are chrome. The first
  line that matches nothing is held provisionally. If the next
  non-blank line is chrome that only follows a banner (``workdir:``, a
  timestamp, a session id), the held line was banner text and is
  dropped. Otherwise the header is complete and the held line becomes
  the first content line, followed by whatever came next.
- THINKING: entered on a ``[...] thinking`` marker, left on a
  ``[...] <tool>`` marker. Everything in between is hidden. The first
  entry produces a one-shot ``THINKING_START`` segment.
- BODY: token-usage footers and timestamp lines are noise; everything
  else is content, one segment per line including its newline.

Only complete lines are classified, so the segment sequence does not
depend on how the byte stream was chunked. ``finish()`` classifies the
trailing partial line once the stream has ended.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class SegmentKind(str, Enum):
    HEADER = "header"
    SESSION_ID = "session_id"
    THINKING_START = "thinking_start"
    THINKING = "thinking"
    MARKER = "marker"
    TOKEN_USAGE = "token_usage"
    CONTENT = "content"


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    text: str
    value: str | None = None


@dataclass(frozen=True)
class LinePredicate:
    name: str
    pattern: re.Pattern[str]

    def matches(self, line: str) -> bool:
        return self.pattern.search(line) is not None


def _p(name: str, pattern: str, flags: int = 0) -> LinePredicate:
    return LinePredicate(name, re.compile(pattern, flags))


TIMESTAMP = _p("timestamp", r"^\s*\[\d{4}-\d{2}-\d{2}")

HEADER_PREDICATES: tuple[LinePredicate, ...] = (
    TIMESTAMP,
    _p("stdin_notice", r"^Reading prompt from stdin"),
    _p("version_banner", r"^(?=\S).*?\b(?:Qwen|OpenAI|Codex)\b.*\bv\d+(?:\.\d+)+"),
    _p("separator", r"^\s*[-=_*─━]{3,}\s*$"),
    _p("workdir", r"^workdir\s*:"),
    _p(
        "metadata",
        r"^(?:model|provider|approval|sandbox|"
        r"reasoning(?: effort| summaries)?)\s*:",
    ),
    _p("user_instructions", r"User instructions:"),
    _p("untrusted_dir", r"Not inside a trusted directory"),
)

# Chrome that only ever follows the start-up banner. A held line is
# dropped as banner text only when one of these comes next.
BANNER_FOLLOWERS = frozenset({
    "timestamp", "stdin_notice", "workdir", "user_instructions", "untrusted_dir",
})

SESSION_ID_RE = re.compile(r"^\s*session id\s*:\s*(\S+)", re.IGNORECASE)
THINKING_RE = re.compile(r"^\s*\[[^\]]*\]\s*thinking\b", re.IGNORECASE)
TOKEN_USAGE_RE = re.compile(r"tokens used:\s*([\d,]+)", re.IGNORECASE)


@dataclass
class ClassifierState:
    """Per-stream state; discarded when the stream ends."""
    header_complete: bool = False
    in_thinking: bool = False
    thinking_notified: bool = False
    content_started: bool = False
    pending: str = ""
    provisional: list[str] = field(default_factory=list)


class StreamClassifier:
    """Stateful filter from decoded stdout text to tagged segments."""

    def __init__(self, *, tool_marker: str = "qwen", prompt: str = "") -> None:
        marker = re.escape(tool_marker.strip() or "qwen")
        self._tool_marker_re = re.compile(
            rf"^\s*\[[^\]]*\]\s*{marker}\b", re.IGNORECASE,
        )
        self._prompt_lines = {
            line.strip() for line in (prompt or "").splitlines() if line.strip()
        }
        self.state = ClassifierState()
        self._finished = False

    @property
    def has_partial(self) -> bool:
        """True when an incomplete line is waiting for more input."""
        return bool(self.state.pending)

    @property
    def thinking_notified(self) -> bool:
        return self.state.thinking_notified

    def feed(self, chunk: str) -> list[Segment]:
        """Classify every line completed by ``chunk``."""
        if self._finished:
            raise RuntimeError("feed() called after finish()")
        if not chunk:
            return []
        data = self.state.pending + chunk
        lines = data.split("\n")
        self.state.pending = lines.pop()
        segments: list[Segment] = []
        for line in lines:
            segments.extend(self._classify(line.rstrip("\r")))
        return segments

    def finish(self) -> list[Segment]:
        """Classify the trailing partial line and settle held lines."""
        if self._finished:
            return []
        self._finished = True
        segments: list[Segment] = []
        tail = self.state.pending.rstrip("\r")
        self.state.pending = ""
        if tail:
            segments.extend(self._classify(tail))
        if self.state.provisional:
            segments.extend(self._commit_provisional())
        return segments

    # ── line rules ──

    def _header_match(self, line: str) -> str | None:
        """Name of the chrome rule ``line`` matches, or None."""
        if line.strip() in self._prompt_lines:
            return "echoed_prompt"
        for predicate in HEADER_PREDICATES:
            if predicate.matches(line):
                return predicate.name
        return None

    def _classify(self, line: str) -> list[Segment]:
        state = self.state

        if state.in_thinking:
            if self._tool_marker_re.search(line):
                state.in_thinking = False
                return [Segment(SegmentKind.MARKER, line)]
            return [Segment(SegmentKind.THINKING, line)]

        if THINKING_RE.search(line):
            segments = self._commit_provisional()
            state.in_thinking = True
            if not state.thinking_notified:
                state.thinking_notified = True
                segments.append(Segment(SegmentKind.THINKING_START, line))
            else:
                segments.append(Segment(SegmentKind.THINKING, line))
            return segments

        if self._tool_marker_re.search(line):
            return [Segment(SegmentKind.MARKER, line)]

        usage = TOKEN_USAGE_RE.search(line)
        if usage:
            return [Segment(
                SegmentKind.TOKEN_USAGE, line, usage.group(1).replace(",", ""),
            )]

        if not state.header_complete:
            return self._classify_header(line)

        if TIMESTAMP.matches(line):
            return [Segment(SegmentKind.HEADER, line)]
        return self._content(line)

    def _classify_header(self, line: str) -> list[Segment]:
        state = self.state
        session = SESSION_ID_RE.search(line)
        if session:
            dropped = self._drop_provisional()
            dropped.append(Segment(SegmentKind.SESSION_ID, line, session.group(1)))
            return dropped
        chrome = self._header_match(line)
        if chrome is not None:
            if state.provisional and chrome not in BANNER_FOLLOWERS:
                segments = self._commit_provisional()
                segments.extend(self._content(line))
                return segments
            dropped = self._drop_provisional()
            dropped.append(Segment(SegmentKind.HEADER, line))
            return dropped
        if not line.strip():
            if state.provisional:
                state.provisional.append(line)
                return []
            return [Segment(SegmentKind.HEADER, line)]
        if state.provisional:
            segments = self._commit_provisional()
            segments.extend(self._content(line))
            return segments
        state.provisional.append(line)
        return []

    def _drop_provisional(self) -> list[Segment]:
        held, self.state.provisional = self.state.provisional, []
        if held:
            logger.debug("Dropping %d provisional banner line(s)", len(held))
        return [Segment(SegmentKind.HEADER, line) for line in held]

    def _commit_provisional(self) -> list[Segment]:
        state = self.state
        state.header_complete = True
        held, state.provisional = state.provisional, []
        segments: list[Segment] = []
        for line in held:
            segments.extend(self._content(line))
        return segments

    def _content(self, line: str) -> list[Segment]:
        state = self.state
        if not state.content_started and not line.strip():
            return [Segment(SegmentKind.HEADER, line)]
        state.content_started = True
        return [Segment(SegmentKind.CONTENT, line + "\n")]


def content_text(segments: list[Segment]) -> str:
    """Concatenate the CONTENT segments of a sequence."""
    return "".join(s.text for s in segments if s.kind == SegmentKind.CONTENT)
