"""Output capture protocol.

A work unit reports its results by printing ``key=value`` (or ``key: value``)
lines, normally framed by marker lines so that they can be told apart from
the rest of the agent's log output::

    ---SPINDLE_OUTPUTS_START---
    branch=feature/x
    commit=abc123
    pr: https://github.com/org/repo/pull/7
    ---SPINDLE_OUTPUTS_END---

A dedicated results file may be unframed, in which case every line is a
candidate. When the artifact is the combined agent log it is parsed with
``framed=True`` and nothing outside the markers is read.

Parsing is a best-effort, line-by-line scan. Malformed lines are skipped and
a missing end marker (the process was killed mid-write) simply means the
scan runs to the end of the artifact. Nothing here raises on bad input.

Key Exports:
    CapturedOutput: Parsed outputs and results.
    parse_outputs: Parse an artifact.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

log = structlog.get_logger(__name__)

START_MARKER = "---SPINDLE_OUTPUTS_START---"
END_MARKER = "---SPINDLE_OUTPUTS_END---"

RECOGNIZED_KEYS = frozenset(
    {
        "branch",
        "commit",
        "base-branch",
        "pr",
        "cost-usd",
        "input-tokens",
        "output-tokens",
    }
)


@dataclass
class CapturedOutput:
    """Result of parsing a work unit artifact.

    Attributes:
        outputs: Every delimited line in artifact order, duplicates kept
        results: Recognized keys only, last occurrence wins
    """

    outputs: list[str] = field(default_factory=list)
    results: dict[str, str] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.outputs

    def add(self, key: str, value: str) -> None:
        """Record one result as if the work unit had printed ``key: value``."""
        self.outputs.append(f"{key}: {value}")
        if key in RECOGNIZED_KEYS:
            self.results[key] = value


def split_line(line: str) -> tuple[str, str] | None:
    """Split a result line at its first delimiter.

    The delimiter is ``=`` or ``": "``, whichever occurs first.

    Returns:
        ``(key, value)`` with surrounding whitespace removed, or None if the
        line has no delimiter or an empty key
    """
    eq = line.find("=")
    colon = line.find(": ")
    candidates = [(pos, width) for pos, width in ((eq, 1), (colon, 2)) if pos >= 0]
    if not candidates:
        return None
    pos, width = min(candidates)
    key = line[:pos].strip()
    if not key:
        return None
    return key, line[pos + width :].strip()


def _framed_lines(text: str, required: bool) -> list[str]:
    lines = text.splitlines()
    for i, line in enumerate(lines):
        if line.strip() == START_MARKER:
            body = lines[i + 1 :]
            for j, candidate in enumerate(body):
                if candidate.strip() == END_MARKER:
                    return body[:j]
            log.debug("output_end_marker_missing", lines=len(body))
            return body
    return [] if required else lines


def parse_outputs(artifact: str | bytes | None, framed: bool = False) -> CapturedOutput:
    """Parse a work unit artifact into outputs and results.

    Args:
        artifact: Artifact content. Bytes are decoded as UTF-8 with
            replacement characters for invalid sequences.
        framed: Only read lines after the start marker; an artifact
            without one yields nothing.

    Returns:
        Parsed CapturedOutput (empty if the artifact is empty or None)
    """
    captured = CapturedOutput()
    if not artifact:
        return captured

    if isinstance(artifact, bytes):
        text = artifact.decode("utf-8", errors="replace")
    else:
        text = artifact

    skipped = 0
    for raw in _framed_lines(text, framed):
        line = raw.strip()
        if not line:
            continue
        parts = split_line(line)
        if parts is None:
            skipped += 1
            continue
        key, value = parts
        captured.outputs.append(line)
        if key in RECOGNIZED_KEYS:
            captured.results[key] = value

    if skipped:
        log.debug("output_lines_skipped", count=skipped)
    return captured
