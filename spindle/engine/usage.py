"""Token usage extraction from agent logs.

Agents run in a machine-readable output mode and print one JSON event per
line. Each agent type reports usage differently:

- claude-code: the last ``result`` event carries ``total_cost_usd`` and
  ``usage.input_tokens`` / ``usage.output_tokens``.
- codex: every ``turn.completed`` event carries ``usage``; turns are summed.
- gemini: the last ``result`` event carries ``stats.inputTokens`` /
  ``stats.outputTokens``.
- opencode: every ``step_finish`` event carries ``part.tokens``; steps are
  summed.

Lines that are not JSON objects (git output, agent prose) are ignored.
Numbers are returned as text, formatted as the agent wrote them.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from decimal import Decimal
from typing import Any

import structlog

log = structlog.get_logger(__name__)

Event = dict[str, Any]


def _events(text: str) -> list[Event]:
    events = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line, parse_float=Decimal)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


def _last_of_type(events: Iterable[Event], event_type: str) -> Event | None:
    last = None
    for event in events:
        if event.get("type") == event_type:
            last = event
    return last


def _number(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
        return None
    return str(value)


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def _collect(pairs: Iterable[tuple[str, Any]]) -> dict[str, str]:
    usage = {}
    for key, value in pairs:
        text = _number(value)
        if text is not None:
            usage[key] = text
    return usage


def _token_totals(input_tokens: int, output_tokens: int) -> dict[str, str]:
    usage = {}
    if input_tokens:
        usage["input-tokens"] = str(input_tokens)
    if output_tokens:
        usage["output-tokens"] = str(output_tokens)
    return usage


def _claude_code(events: list[Event]) -> dict[str, str]:
    result = _last_of_type(events, "result")
    if result is None:
        return {}
    tokens = result.get("usage")
    if not isinstance(tokens, dict):
        tokens = {}
    return _collect(
        [
            ("cost-usd", result.get("total_cost_usd")),
            ("input-tokens", tokens.get("input_tokens")),
            ("output-tokens", tokens.get("output_tokens")),
        ]
    )


def _codex(events: list[Event]) -> dict[str, str]:
    input_tokens = output_tokens = 0
    for event in events:
        tokens = event.get("usage")
        if event.get("type") != "turn.completed" or not isinstance(tokens, dict):
            continue
        input_tokens += _as_int(tokens.get("input_tokens"))
        output_tokens += _as_int(tokens.get("output_tokens"))
    return _token_totals(input_tokens, output_tokens)


def _gemini(events: list[Event]) -> dict[str, str]:
    result = _last_of_type(events, "result")
    stats = result.get("stats") if result is not None else None
    if not isinstance(stats, dict):
        return {}
    return _collect(
        [
            ("input-tokens", stats.get("inputTokens")),
            ("output-tokens", stats.get("outputTokens")),
        ]
    )


def _opencode(events: list[Event]) -> dict[str, str]:
    input_tokens = output_tokens = 0
    for event in events:
        part = event.get("part")
        if event.get("type") != "step_finish" or not isinstance(part, dict):
            continue
        tokens = part.get("tokens")
        if not isinstance(tokens, dict):
            continue
        input_tokens += _as_int(tokens.get("input"))
        output_tokens += _as_int(tokens.get("output"))
    return _token_totals(input_tokens, output_tokens)


_PARSERS: dict[str, Callable[[list[Event]], dict[str, str]]] = {
    "claude-code": _claude_code,
    "codex": _codex,
    "gemini": _gemini,
    "opencode": _opencode,
}


def parse_usage(agent_type: str, agent_log: str | None) -> dict[str, str]:
    """Extract cost and token counts from an agent log.

    Args:
        agent_type: Agent type the log was produced by
        agent_log: Combined agent output

    Returns:
        Any of ``cost-usd``, ``input-tokens`` and ``output-tokens`` that the
        log reports; empty for unknown agent types or logs without usage
    """
    parser = _PARSERS.get(str(agent_type))
    if parser is None or not agent_log:
        return {}
    usage = parser(_events(agent_log))
    if usage:
        log.debug("agent_usage_parsed", agent_type=agent_type, **{k.replace("-", "_"): v for k, v in usage.items()})
    return usage
