"""Usage report parsing and running cost totals."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from pairdesk.orchestrator.models import UsageReport

_TOKENS = re.compile(
    r"tokens:\s*(?P<sent>\d[\d.,]*)\s*(?P<sent_unit>[kKmM]?)\s+sent"
    r".*?(?P<received>\d[\d.,]*)\s*(?P<received_unit>[kKmM]?)\s+received",
    re.IGNORECASE | re.DOTALL,
)
_MESSAGE_COST = re.compile(r"\$\s*(?P<value>\d[\d.,]*)\s+message", re.IGNORECASE)
_SESSION_COST = re.compile(r"\$\s*(?P<value>\d[\d.,]*)\s+session", re.IGNORECASE)

_UNIT_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000}


@dataclass(slots=True)
class CostTotals:
    """Latest cost snapshots reported by the agent layer and by the worker."""

    agent_total_cost: float = 0.0
    worker_total_cost: float = 0.0

    def update(self, report: UsageReport) -> None:
        """Replace each total the report carries a non-empty value for."""

        if report.agent_total_cost:
            self.agent_total_cost = report.agent_total_cost
        if report.worker_total_cost:
            self.worker_total_cost = report.worker_total_cost

    def reset(self) -> None:
        self.agent_total_cost = 0.0
        self.worker_total_cost = 0.0


def parse_usage_report(text: str) -> UsageReport | None:
    """Parse the worker's textual usage summary.

    Expected shape: ``Tokens: 2.0k sent, 500 received. Cost: $0.012 message,
    $0.05 session.`` Cache details between the two token counts are ignored.
    """

    tokens = _TOKENS.search(text)
    message_cost = _MESSAGE_COST.search(text)
    if tokens is None and message_cost is None:
        return None

    session_cost = _SESSION_COST.search(text)
    return UsageReport(
        sent_tokens=(
            _parse_token_count(tokens.group("sent"), tokens.group("sent_unit")) if tokens else 0
        ),
        received_tokens=(
            _parse_token_count(tokens.group("received"), tokens.group("received_unit"))
            if tokens
            else 0
        ),
        message_cost=_parse_number(message_cost.group("value")) if message_cost else 0.0,
        worker_total_cost=_parse_number(session_cost.group("value")) if session_cost else None,
    )


def coerce_usage_report(value: Any) -> UsageReport | None:
    """Normalize a usage report arriving as text, wire dict or model."""

    if value is None or value == "":
        return None
    if isinstance(value, UsageReport):
        return value
    if isinstance(value, str):
        return parse_usage_report(value)
    if not isinstance(value, dict):
        raise TypeError("usageReport must be a string or an object")
    return UsageReport(
        sent_tokens=int(value.get("sentTokens") or 0),
        received_tokens=int(value.get("receivedTokens") or 0),
        message_cost=float(value.get("messageCost") or 0.0),
        worker_total_cost=_optional_float(value.get("workerTotalCost")),
        agent_total_cost=_optional_float(value.get("agentTotalCost")),
    )


def format_cost_suffix(report: UsageReport) -> str:
    """Render `` i<sent>k o<received>k $<cost>`` for commit messages."""

    sent_k = report.sent_tokens / 1000
    received_k = report.received_tokens / 1000
    return f" i{sent_k:.1f}k o{received_k:.1f}k ${report.message_cost:.3f}"


def _parse_token_count(raw: str, unit: str) -> int:
    return round(_parse_number(raw) * _UNIT_MULTIPLIERS[unit.lower()])


def _parse_number(raw: str) -> float:
    return float(raw.replace(",", "").rstrip("."))


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)
