"""Risk classification of agent execution output.

Only the text an execution produced is inspected. The task's own title and
description describe intent the operator already approved when queuing it.
Matching is best-effort: patterns can miss risky output phrased in an
unexpected way.
"""

import re
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class RiskDecision:
    requires_approval: bool
    reason: str | None = None
    action_type: str | None = None


class RiskClassifier(Protocol):
    def classify(self, text: str) -> RiskDecision: ...


@dataclass(frozen=True)
class RiskRule:
    action_type: str
    reason: str
    patterns: tuple[re.Pattern, ...]

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns)


# Checked in order; the first rule that matches decides.
RISK_RULES: tuple[RiskRule, ...] = (
    RiskRule(
        action_type="git_push",
        reason="Changes were published to a remote",
        patterns=_compile(
            r"\bgit\s+push\b",
            r"\bpushed\s+(?:\S+\s+)?to\s+(?:the\s+)?(?:origin|upstream|remote)\b",
            r"\bpush(?:ed|ing)?\s+to\s+(?:origin|upstream|remote)\b",
            r"\bforce[- ]push(?:ed)?\b",
            r"\bdeploy(?:ed|ing)?\s+to\s+\w+",
        ),
    ),
    RiskRule(
        action_type="large_edit",
        reason="Bulk destructive file operation",
        patterns=_compile(
            r"\brm\s+-(?:rf|fr|r)\b",
            r"\b(?:deleted|removed)\s+\d{2,}\s+files\b",
            r"\b(?:deleted|removed)\s+(?:the\s+)?(?:entire\s+)?(?:directory|folder)\b",
            r"\bgit\s+(?:reset\s+--hard|clean\s+-\w*f)",
        ),
    ),
    RiskRule(
        action_type="large_edit",
        reason="Destructive data-store operation",
        patterns=_compile(
            r"\bdrop\s+(?:table|database|schema|collection)\b",
            r"\btruncate\s+(?:table\s+)?\w+",
            r"\bdelete\s+from\s+\w+\s*(?:;|$)",
            r"\bflush(?:all|db)\b",
            r"\bdropped\s+(?:the\s+)?(?:\w+\s+)?(?:table|database|collection)\b",
        ),
    ),
    RiskRule(
        action_type="git_push",
        reason="Production release",
        patterns=_compile(
            r"\breleased?\s+to\s+production\b",
            r"\bpublished\s+(?:\S+\s+)?to\s+(?:pypi|npm|crates\.io|the\s+registry)\b",
            r"\b(?:npm|twine|cargo)\s+publish\b",
            r"\btagged\s+(?:the\s+)?release\s+v?\d",
        ),
    ),
)

PLAN_RULES: tuple[RiskRule, ...] = (
    RiskRule(
        action_type="architecture",
        reason="Architecture decision proposed",
        patterns=_compile(r"\barchitecture\b", r"\barchitectural\b"),
    ),
    RiskRule(
        action_type="planning",
        reason="Implementation plan proposed",
        patterns=_compile(r"\bimplementation\s+plan\b", r"\bproposed\s+plan\b", r"\bhere\s+is\s+(?:a|the|my)\s+plan\b"),
    ),
)


class PatternRiskClassifier:
    """Regex classifier over execution output.

    With ``review_plans`` enabled, plan and architecture proposals also
    require sign-off, after the side-effect rules have been checked.
    """

    def __init__(self, rules: tuple[RiskRule, ...] = RISK_RULES, review_plans: bool = False):
        self.rules = rules + PLAN_RULES if review_plans else rules

    def classify(self, text: str) -> RiskDecision:
        if not text:
            return RiskDecision(requires_approval=False)
        for rule in self.rules:
            if rule.matches(text):
                return RiskDecision(
                    requires_approval=True,
                    reason=rule.reason,
                    action_type=rule.action_type,
                )
        return RiskDecision(requires_approval=False)
