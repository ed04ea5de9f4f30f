from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .safety_rules import DEFAULT_RULES, SafetyRules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingClassification:
    tier: str
    matched_keywords: list[str] = field(default_factory=list)
    advisory: str | None = None

    @property
    def is_emergency(self) -> bool:
        return self.tier == "emergency"

    @property
    def is_urgent(self) -> bool:
        return self.tier == "urgent"


@dataclass(frozen=True)
class ProhibitedClassification:
    prohibited: bool
    matched_topics: list[str] = field(default_factory=list)
    refusal: str | None = None


@dataclass(frozen=True)
class GeneratedValidation:
    valid: bool
    violations: list[str] = field(default_factory=list)
    reason: str | None = None


def _preview(text: str) -> str:
    return (text or "")[:100]


class SafetyFilter:
    """Keyword and pattern classification applied before and after generation.

    Emergency outranks urgent no matter where either keyword sits in the rule
    table; prohibited-topic checks run independently of that tiering.
    """

    def __init__(self, rules: SafetyRules = DEFAULT_RULES) -> None:
        self.rules = rules

    def classify_incoming(self, text: str) -> IncomingClassification:
        lowered = (text or "").lower()
        matches: dict[str, list[str]] = {}
        for rule in self.rules.incoming:
            if rule.keyword.lower() in lowered:
                matches.setdefault(rule.tier, []).append(rule.keyword)

        for tier in self.rules.tier_order:
            if matches.get(tier):
                log = logger.warning if tier == "emergency" else logger.info
                log("%s keywords detected keywords=%s preview=%r", tier, matches[tier], _preview(text))
                return IncomingClassification(
                    tier=tier,
                    matched_keywords=matches[tier],
                    advisory=self.rules.advisories.get(tier),
                )
        return IncomingClassification(tier="normal")

    def classify_prohibited(self, text: str) -> ProhibitedClassification:
        lowered = (text or "").lower()
        matched = [rule.keyword for rule in self.rules.prohibited if rule.keyword.lower() in lowered]
        if matched:
            logger.info("prohibited topic detected topics=%s preview=%r", matched, _preview(text))
            return ProhibitedClassification(True, matched, self.rules.refusal_message)
        return ProhibitedClassification(False)

    def validate_generated(self, text: str) -> GeneratedValidation:
        lowered = (text or "").lower()
        restricted = [rule.keyword for rule in self.rules.restricted_actions if rule.keyword.lower() in lowered]
        if restricted:
            logger.warning("generated response contains restricted actions actions=%s", restricted)
            return GeneratedValidation(False, restricted, "Response contains prohibited medical actions")

        for rule in self.rules.diagnostic_patterns:
            if rule.pattern.search(text or ""):
                logger.warning("generated response contains %s pattern=%s", rule.label, rule.pattern.pattern)
                return GeneratedValidation(False, [rule.label], "Response contains diagnostic statements")
        return GeneratedValidation(True)

    @property
    def deflection_message(self) -> str:
        return self.rules.deflection_message
