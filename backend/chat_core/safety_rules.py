from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class KeywordRule:
    keyword: str
    tier: str


@dataclass(frozen=True)
class PatternRule:
    pattern: re.Pattern[str]
    label: str


def _keywords(tier: str, *keywords: str) -> tuple[KeywordRule, ...]:
    return tuple(KeywordRule(keyword=keyword, tier=tier) for keyword in keywords)


INCOMING_RULES = _keywords(
    "emergency",
    "chest pain",
    "heart attack",
    "can't breathe",
    "difficulty breathing",
    "severe bleeding",
    "choking",
    "stroke",
    "seizure",
    "unconscious",
    "suicidal",
    "kill myself",
    "overdose",
    "severe pain",
    "anaphylaxis",
) + _keywords(
    "urgent",
    "high fever",
    "blood in stool",
    "blood in urine",
    "worsening",
    "severe vomiting",
    "dehydrated",
    "infection",
)

PROHIBITED_RULES = _keywords(
    "prohibited",
    "abortion",
    "euthanasia",
    "drug synthesis",
    "self-surgery",
)

RESTRICTED_ACTION_RULES = _keywords(
    "restricted",
    "prescribe",
    "diagnosis",
    "stop taking medication",
)

DIAGNOSTIC_RULES = (
    PatternRule(re.compile(r"you have\s+(?:a|an|the)\s+\w+", re.IGNORECASE), "diagnostic language"),
    PatternRule(re.compile(r"this is\s+(?:a|an|the)\s+\w+", re.IGNORECASE), "diagnostic language"),
    PatternRule(re.compile(r"you are suffering from", re.IGNORECASE), "diagnostic language"),
    PatternRule(re.compile(r"diagnosis is", re.IGNORECASE), "diagnostic language"),
)

# Highest severity first; classification returns the first tier with any match.
TIER_ORDER = ("emergency", "urgent")

EMERGENCY_MESSAGE = (
    "This may be a medical emergency. Call emergency services or go to the nearest ER immediately."
)
URGENT_MESSAGE = "Your symptoms suggest you should seek medical care soon."
REFUSAL_MESSAGE = "I cannot provide information on this topic. Please speak with a healthcare provider."
DEFLECTION_MESSAGE = (
    "I apologize, but I cannot provide a proper response to that. "
    "Please consult with a healthcare professional for appropriate guidance."
)


@dataclass(frozen=True)
class SafetyRules:
    incoming: tuple[KeywordRule, ...] = INCOMING_RULES
    prohibited: tuple[KeywordRule, ...] = PROHIBITED_RULES
    restricted_actions: tuple[KeywordRule, ...] = RESTRICTED_ACTION_RULES
    diagnostic_patterns: tuple[PatternRule, ...] = DIAGNOSTIC_RULES
    tier_order: tuple[str, ...] = TIER_ORDER
    advisories: dict[str, str] = field(
        default_factory=lambda: {"emergency": EMERGENCY_MESSAGE, "urgent": URGENT_MESSAGE}
    )
    refusal_message: str = REFUSAL_MESSAGE
    deflection_message: str = DEFLECTION_MESSAGE


DEFAULT_RULES = SafetyRules()
