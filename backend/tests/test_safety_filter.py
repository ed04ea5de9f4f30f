from __future__ import annotations

import re

from chat_core import SafetyFilter, SafetyRules
from chat_core.safety_rules import (
    DEFLECTION_MESSAGE,
    EMERGENCY_MESSAGE,
    REFUSAL_MESSAGE,
    URGENT_MESSAGE,
    KeywordRule,
    PatternRule,
)


def test_emergency_keyword_detected_case_insensitive():
    result = SafetyFilter().classify_incoming("I have CHEST PAIN since this morning")

    assert result.is_emergency
    assert result.matched_keywords == ["chest pain"]
    assert result.advisory == EMERGENCY_MESSAGE


def test_emergency_outranks_urgent_regardless_of_position():
    result = SafetyFilter().classify_incoming("high fever for days and now I can't breathe")

    assert result.tier == "emergency"
    assert "can't breathe" in result.matched_keywords
    assert "high fever" not in result.matched_keywords


def test_urgent_and_normal_tiers():
    safety = SafetyFilter()

    urgent = safety.classify_incoming("I think the cut has an infection")
    assert urgent.is_urgent
    assert urgent.advisory == URGENT_MESSAGE

    normal = safety.classify_incoming("How much water should I drink per day?")
    assert normal.tier == "normal"
    assert normal.matched_keywords == []
    assert normal.advisory is None


def test_prohibited_is_independent_of_tier():
    safety = SafetyFilter()
    text = "I am suicidal and want to know about euthanasia"

    assert safety.classify_incoming(text).is_emergency
    prohibited = safety.classify_prohibited(text)
    assert prohibited.prohibited
    assert prohibited.matched_topics == ["euthanasia"]
    assert prohibited.refusal == REFUSAL_MESSAGE
    assert not safety.classify_prohibited("What helps with a sore throat?").prohibited


def test_validate_generated_rejects_restricted_actions_and_diagnoses():
    safety = SafetyFilter()

    prescribing = safety.validate_generated("I would prescribe amoxicillin for this.")
    assert not prescribing.valid
    assert prescribing.violations == ["prescribe"]

    diagnosis = safety.validate_generated("Based on that, you have a migraine.")
    assert not diagnosis.valid
    assert diagnosis.reason == "Response contains diagnostic statements"

    assert not safety.validate_generated("Your DIAGNOSIS IS unclear").valid
    assert safety.validate_generated("Rest and fluids can help; see a doctor if it persists.").valid
    assert safety.deflection_message == DEFLECTION_MESSAGE


def test_custom_rule_tables_need_no_code_changes():
    rules = SafetyRules(
        incoming=(KeywordRule("fainted", "emergency"), KeywordRule("rash", "urgent")),
        prohibited=(KeywordRule("lottery", "prohibited"),),
        restricted_actions=(),
        diagnostic_patterns=(PatternRule(re.compile(r"clearly a", re.IGNORECASE), "diagnostic_statement"),),
    )
    safety = SafetyFilter(rules)

    assert safety.classify_incoming("my dad fainted").is_emergency
    assert safety.classify_incoming("chest pain").tier == "normal"
    assert safety.classify_prohibited("lottery numbers").prohibited
    assert not safety.validate_generated("This is clearly a sprain").valid
    assert safety.validate_generated("I would prescribe rest").valid
