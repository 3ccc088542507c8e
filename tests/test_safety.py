"""Tests for keyword classification, redaction and outbound message checks."""

import pytest

from app.agents.safety import (
    DEFAULT_KEYWORD_TABLE,
    EMPATHY_RESPONSES,
    KeywordTable,
    SafetyClassifier,
    SafetyResult,
    check_agent_message,
    empathy_response,
    escalation_description,
    redact,
)


@pytest.mark.parametrize(
    ("text", "category"),
    [
        ("Honestly I sometimes want to die", "safety"),
        ("I feel UNSAFE around the loading dock", "safety"),
        ("My lead keeps harassing me in standups", "harassment"),
        ("I was bullied during the offsite", "harassment"),
        ("I think I was discriminated against for the promotion", "discrimination"),
    ],
)
def test_classify_flags_keywords_case_insensitively(text, category):
    result = SafetyClassifier().classify(text)

    assert result.flagged
    assert result.category == category
    assert result.matched_term in text.lower()


def test_classify_clean_and_empty_text():
    classifier = SafetyClassifier()

    assert classifier.classify("Work is going fine this week") == SafetyResult(flagged=False)
    assert not classifier.classify("").flagged
    assert not classifier.classify(None).flagged


def test_earliest_term_in_table_wins():
    result = SafetyClassifier().classify("harassment made me want to die")

    assert result.category == "safety"
    assert result.severity == "critical"


@pytest.mark.parametrize(
    ("text", "category", "term"),
    [
        ("The harassment makes me feel unsafe", "harassment", "harassment"),
        ("I was bullied and then assaulted", "harassment", "bullied"),
        ("It's a hostile work environment and I feel unsafe", "harassment", "hostile work"),
        ("They discriminate against us and it feels like abuse", "discrimination", "discriminate"),
        ("I feel unsafe after being threatened", "safety", "unsafe"),
    ],
)
def test_term_order_decides_category_across_groups(text, category, term):
    result = SafetyClassifier().classify(text)

    assert (result.category, result.matched_term) == (category, term)


def test_entries_keep_declared_order():
    table = KeywordTable.from_entries(
        "test-2", [("  Quit Tomorrow ", "urgent"), ("unsafe", "safety"), ("   ", "safety")]
    )

    assert table.entries == (("quit tomorrow", "urgent"), ("unsafe", "safety"))
    assert SafetyClassifier(table).classify("unsafe, so I quit tomorrow").category == "urgent"


def test_severity_for_non_safety_categories():
    assert SafetyClassifier().classify("this is harassment").severity == "high"
    assert SafetyResult(flagged=False).severity is None


def test_custom_keyword_table():
    table = KeywordTable.from_mapping("test-1", {"urgent": ["  Quit Tomorrow "]})
    classifier = SafetyClassifier(table)

    result = classifier.classify("I might quit tomorrow")

    assert table.terms() == ["quit tomorrow"]
    assert result.category == "urgent"
    assert not classifier.classify("I want to die").flagged


def test_keyword_table_rejects_unknown_category():
    with pytest.raises(ValueError):
        KeywordTable.from_mapping("bad", {"gossip": ["rumor"]})
    with pytest.raises(ValueError):
        KeywordTable.from_entries("bad", [("rumor", "gossip")])


def test_default_table_is_versioned():
    assert DEFAULT_KEYWORD_TABLE.version
    assert "kill myself" in DEFAULT_KEYWORD_TABLE.terms()


def test_empathy_response_falls_back_to_urgent():
    assert empathy_response("harassment") == EMPATHY_RESPONSES["harassment"]
    assert empathy_response(None) == EMPATHY_RESPONSES["urgent"]
    assert empathy_response("other") == EMPATHY_RESPONSES["urgent"]


def test_redact_masks_identifiers():
    text = "card 4111 1111 1111 1111, ssn 123-45-6789, account 1234567890"

    redacted = redact(text)

    assert "4111" not in redacted
    assert "6789" not in redacted
    assert "[CC REDACTED]" in redacted
    assert "[SSN REDACTED]" in redacted
    assert "[ACCOUNT REDACTED]" in redacted


def test_escalation_description_is_bounded_and_mentions_term():
    result = SafetyResult(True, "harassment", "harassed")
    content = "I was harassed " + "again and again " * 40

    description = escalation_description(content, result)

    assert len(description) <= 200
    assert description.endswith('(matched "harassed")')
    assert "..." in description


def test_check_agent_message_blocks_sensitive_requests():
    check = check_agent_message("Before we continue, what's your SSN?")

    assert not check.allowed
    assert [v.type for v in check.violations] == ["ssn_request"]
    assert check.violations[0].description == "Agent asked for ssn data"


def test_check_agent_message_allows_manipulation_with_warning():
    check = check_agent_message("Why won't you answer? Everyone else has.")

    assert check.allowed
    assert [v.type for v in check.violations] == ["manipulation_attempt"]
    assert check.violations[0].severity == "medium"


def test_check_agent_message_clean():
    assert check_agent_message("How was your week?").violations == []
