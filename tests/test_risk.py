from __future__ import annotations

import allure
import pytest

from overseer.oversight.models import Severity, TriggerType
from overseer.oversight.risk import assess_escalation_risk

pytestmark = [
    allure.epic("Escalation Engine"),
    allure.feature("Risk Classification"),
]


@pytest.mark.parametrize(
    ("trigger_type", "expected"),
    [
        (TriggerType.UNCLEAR_REQUIREMENT, Severity.LOW),
        (TriggerType.MULTIPLE_APPROACHES, Severity.LOW),
        (TriggerType.BLOCKING_DECISION, Severity.MEDIUM),
        (TriggerType.MISSING_CAPABILITY, Severity.MEDIUM),
        (TriggerType.TASK_FAILURE, Severity.HIGH),
        (TriggerType.SECURITY, Severity.CRITICAL),
    ],
)
def test_trigger_baselines(trigger_type: TriggerType, expected: Severity) -> None:
    assessment = assess_escalation_risk(trigger_type=trigger_type, question_text="Which one?")

    assert assessment.severity == expected
    assert assessment.low_risk is (expected == Severity.LOW)


def test_security_keywords_in_evidence_make_it_critical() -> None:
    assessment = assess_escalation_risk(
        trigger_type=TriggerType.UNCLEAR_REQUIREMENT,
        question_text="Which config file?",
        evidence=["found a Password in settings.yaml"],
    )

    assert assessment.severity == Severity.CRITICAL
    assert assessment.matched_rule == "security_keyword"
    assert assessment.matched_pattern == "password"


def test_destructive_keywords_raise_to_at_least_high() -> None:
    low = assess_escalation_risk(
        trigger_type=TriggerType.MULTIPLE_APPROACHES,
        question_text="Drop table invoices_tmp or keep it?",
    )
    high = assess_escalation_risk(
        trigger_type=TriggerType.TASK_FAILURE,
        question_text="Retry the production deploy?",
    )

    assert low.severity == Severity.HIGH
    assert low.matched_pattern == "drop table"
    assert high.severity == Severity.HIGH


def test_severity_ordering() -> None:
    assert Severity.LOW.raised() == Severity.MEDIUM
    assert Severity.CRITICAL.raised() == Severity.CRITICAL
    assert Severity.HIGH.rank > Severity.MEDIUM.rank
