"""
Tests for prompt builders and perspective labels.
"""

import random

from app.models.api import (
    AnalysisResultModel,
    ConflictPayload,
    FinalPayload,
    InitialPayload,
    SupportPayload,
)
from app.services.prompts import (
    FRUITS,
    build_conflict_prompt,
    build_final_prompt,
    build_initial_prompt,
    build_support_prompt,
    random_perspective_labels,
)

BASE = {"topic": "Cats vs dogs", "opinion_a": "Cats are better", "opinion_b": "Dogs are better"}


def test_initial_prompt_includes_both_perspectives() -> None:
    prompt = build_initial_prompt(InitialPayload(**BASE))

    assert 'Topic: "Cats vs dogs"' in prompt
    assert 'Perspective 1 (P1): "Cats are better"' in prompt
    assert 'Perspective 2 (P2): "Dogs are better"' in prompt
    assert "perspectiveABullets" in prompt
    assert "PREVIOUS ANALYSIS CONTEXT" not in prompt


def test_initial_prompt_carries_previous_analysis() -> None:
    previous = AnalysisResultModel(
        topic="Cats vs dogs",
        summary_bullets=["Pets matter"],
        perspective_a_bullets=["Cats are tidy"],
        perspective_b_bullets=["Dogs are loyal"],
        narration="Earlier we talked.",
    )
    prompt = build_initial_prompt(InitialPayload(**BASE, previous_analysis=previous))

    assert "PREVIOUS ANALYSIS CONTEXT" in prompt
    assert "Pets matter" in prompt
    assert "Earlier we talked." in prompt


def test_evidence_prompts_fall_back_when_empty() -> None:
    conflict = build_conflict_prompt(
        ConflictPayload(**BASE, query_a="cat studies", query_b="dog studies"), "", "dogs help"
    )
    support = build_support_prompt(SupportPayload(**BASE, query="pets synthesis"), "")

    assert "Evidence: No evidence found." in conflict
    assert "Evidence: dogs help" in conflict
    assert "Evidence: No evidence found." in support


def test_final_prompt_includes_journey() -> None:
    prompt = build_final_prompt(
        FinalPayload(
            **BASE,
            initial_narration="start",
            conflict_narration="tension",
            support_narration="synthesis",
        )
    )

    assert "- Initial agreement: start" in prompt
    assert "- Points of tension: tension" in prompt
    assert "- Synthesis: synthesis" in prompt


def test_random_labels_are_distinct_fruits() -> None:
    labels = {fruit.label for fruit in FRUITS}
    rng = random.Random(7)
    for _ in range(50):
        first, second = random_perspective_labels(rng)
        assert first in labels
        assert second in labels
        assert first != second
