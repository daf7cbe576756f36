"""
Tests for PipelineOrchestrator.

Uses fake completion and evidence providers; no network.
"""

import asyncio
from typing import Any
from unittest.mock import patch

import pytest

from app.exceptions import (
    ConversationCancelledError,
    MalformedResponseError,
    TransientUpstreamError,
    UpstreamTimeoutError,
)
from app.models.api import ConflictPayload, ConversationRequest, PerspectivePayload
from app.models.domain import ProgressEvent
from app.observability.metrics import track_stage
from app.observability.tracing import trace_operation
from app.services.pipeline import CancellationToken, PipelineOrchestrator, PipelineStage
from app.services.prompts import FRUITS
from conftest import STAGE_OUTPUTS, FakeCompletionProvider, FakeEvidenceLookup

REQUEST = ConversationRequest(
    topic="Remote work",
    opinion_a="Remote work is more productive",
    opinion_b="Offices build better teams",
)


def make_orchestrator(
    completion: Any,
    evidence: Any,
    completion_timeout: float = 5,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        completion,
        evidence,
        completion_timeout=completion_timeout,
        search_max_results=3,
        pages_per_search=2,
        search_timeout=1,
        fetch_timeout=1,
    )


class TestFullRun:
    @pytest.mark.asyncio
    async def test_runs_stages_in_order_with_monotonic_progress(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        events: list[ProgressEvent] = []

        async def on_progress(event: ProgressEvent) -> None:
            events.append(event)

        orchestrator = make_orchestrator(fake_completion, fake_evidence)
        result = await orchestrator.run(REQUEST, on_progress)

        assert [action for action, _ in fake_completion.calls] == [
            "initial",
            "queries",
            "conflict",
            "supportQuery",
            "support",
            "final",
        ]
        assert [e.stage for e in events] == [
            "initial",
            "queries",
            "conflict",
            "supportQuery",
            "support",
            "final",
        ]
        progress = [e.progress for e in events]
        assert progress == sorted(progress)
        assert progress == [0.2, 0.35, 0.6, 0.7, 0.85, 1.0]

        titled = [e.result.stage_name for e in events if e.result is not None]
        assert titled == [
            "Initial Understanding",
            "Conflicting Perspectives",
            "Finding Common Ground",
            "Informed Perspectives",
        ]

        assert result.topic == "Remote work"
        assert result.summary_bullets == tuple(STAGE_OUTPUTS["final"]["summaryBullets"])
        assert result.narration == STAGE_OUTPUTS["final"]["narration"]
        assert len(result.perspective_a_links) == 2
        assert len(result.summary_links) == 2

    @pytest.mark.asyncio
    async def test_generated_queries_drive_the_searches(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        await make_orchestrator(fake_completion, fake_evidence).run(REQUEST)

        assert sorted(fake_evidence.searches[:2]) == sorted(
            [STAGE_OUTPUTS["queries"]["queryA"], STAGE_OUTPUTS["queries"]["queryB"]]
        )
        assert fake_evidence.searches[2] == STAGE_OUTPUTS["supportQuery"]["query"]

    @pytest.mark.asyncio
    async def test_labels_default_to_two_distinct_fruits(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        result = await make_orchestrator(fake_completion, fake_evidence).run(REQUEST)

        labels = {fruit.label for fruit in FRUITS}
        assert result.perspective_a_label in labels
        assert result.perspective_b_label in labels
        assert result.perspective_a_label != result.perspective_b_label

    @pytest.mark.asyncio
    async def test_caller_labels_are_kept(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        request = REQUEST.model_copy(
            update={"perspective_a_label": "Alice", "perspective_b_label": "Bob"}
        )
        result = await make_orchestrator(fake_completion, fake_evidence).run(request)

        assert (result.perspective_a_label, result.perspective_b_label) == ("Alice", "Bob")

    @pytest.mark.asyncio
    async def test_empty_evidence_still_completes(
        self, fake_completion: FakeCompletionProvider
    ) -> None:
        result = await make_orchestrator(fake_completion, FakeEvidenceLookup(fail=True)).run(REQUEST)

        assert result.summary_links == ()
        assert result.perspective_a_links == ()
        conflict_prompt = next(p for action, p in fake_completion.calls if action == "conflict")
        assert "No evidence found." in conflict_prompt


class TestFailures:
    @pytest.mark.asyncio
    async def test_completion_failure_aborts_without_partial_result(
        self, fake_evidence: FakeEvidenceLookup
    ) -> None:
        completion = FakeCompletionProvider(
            fail_on={"supportQuery": TransientUpstreamError("supportQuery", "HTTP 503")}
        )
        events: list[ProgressEvent] = []

        async def on_progress(event: ProgressEvent) -> None:
            events.append(event)

        with pytest.raises(TransientUpstreamError):
            await make_orchestrator(completion, fake_evidence).run(REQUEST, on_progress)

        assert [e.stage for e in events] == ["initial", "queries", "conflict"]
        assert "final" not in [action for action, _ in completion.calls]

    @pytest.mark.asyncio
    async def test_schema_violation_is_malformed(self, fake_evidence: FakeEvidenceLookup) -> None:
        outputs = dict(STAGE_OUTPUTS)
        outputs["queries"] = {"queryA": "only one"}

        with pytest.raises(MalformedResponseError):
            await make_orchestrator(FakeCompletionProvider(outputs=outputs), fake_evidence).run(
                REQUEST
            )

    @pytest.mark.asyncio
    async def test_slow_completion_times_out(self, fake_evidence: FakeEvidenceLookup) -> None:
        class SlowCompletion(FakeCompletionProvider):
            async def complete(self, action: str, prompt: str, *, audio: Any = None) -> dict:
                await asyncio.sleep(1)
                return await super().complete(action, prompt, audio=audio)

        orchestrator = make_orchestrator(SlowCompletion(), fake_evidence, completion_timeout=0.01)
        payload = PerspectivePayload(
            topic=REQUEST.topic, opinion_a=REQUEST.opinion_a, opinion_b=REQUEST.opinion_b
        )

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await orchestrator.run_queries(payload)

        assert exc_info.value.action == "queries"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start_runs_nothing(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        cancel = CancellationToken()
        cancel.cancel()

        with pytest.raises(ConversationCancelledError) as exc_info:
            await make_orchestrator(fake_completion, fake_evidence).run(REQUEST, cancel=cancel)

        assert exc_info.value.stage == PipelineStage.INITIAL.value
        assert fake_completion.calls == []

    @pytest.mark.asyncio
    async def test_cancel_mid_run_stops_before_next_stage(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        cancel = CancellationToken()
        events: list[ProgressEvent] = []

        async def on_progress(event: ProgressEvent) -> None:
            events.append(event)
            if event.stage == "queries":
                cancel.cancel()

        with pytest.raises(ConversationCancelledError) as exc_info:
            await make_orchestrator(fake_completion, fake_evidence).run(
                REQUEST, on_progress, cancel
            )

        assert exc_info.value.stage == "conflict"
        assert [e.stage for e in events] == ["initial", "queries"]
        assert [action for action, _ in fake_completion.calls] == ["initial", "queries"]


class TestSingleStages:
    @pytest.mark.asyncio
    async def test_conflict_returns_links_per_side(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        payload = ConflictPayload(
            topic="Remote work",
            opinion_a="Remote",
            opinion_b="Office",
            query_a="remote evidence",
            query_b="office evidence",
        )
        result = await make_orchestrator(fake_completion, fake_evidence).run_conflict(payload)

        assert result.summary_bullets == STAGE_OUTPUTS["conflict"]["summaryBullets"]
        assert [link.url for link in result.perspective_a_links] == [
            "https://example.org/one",
            "https://example.org/two",
        ]
        assert len(result.perspective_b_links) == 2

    @pytest.mark.asyncio
    async def test_single_stage_is_traced_and_timed(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        payload = PerspectivePayload(
            topic=REQUEST.topic, opinion_a=REQUEST.opinion_a, opinion_b=REQUEST.opinion_b
        )
        with (
            patch("app.services.pipeline.track_stage", wraps=track_stage) as timer,
            patch("app.services.pipeline.trace_operation", wraps=trace_operation) as span,
        ):
            await make_orchestrator(fake_completion, fake_evidence).run_support_query(payload)

        timer.assert_called_once_with("supportQuery")
        assert span.call_args.args == ("pipeline.supportQuery",)

    @pytest.mark.asyncio
    async def test_full_run_times_each_stage_once(
        self, fake_completion: FakeCompletionProvider, fake_evidence: FakeEvidenceLookup
    ) -> None:
        with patch("app.services.pipeline.track_stage", wraps=track_stage) as timer:
            await make_orchestrator(fake_completion, fake_evidence).run(REQUEST)

        assert [c.args[0] for c in timer.call_args_list] == [
            "initial",
            "queries",
            "conflict",
            "supportQuery",
            "support",
            "final",
        ]
