"""
Pipeline Orchestrator - staged, evidence-augmented perspective analysis.

Stages run strictly in order:

    START -> INITIAL -> QUERY_GEN -> CONFLICT_EVIDENCE -> SUPPORT_QUERY
          -> SUPPORT_EVIDENCE -> FINAL -> DONE

Each stage is also callable on its own (the per-action endpoint uses
them one at a time). Evidence failures degrade to empty evidence;
completion failures abort the run.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel
from structlog import get_logger

from app.config import settings
from app.exceptions import ConversationCancelledError, UpstreamTimeoutError
from app.models.api import (
    ConflictPayload,
    ConflictResult,
    ConversationRequest,
    FinalOutput,
    FinalPayload,
    InitialOutput,
    InitialPayload,
    PerspectivePayload,
    QueriesOutput,
    ReferenceLinkModel,
    StageOutput,
    SupportPayload,
    SupportQueryOutput,
    SupportResult,
    TranscribePayload,
    TranscriptionOutput,
)
from app.models.domain import AnalysisResult, Evidence, ProgressEvent, ReferenceLink, StageResult
from app.observability.metrics import track_stage
from app.observability.tracing import trace_operation
from app.services import prompts
from app.services.completion import CompletionProvider, InlineAudio, parse_completion
from app.services.evidence import EvidenceLookup, gather_evidence

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

LINKS_PER_SEARCH = 2

ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]


class PipelineStage(str, Enum):
    """Pipeline states; values double as the action names of each stage."""

    START = "start"
    INITIAL = "initial"
    QUERY_GEN = "queries"
    CONFLICT_EVIDENCE = "conflict"
    SUPPORT_QUERY = "supportQuery"
    SUPPORT_EVIDENCE = "support"
    FINAL = "final"
    DONE = "done"


STAGE_PROGRESS: dict[PipelineStage, float] = {
    PipelineStage.INITIAL: 0.2,
    PipelineStage.QUERY_GEN: 0.35,
    PipelineStage.CONFLICT_EVIDENCE: 0.6,
    PipelineStage.SUPPORT_QUERY: 0.7,
    PipelineStage.SUPPORT_EVIDENCE: 0.85,
    PipelineStage.FINAL: 1.0,
}

STAGE_TITLES: dict[PipelineStage, str] = {
    PipelineStage.INITIAL: "Initial Understanding",
    PipelineStage.CONFLICT_EVIDENCE: "Conflicting Perspectives",
    PipelineStage.SUPPORT_EVIDENCE: "Finding Common Ground",
    PipelineStage.FINAL: "Informed Perspectives",
}


class CancellationToken:
    """Set by the caller when the conversation is abandoned."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: PipelineStage) -> None:
        if self._event.is_set():
            raise ConversationCancelledError(stage.value)


@contextmanager
def _observe_stage(stage: str, **attributes: Any) -> Iterator[None]:
    """Span and duration histogram around one stage."""
    with trace_operation(f"pipeline.{stage}", **attributes), track_stage(stage):
        yield


def _links(evidence: Evidence) -> list[ReferenceLinkModel]:
    return [ReferenceLinkModel(title=link.title, url=link.url) for link in evidence.links(LINKS_PER_SEARCH)]


def _to_domain_links(links: list[ReferenceLinkModel]) -> tuple[ReferenceLink, ...]:
    return tuple(ReferenceLink(title=link.title, url=link.url) for link in links)


def _stage_result(
    stage: PipelineStage, bullets: list[str], narration: str, one_line_summary: str = ""
) -> StageResult:
    return StageResult(
        stage_name=STAGE_TITLES[stage],
        summary_bullets=tuple(bullets),
        narration=narration,
        one_line_summary=one_line_summary,
    )


class PipelineOrchestrator:
    """Runs the analysis stages against a completion provider and an evidence lookup."""

    def __init__(
        self,
        completion: CompletionProvider,
        evidence: EvidenceLookup,
        *,
        completion_timeout: float | None = None,
        search_max_results: int | None = None,
        pages_per_search: int | None = None,
        search_timeout: float | None = None,
        fetch_timeout: float | None = None,
    ) -> None:
        self.completion = completion
        self.evidence = evidence
        self.completion_timeout = completion_timeout or settings.completion_timeout_seconds
        self.search_max_results = search_max_results or settings.search_max_results
        self.pages_per_search = pages_per_search or settings.evidence_pages_per_search
        self.search_timeout = search_timeout or settings.evidence_search_timeout_seconds
        self.fetch_timeout = fetch_timeout or settings.evidence_fetch_timeout_seconds

    # ========================================================================
    # Individual stages
    # ========================================================================

    async def run_initial(self, payload: InitialPayload) -> InitialOutput:
        stage = PipelineStage.INITIAL.value
        with _observe_stage(stage, topic_length=len(payload.topic)):
            prompt = prompts.build_initial_prompt(payload)
            return await self._complete(stage, prompt, InitialOutput)

    async def run_queries(self, payload: PerspectivePayload) -> QueriesOutput:
        stage = PipelineStage.QUERY_GEN.value
        with _observe_stage(stage, topic_length=len(payload.topic)):
            prompt = prompts.build_queries_prompt(payload)
            return await self._complete(stage, prompt, QueriesOutput)

    async def run_conflict(self, payload: ConflictPayload) -> ConflictResult:
        """Search both sides concurrently, then ask for the points of tension."""
        stage = PipelineStage.CONFLICT_EVIDENCE.value
        with _observe_stage(stage, topic_length=len(payload.topic)):
            evidence_a, evidence_b = await asyncio.gather(
                self._gather(payload.query_a),
                self._gather(payload.query_b),
            )
            prompt = prompts.build_conflict_prompt(payload, evidence_a.text, evidence_b.text)
            output = await self._complete(stage, prompt, StageOutput)
        return ConflictResult(
            **output.model_dump(),
            perspective_a_links=_links(evidence_a),
            perspective_b_links=_links(evidence_b),
        )

    async def run_support_query(self, payload: PerspectivePayload) -> SupportQueryOutput:
        stage = PipelineStage.SUPPORT_QUERY.value
        with _observe_stage(stage, topic_length=len(payload.topic)):
            prompt = prompts.build_support_query_prompt(payload)
            return await self._complete(stage, prompt, SupportQueryOutput)

    async def run_support(self, payload: SupportPayload) -> SupportResult:
        stage = PipelineStage.SUPPORT_EVIDENCE.value
        with _observe_stage(stage, topic_length=len(payload.topic)):
            evidence = await self._gather(payload.query)
            prompt = prompts.build_support_prompt(payload, evidence.text)
            output = await self._complete(stage, prompt, StageOutput)
        return SupportResult(**output.model_dump(), summary_links=_links(evidence))

    async def run_final(self, payload: FinalPayload) -> FinalOutput:
        stage = PipelineStage.FINAL.value
        with _observe_stage(stage, topic_length=len(payload.topic)):
            prompt = prompts.build_final_prompt(payload)
            return await self._complete(stage, prompt, FinalOutput)

    async def transcribe(self, payload: TranscribePayload) -> TranscriptionOutput:
        """Extract topic and the two viewpoints from a recorded conversation."""
        audio = InlineAudio(data=payload.audio_data, mime_type=payload.mime_type)
        with _observe_stage("transcribeAndExtract", mime_type=payload.mime_type):
            return await self._complete(
                "transcribeAndExtract", prompts.TRANSCRIBE_PROMPT, TranscriptionOutput, audio=audio
            )

    # ========================================================================
    # Full run
    # ========================================================================

    async def run(
        self,
        request: ConversationRequest,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> AnalysisResult:
        """
        Run every stage in order and return the final analysis.

        Raises:
            ConversationCancelledError: cancel token set between or during stages
            UpstreamProviderError: a completion failed; nothing partial is returned
        """
        cancel = cancel or CancellationToken()
        base = request.model_dump(include={"topic", "opinion_a", "opinion_b"})
        state = PipelineStage.START

        async def advance(
            stage: PipelineStage,
            work: Callable[[], Awaitable[T]],
            result: Callable[[T], StageResult | None],
        ) -> T:
            nonlocal state
            cancel.raise_if_cancelled(stage)
            output = await work()
            # The stage output is discarded if the caller left while it ran
            cancel.raise_if_cancelled(stage)
            state = stage
            logger.debug("pipeline_stage_completed", stage=stage.value)
            if on_progress is not None:
                await on_progress(
                    ProgressEvent(stage=stage.value, progress=STAGE_PROGRESS[stage], result=result(output))
                )
            return output

        try:
            initial = await advance(
                PipelineStage.INITIAL,
                lambda: self.run_initial(
                    InitialPayload(**base, previous_analysis=request.previous_analysis)
                ),
                lambda o: _stage_result(
                    PipelineStage.INITIAL, o.summary_bullets, o.narration, o.one_line_summary
                ),
            )
            queries = await advance(
                PipelineStage.QUERY_GEN,
                lambda: self.run_queries(PerspectivePayload(**base)),
                lambda o: None,
            )
            conflict = await advance(
                PipelineStage.CONFLICT_EVIDENCE,
                lambda: self.run_conflict(
                    ConflictPayload(**base, query_a=queries.query_a, query_b=queries.query_b)
                ),
                lambda o: _stage_result(
                    PipelineStage.CONFLICT_EVIDENCE, o.summary_bullets, o.narration, o.one_line_summary
                ),
            )
            support_query = await advance(
                PipelineStage.SUPPORT_QUERY,
                lambda: self.run_support_query(PerspectivePayload(**base)),
                lambda o: None,
            )
            support = await advance(
                PipelineStage.SUPPORT_EVIDENCE,
                lambda: self.run_support(SupportPayload(**base, query=support_query.query)),
                lambda o: _stage_result(
                    PipelineStage.SUPPORT_EVIDENCE, o.summary_bullets, o.narration, o.one_line_summary
                ),
            )
            final = await advance(
                PipelineStage.FINAL,
                lambda: self.run_final(
                    FinalPayload(
                        **base,
                        initial_narration=initial.narration,
                        conflict_narration=conflict.narration,
                        support_narration=support.narration,
                    )
                ),
                lambda o: _stage_result(PipelineStage.FINAL, o.summary_bullets, o.narration),
            )
        except ConversationCancelledError:
            logger.info("pipeline_cancelled", last_completed_stage=state.value)
            raise
        except Exception as exc:
            logger.warning(
                "pipeline_failed",
                last_completed_stage=state.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        state = PipelineStage.DONE
        logger.info("pipeline_completed", stage=state.value, topic_length=len(request.topic))
        if request.perspective_a_label and request.perspective_b_label:
            label_a, label_b = request.perspective_a_label, request.perspective_b_label
        else:
            label_a, label_b = prompts.random_perspective_labels()

        return AnalysisResult(
            topic=request.topic,
            perspective_a_label=label_a,
            perspective_b_label=label_b,
            summary_bullets=tuple(final.summary_bullets),
            perspective_a_bullets=tuple(final.perspective_a_bullets),
            perspective_b_bullets=tuple(final.perspective_b_bullets),
            narration=final.narration,
            summary_links=_to_domain_links(support.summary_links),
            perspective_a_links=_to_domain_links(conflict.perspective_a_links),
            perspective_b_links=_to_domain_links(conflict.perspective_b_links),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _complete(
        self,
        action: str,
        prompt: str,
        model: type[T],
        *,
        audio: InlineAudio | None = None,
    ) -> T:
        try:
            data = await asyncio.wait_for(
                self.completion.complete(action, prompt, audio=audio),
                self.completion_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(action, self.completion_timeout) from exc
        return parse_completion(action, data, model)

    async def _gather(self, query: str) -> Evidence:
        return await gather_evidence(
            self.evidence,
            query,
            max_results=self.search_max_results,
            pages=self.pages_per_search,
            search_timeout=self.search_timeout,
            fetch_timeout=self.fetch_timeout,
        )
