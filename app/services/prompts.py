"""
Prompt builders for each completion action.

Every prompt asks for a bare JSON object whose keys match the output
schemas in app.models.api.
"""

import random
import textwrap
from dataclasses import dataclass

from app.models.api import (
    AnalysisResultModel,
    ConflictPayload,
    FinalPayload,
    InitialPayload,
    PerspectivePayload,
    SupportPayload,
)


@dataclass(frozen=True)
class Fruit:
    name: str
    emoji: str

    @property
    def label(self) -> str:
        return f"{self.name} {self.emoji}"


FRUITS: tuple[Fruit, ...] = (
    Fruit("Apple", "🍎"),
    Fruit("Banana", "🍌"),
    Fruit("Cherry", "🍒"),
    Fruit("Grape", "🍇"),
    Fruit("Lemon", "🍋"),
    Fruit("Mango", "🥭"),
    Fruit("Orange", "🍊"),
    Fruit("Peach", "🍑"),
    Fruit("Pear", "🍐"),
    Fruit("Strawberry", "🍓"),
)


def random_perspective_labels(rng: random.Random | None = None) -> tuple[str, str]:
    """Two distinct fruit labels for perspectives the caller did not name."""
    first, second = (rng or random).sample(FRUITS, 2)
    return first.label, second.label


def _header(payload: PerspectivePayload) -> str:
    return (
        f'Topic: "{payload.topic}"\n'
        f'Perspective 1 (P1): "{payload.opinion_a}"\n'
        f'Perspective 2 (P2): "{payload.opinion_b}"\n'
    )


def _previous_context(previous: AnalysisResultModel | None) -> str:
    if previous is None:
        return ""
    return (
        "\nPREVIOUS ANALYSIS CONTEXT (maintain continuity with this):\n"
        f"Previous Summary: {'; '.join(previous.summary_bullets)}\n"
        f"Previous P1 Insights: {'; '.join(previous.perspective_a_bullets)}\n"
        f"Previous P2 Insights: {'; '.join(previous.perspective_b_bullets)}\n"
        f"Previous Narration: {previous.narration}\n"
    )


def build_initial_prompt(payload: InitialPayload) -> str:
    return _header(payload) + _previous_context(payload.previous_analysis) + textwrap.dedent(
        """
        Return JSON with:
        - summaryBullets: 3 short bullets (max 10 words each) about common ground on this topic
        - perspectiveABullets: 3 encouraging bullets - why we'd AGREE with P1's view and what's valuable about it
        - perspectiveBBullets: 3 encouraging bullets - why we'd AGREE with P2's view and what's valuable about it
        - narration: 2-3 sentences. An engaging response to the two perspectives, optimistic tone, and respectful of the two perspectives.
        - oneLineSummary: One sentence (max 12 words) about shared understanding

        Return ONLY valid JSON, no markdown.
        """
    )


def build_queries_prompt(payload: PerspectivePayload) -> str:
    return _header(payload) + textwrap.dedent(
        """
        Generate search queries to find evidence supporting each perspective.

        Return JSON with:
        - queryA: Search query for P1's perspective (5-8 words)
        - queryB: Search query for P2's perspective (5-8 words)

        Return ONLY valid JSON.
        """
    )


def build_conflict_prompt(payload: ConflictPayload, evidence_a: str, evidence_b: str) -> str:
    return (
        _header(payload)
        + "\nResearch findings for each perspective:\n"
        + f'P1 search: "{payload.query_a}"\n'
        + f"Evidence: {evidence_a or 'No evidence found.'}\n\n"
        + f'P2 search: "{payload.query_b}"\n'
        + f"Evidence: {evidence_b or 'No evidence found.'}\n"
        + textwrap.dedent(
            """
            Bearing in mind that BOTH perspectives have validity:

            Return JSON with:
            - summaryBullets: 3 bullets on why each perspective might initially disagree with the other (while acknowledging both are valid)
            - narration: 1-2 sentence narration about the tension between perspectives - first person tone that is interested in the exploration.
            - oneLineSummary: One sentence (max 12 words) about the disagreement

            Return ONLY valid JSON.
            """
        )
    )


def build_support_query_prompt(payload: PerspectivePayload) -> str:
    return (
        _header(payload)
        + f'\nGenerate a search query to find nuanced perspectives or synthesis on "{payload.topic}".\n'
        + textwrap.dedent(
            """
            Return JSON with:
            - query: Search query (5-8 words)

            Return ONLY valid JSON.
            """
        )
    )


def build_support_prompt(payload: SupportPayload, evidence: str) -> str:
    return (
        _header(payload)
        + f'\nResearch on nuanced perspectives: "{payload.query}"\n'
        + f"Evidence: {evidence or 'No evidence found.'}\n"
        + textwrap.dedent(
            f"""
            Return JSON with:
            - summaryBullets: 3 bullets on how different views on "{payload.topic}" can coexist
            - narration: 1-2 sentence narration about the complementary nature of the two perspectives - first person tone that is interested in the exploration.
            - oneLineSummary: One sentence (max 12 words) about the synthesis

            Return ONLY valid JSON.
            """
        )
    )


def build_final_prompt(payload: FinalPayload) -> str:
    return (
        _header(payload)
        + "\nResearch journey:\n"
        + f"- Initial agreement: {payload.initial_narration}\n"
        + f"- Points of tension: {payload.conflict_narration}\n"
        + f"- Synthesis: {payload.support_narration}\n"
        + textwrap.dedent(
            """
            You're a top quality on-the-ground reporter - impartial, friendly, punchy with facts. Now that both perspectives are INFORMED:

            Return JSON with:
            - summaryBullets: 3 CONCISE bullets showing how both can grow their perspectives and find common ground after being informed
            - perspectiveABullets: 3 short, punchy bullets for P1 - valuable insights to know. Casual, fact-driven. NO greetings or addresses.
            - perspectiveBBullets: 3 short, punchy bullets for P2 - valuable insights to know. Casual, fact-driven. NO greetings or addresses.
            - narration: 2-3 sentences. Friendly, impartial. Show how understanding the full picture helps both perspectives see a richer point of view.

            Return ONLY valid JSON.
            """
        )
    )


TRANSCRIBE_PROMPT = textwrap.dedent(
    """
    Listen to this conversation recording and extract the following information:

    1. The main TOPIC being discussed
    2. Two distinct VIEWPOINTS or perspectives being debated
    3. A full transcript of the conversation

    Important:
    - If there are more than 2 speakers, identify the 2 most prominent opposing viewpoints
    - Each viewpoint should be a clear, concise statement (1-2 sentences)
    - If the conversation is unclear or has only one viewpoint, indicate low confidence

    Return ONLY a JSON object with this exact structure:
    {
      "topic": "The main subject being discussed",
      "viewpointA": "First perspective or position",
      "viewpointB": "Second, opposing perspective or position",
      "transcript": "Full conversation transcript with speaker labels if possible",
      "confidence": "high" | "medium" | "low"
    }
    """
).strip()
