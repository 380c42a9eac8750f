"""
Refinement and realignment engine for Chinese transcripts.

The engine runs an explicit ordered list of steps over a draft holding the
transcript text and its segments:

1. Deterministic punctuation normalization per segment
2. Heuristic terminal punctuation from segment duration and pause
3. Optional LLM punctuation (segment or full-text mode)
4. Latin transliteration noise fix
5. Sentence re-split and realignment to word anchors

Nothing runs unless the text passes the logographic-dominance check. Realignment
never fails a job: when it cannot be done, the segments keep their original
timings.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .chinese_punctuation import (
    add_terminal_punctuation,
    is_chinese,
    normalize_segments_punctuation,
    rebuild_text,
)
from .error_handling import RealignmentFailure, log_pipeline_error
from .models import Segment, Word
from .punctuation_restorer import LLMPunctuationRestorer
from .sentence_align import DEFAULT_OVERSHOOT, align_sentences_with_anchors
from .transcript_cleaner import fix_latin_noise, fix_latin_noise_in_segments

logger = logging.getLogger(__name__)


@dataclass
class RefinementResult:
    """Refined transcript text and segments."""
    text: str
    segments: List[Segment]
    applied: bool = False
    realigned: bool = False
    steps: List[str] = field(default_factory=list)


@dataclass
class RefinementContext:
    language: Optional[str]
    anchors: Sequence[Word] = ()
    job_id: Optional[str] = None


class RefinementStep(ABC):
    """One transformation of the draft."""

    name = "step"

    @abstractmethod
    async def apply(self, draft: RefinementResult, context: RefinementContext) -> RefinementResult:
        pass


class PunctuationNormalizationStep(RefinementStep):
    name = "normalize_punctuation"

    async def apply(self, draft: RefinementResult, context: RefinementContext) -> RefinementResult:
        segments = normalize_segments_punctuation(draft.segments)
        text = rebuild_text(segments) if segments else draft.text
        return RefinementResult(text, segments, draft.applied, draft.realigned, draft.steps)


class TerminalPunctuationStep(RefinementStep):
    name = "terminal_punctuation"

    async def apply(self, draft: RefinementResult, context: RefinementContext) -> RefinementResult:
        segments = add_terminal_punctuation(draft.segments)
        text = rebuild_text(segments) if segments else draft.text
        return RefinementResult(text, segments, draft.applied, draft.realigned, draft.steps)


class LLMPunctuationStep(RefinementStep):
    """Runs the LLM restorer in one of two mutually exclusive modes."""

    name = "llm_punctuation"

    def __init__(self, restorer: LLMPunctuationRestorer, mode: str = "segment"):
        if mode not in ("segment", "full_text"):
            raise ValueError(f"Unknown LLM punctuation mode: {mode}")
        self.restorer = restorer
        self.mode = mode

    async def apply(self, draft: RefinementResult, context: RefinementContext) -> RefinementResult:
        language = context.language or 'zh'
        if self.mode == "segment":
            segments = await self.restorer.punctuate_segments(draft.segments, language)
            text = rebuild_text(segments) if segments else draft.text
            return RefinementResult(text, segments, draft.applied, draft.realigned, draft.steps)

        punctuated = await self.restorer.punctuate_text(draft.text, language)
        if punctuated is None:
            return draft
        return RefinementResult(punctuated, draft.segments, draft.applied, draft.realigned, draft.steps)


class LatinNoiseStep(RefinementStep):
    name = "latin_noise"

    async def apply(self, draft: RefinementResult, context: RefinementContext) -> RefinementResult:
        segments, _ = fix_latin_noise_in_segments(draft.segments)
        return RefinementResult(fix_latin_noise(draft.text), segments, draft.applied, draft.realigned, draft.steps)


class RealignmentStep(RefinementStep):
    """Re-split the refined text into sentences timed from word anchors."""

    name = "realign"

    def __init__(self, overshoot: float = DEFAULT_OVERSHOOT):
        self.overshoot = overshoot

    async def apply(self, draft: RefinementResult, context: RefinementContext) -> RefinementResult:
        try:
            segments = align_sentences_with_anchors(
                draft.text, context.anchors, is_zh=True, overshoot=self.overshoot
            )
        except RealignmentFailure as e:
            log_pipeline_error(e, context.job_id, None, "realignment", level=logging.INFO)
            return draft
        return RefinementResult(draft.text, segments, draft.applied, True, draft.steps)


class RefinementEngine:
    """
    Applies the refinement steps in order.

    Usage:
        engine = RefinementEngine.from_settings(settings)
        result = await engine.refine(text, segments, "zh", anchors=words)
    """

    def __init__(self, steps: Optional[List[RefinementStep]] = None):
        self.steps = steps if steps is not None else self.default_steps()

    @staticmethod
    def default_steps(
        restorer: Optional[LLMPunctuationRestorer] = None,
        llm_mode: str = "off",
        overshoot: float = DEFAULT_OVERSHOOT,
    ) -> List[RefinementStep]:
        steps: List[RefinementStep] = [PunctuationNormalizationStep(), TerminalPunctuationStep()]
        if restorer is not None and restorer.is_configured and llm_mode != "off":
            steps.append(LLMPunctuationStep(restorer, llm_mode))
        steps.extend([LatinNoiseStep(), RealignmentStep(overshoot)])
        return steps

    @classmethod
    def from_settings(cls, settings, transport=None) -> "RefinementEngine":
        mode = getattr(settings.punctuate_llm_mode, "value", settings.punctuate_llm_mode)
        restorer = LLMPunctuationRestorer.from_settings(settings, transport=transport)
        return cls(cls.default_steps(restorer, mode, settings.align_overshoot_ratio))

    async def refine(
        self,
        text: str,
        segments: List[Segment],
        language: Optional[str],
        anchors: Optional[Sequence[Word]] = None,
        job_id: Optional[str] = None,
    ) -> RefinementResult:
        """
        Refine a transcript.

        Args:
            text: Transcript text
            segments: Provider segments, time-ordered
            language: Detected or requested language tag
            anchors: Word timings used for realignment
            job_id: Owning job, for logging

        Returns:
            RefinementResult; identical to the input when the text is not
            predominantly Chinese
        """
        if not is_chinese(language, text):
            return RefinementResult(text, list(segments))

        context = RefinementContext(language, list(anchors or ()), job_id)
        draft = RefinementResult(text, list(segments), applied=True)
        for step in self.steps:
            draft = await step.apply(draft, context)
            draft.steps.append(step.name)

        logger.info(
            f"Refined transcript for job {job_id}: {len(segments)} -> {len(draft.segments)} segments, "
            f"realigned={draft.realigned}"
        )
        return draft
