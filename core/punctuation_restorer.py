"""
Optional LLM punctuation pass for Chinese transcripts.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint. The model is told to
restore punctuation only and never change wording. Every request is fail-soft: a
chunk or segment whose request fails keeps its original text.
"""

import asyncio
import logging
from dataclasses import replace
from typing import List, Optional

import httpx

from .chinese_punctuation import count_scripts
from .models import Segment

logger = logging.getLogger(__name__)

MIN_CHUNK = 1200
MAX_CHUNK = 2400
BATCH_DELAY_SECONDS = 0.15
MIN_SEGMENT_CHARS = 5
MIN_SEGMENT_CJK = 3

STRONG_BREAKS = '。！？'
SOFT_BREAKS = '；：，'

SYSTEM_PROMPT = (
    "You are a strict Chinese copy editor. Only restore missing punctuation, sentence "
    "breaks, and CJK/Latin spacing. Never translate or change wording. Return plain text "
    "in the original language."
)

USER_PROMPT = (
    "Language: {language}\n"
    "Rules:\n"
    "- Use Chinese punctuation（，。！？；：、“”‘’）;\n"
    "- Add missing commas/periods based on natural syntax;\n"
    "- Keep wording identical; adjust only punctuation/spacing;\n"
    "- Return text only.\n\n"
    "Text:\n{text}"
)


def chunk_text(text: str, max_len: int) -> List[str]:
    """
    Split text into request-sized chunks at punctuation where possible.

    A chunk closes at a sentence mark once it reaches 80% of ``max_len``, at a
    clause mark once it reaches ``max_len``, and unconditionally at 120%.
    """
    if not text:
        return []
    chunks: List[str] = []
    buf = ''
    for ch in text:
        buf += ch
        size = len(buf)
        if (size >= max_len * 0.8 and ch in STRONG_BREAKS) \
                or (size >= max_len and ch in SOFT_BREAKS) \
                or size >= max_len * 1.2:
            chunks.append(buf)
            buf = ''
    if buf:
        chunks.append(buf)
    return chunks


def is_sparse_chinese(text: str) -> bool:
    """True when there is too little CJK for the LLM pass to be worthwhile."""
    cjk, latin = count_scripts(text)
    letters = cjk + latin
    return cjk < 30 or (letters > 0 and cjk / letters < 0.05)


class LLMPunctuationRestorer:
    """Restore punctuation through a chat-completions model."""

    def __init__(
        self,
        api_key: Optional[str],
        api_base: str = "https://api.deepseek.com/v1",
        model: str = "deepseek-chat",
        chunk_size: int = 1800,
        concurrency: int = 3,
        batch_delay: float = BATCH_DELAY_SECONDS,
        request_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.model = model
        self.chunk_size = max(MIN_CHUNK, min(MAX_CHUNK, chunk_size))
        self.concurrency = max(1, min(8, concurrency))
        self.batch_delay = max(0.0, batch_delay)
        self.request_timeout = request_timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, **overrides) -> "LLMPunctuationRestorer":
        params = dict(
            api_key=settings.punctuate_llm_key,
            api_base=settings.punctuate_llm_base,
            model=settings.punctuate_llm_model,
            chunk_size=settings.punctuate_llm_chunk,
            concurrency=settings.punctuate_llm_concurrency,
        )
        params.update(overrides)
        return cls(**params)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _complete(self, client: httpx.AsyncClient, text: str, language: str, max_tokens: int) -> Optional[str]:
        """One chat completion; None on any failure."""
        try:
            response = await client.post(
                f"{self.api_base}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": USER_PROMPT.format(language=language, text=text)},
                    ],
                    "temperature": 0.2,
                    "max_tokens": max_tokens,
                },
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except httpx.HTTPStatusError as e:
            logger.warning(f"Punctuation request failed: status={e.response.status_code}")
            return None
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Punctuation request error: {e}")
            return None
        return (content or '').strip() or None

    async def _run_batches(self, items: List[str], language: str, token_budget) -> List[Optional[str]]:
        results: List[Optional[str]] = [None] * len(items)
        async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport) as client:
            for start in range(0, len(items), self.concurrency):
                indices = range(start, min(start + self.concurrency, len(items)))
                batch = await asyncio.gather(*(
                    self._complete(client, items[i], language, token_budget(items[i])) for i in indices
                ))
                for i, value in zip(indices, batch):
                    results[i] = value
                if start + self.concurrency < len(items) and self.batch_delay:
                    await asyncio.sleep(self.batch_delay)
        return results

    async def punctuate_text(self, text: str, language: str = 'zh') -> Optional[str]:
        """
        Punctuate a full text in chunks.

        Args:
            text: Transcript text
            language: Language tag; only Chinese tags are processed

        Returns:
            Punctuated text, or None when the pass does not apply
        """
        if not self.is_configured or not text:
            return None
        if 'zh' not in (language or '').lower() or is_sparse_chinese(text):
            logger.debug("Skipping LLM punctuation: text is not predominantly Chinese")
            return None

        parts = chunk_text(text, self.chunk_size)
        logger.info(f"LLM punctuation: model={self.model} chunks={len(parts)} concurrency={self.concurrency}")
        refined = await self._run_batches(parts, language, lambda _: 1500)
        failed = sum(1 for r in refined if r is None)
        if failed:
            logger.warning(f"LLM punctuation kept original text for {failed}/{len(parts)} chunk(s)")
        return ''.join(r if r is not None else p for r, p in zip(refined, parts)) or text

    async def punctuate_segments(self, segments: List[Segment], language: str = 'zh') -> List[Segment]:
        """
        Punctuate each segment independently; timestamps are never changed.

        Segments that are too short or carry too little CJK are left as they are.
        """
        if not self.is_configured or 'zh' not in (language or '').lower():
            return list(segments)

        eligible = [
            i for i, seg in enumerate(segments)
            if len(seg.text or '') >= MIN_SEGMENT_CHARS and count_scripts(seg.text)[0] >= MIN_SEGMENT_CJK
        ]
        if not eligible:
            return list(segments)

        texts = [segments[i].text for i in eligible]
        refined = await self._run_batches(texts, language, lambda t: min(1500, len(t) * 2))

        result = list(segments)
        changed = 0
        for i, new_text in zip(eligible, refined):
            if new_text and new_text != result[i].text:
                result[i] = replace(result[i], text=new_text)
                changed += 1
        logger.info(f"LLM punctuation refined {changed}/{len(segments)} segment(s)")
        return result
