"""
Transcription providers behind a normalized result shape.

Each provider exposes submit and poll. ``transcribe`` drives both with a bounded
number of polls and converts transport failures into ProviderFailure so the
dispatcher can fall through to the next provider.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .error_handling import ProviderFailure, ProviderTimeout
from .models import AudioAsset, Segment, TranscriptionResult, Word

logger = logging.getLogger(__name__)

WORD_GROUP_SECONDS = 10.0
NON_ASCII_SPACE = re.compile(r'([^\x00-\xff])\s+(?=[^\x00-\xff])')
NON_ASCII_LATIN = re.compile(r'([^\x00-\xff])\s+([A-Za-z0-9])')
LATIN_NON_ASCII = re.compile(r'([A-Za-z0-9])\s+([^\x00-\xff])')


@dataclass
class ProviderOptions:
    language: Optional[str] = None
    diarize: bool = False
    high_accuracy: bool = False
    is_preview: bool = False
    callback_url: Optional[str] = None


@dataclass
class ProviderJobRef:
    """Handle to work submitted to a provider."""
    provider_id: str
    ref_id: str
    status_url: Optional[str] = None
    result: Optional[TranscriptionResult] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def is_chinese_language(language: Optional[str]) -> bool:
    return bool(language) and language.lower().startswith(("zh", "cmn", "yue"))


def clean_cjk_spacing(text: str) -> str:
    """Drop spaces between CJK characters and keep one space at CJK/Latin boundaries."""
    text = NON_ASCII_SPACE.sub(r'\1', text)
    text = NON_ASCII_LATIN.sub(r'\1 \2', text)
    text = LATIN_NON_ASCII.sub(r'\1 \2', text)
    return text.strip()


def normalize_segments(segments: List[Segment]) -> List[Segment]:
    """Sort by start, drop empty text and clamp so segments never overlap."""
    ordered = sorted((s for s in segments if s.text and s.text.strip()), key=lambda s: (s.start, s.end))
    normalized: List[Segment] = []
    previous_end = 0.0
    for seg in ordered:
        start = max(seg.start, previous_end)
        end = max(seg.end, start)
        normalized.append(Segment(start, end, seg.text.strip(), seg.speaker, seg.confidence))
        previous_end = end
    return normalized


def group_words(words: List[Word], span_seconds: float = WORD_GROUP_SECONDS, joiner: str = " ") -> List[Segment]:
    """Build segments of roughly ``span_seconds`` from word timings."""
    segments: List[Segment] = []
    bucket: List[Word] = []
    for word in words:
        if bucket and word.end - bucket[0].start > span_seconds:
            segments.append(Segment(bucket[0].start, bucket[-1].end, joiner.join(w.text for w in bucket)))
            bucket = []
        bucket.append(word)
    if bucket:
        segments.append(Segment(bucket[0].start, bucket[-1].end, joiner.join(w.text for w in bucket)))
    return segments


class TranscriptionProvider(ABC):
    """Interchangeable transcription backend."""

    provider_id: str = "provider"

    def __init__(
        self,
        poll_interval: float = 2.0,
        max_polls: int = 150,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._transport = transport

    def _client(self, timeout: float = 60.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def submit(self, asset: AudioAsset, options: ProviderOptions) -> ProviderJobRef:
        """Start transcription. May return a ref with the result already attached."""
        pass

    @abstractmethod
    async def poll(self, ref: ProviderJobRef) -> Optional[TranscriptionResult]:
        """Return the result when ready, None while still running."""
        pass

    async def transcribe(self, asset: AudioAsset, options: ProviderOptions) -> TranscriptionResult:
        """
        Submit and poll until a result is available.

        Raises:
            ProviderFailure: On transport or provider errors
            ProviderTimeout: When the poll budget is exhausted
        """
        try:
            ref = await self.submit(asset, options)
            if ref.result is not None:
                return ref.result
            for _ in range(self.max_polls):
                await asyncio.sleep(self.poll_interval)
                result = await self.poll(ref)
                if result is not None:
                    return result
        except httpx.TimeoutException as e:
            raise ProviderTimeout(self.provider_id, f"request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ProviderFailure(
                self.provider_id, f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderFailure(self.provider_id, f"transport error: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderFailure(self.provider_id, f"malformed response: {e}") from e
        raise ProviderTimeout(self.provider_id, f"no result after {self.max_polls} polls")


class DeepgramProvider(TranscriptionProvider):
    """Deepgram prerecorded transcription (synchronous response)."""

    provider_id = "deepgram"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.deepgram.com/v1",
        model: str = "nova-2",
        request_timeout: float = 600.0,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.request_timeout = request_timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_params(self, options: ProviderOptions) -> Dict[str, str]:
        params = {
            "model": self.model,
            "punctuate": "true",
            "smart_format": "true",
            "utterances": "true",
            "paragraphs": "true",
            "diarize": "true" if options.diarize else "false",
            "numerals": "true",
        }
        if not options.language or options.language == "auto":
            params["detect_language"] = "true"
        elif options.language == "multi":
            params["language"] = "multi"
            params["endpointing"] = "100"
        else:
            params["language"] = options.language
        return params

    async def submit(self, asset: AudioAsset, options: ProviderOptions) -> ProviderJobRef:
        if not self.api_key:
            raise ProviderFailure(self.provider_id, "API key not configured")
        async with self._client(self.request_timeout) as client:
            response = await client.post(
                f"{self.base_url}/listen",
                params=self.build_params(options),
                headers={"Authorization": f"Token {self.api_key}"},
                json={"url": asset.url},
            )
            response.raise_for_status()
            data = response.json()

        request_id = data.get("metadata", {}).get("request_id") or data.get("request_id", "")
        return ProviderJobRef(self.provider_id, request_id, result=self.parse_response(data, options))

    async def poll(self, ref: ProviderJobRef) -> Optional[TranscriptionResult]:
        return ref.result

    def parse_response(self, data: Dict[str, Any], options: Optional[ProviderOptions] = None) -> TranscriptionResult:
        """Normalize a Deepgram response body."""
        channel = data["results"]["channels"][0]
        alternative = channel["alternatives"][0]
        language = channel.get("detected_language") or (options.language if options else None)
        chinese = is_chinese_language(language)

        words = [
            Word(
                text=w.get("punctuated_word") or w["word"],
                start=float(w["start"]),
                end=float(w["end"]),
                speaker=w.get("speaker"),
                confidence=w.get("confidence"),
            )
            for w in alternative.get("words", [])
        ]

        segments: List[Segment] = []
        paragraphs = (alternative.get("paragraphs") or {}).get("paragraphs") or []
        for paragraph in paragraphs:
            for sentence in paragraph.get("sentences", []):
                segments.append(Segment(
                    start=float(sentence["start"]),
                    end=float(sentence["end"]),
                    text=sentence.get("text", ""),
                    speaker=paragraph.get("speaker"),
                ))
        if not segments and words:
            segments = group_words(words, joiner="" if chinese else " ")

        utterances = data["results"].get("utterances") or []
        if utterances:
            for seg in segments:
                best_overlap, best_speaker = 0.0, None
                for utt in utterances:
                    overlap = min(seg.end, utt["end"]) - max(seg.start, utt["start"])
                    if overlap > best_overlap:
                        best_overlap, best_speaker = overlap, utt.get("speaker")
                if best_speaker is not None:
                    seg.speaker = best_speaker

        text = alternative.get("transcript") or " ".join(s.text for s in segments)
        if chinese:
            text = clean_cjk_spacing(text)
            for seg in segments:
                seg.text = clean_cjk_spacing(seg.text)

        return TranscriptionResult(
            text=text.strip(),
            segments=normalize_segments(segments),
            words=words,
            language=language,
            duration=data.get("metadata", {}).get("duration"),
            provider=self.provider_id,
        )


class WhisperReplicateProvider(TranscriptionProvider):
    """Whisper large-v3 hosted on Replicate (asynchronous predictions)."""

    provider_id = "whisper"

    def __init__(
        self,
        api_token: Optional[str],
        base_url: str = "https://api.replicate.com/v1",
        model: str = "large-v3",
        model_path: str = "openai/whisper",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.model_path = model_path

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"}

    def build_input(self, asset: AudioAsset, options: ProviderOptions) -> Dict[str, Any]:
        payload = {
            "audio": asset.url,
            "model": self.model,
            "translate": False,
            "temperature": 0,
            "transcription": "plain text",
            "suppress_tokens": "-1",
            "logprob_threshold": -1,
            "no_speech_threshold": 0.6,
            "condition_on_previous_text": True,
            "compression_ratio_threshold": 2.4,
            "temperature_increment_on_fallback": 0.2,
            "word_timestamps": True,
        }
        if options.language and options.language not in ("auto", "multi"):
            payload["language"] = options.language
        return payload

    async def submit(self, asset: AudioAsset, options: ProviderOptions) -> ProviderJobRef:
        if not self.api_token:
            raise ProviderFailure(self.provider_id, "API token not configured")
        body: Dict[str, Any] = {"input": self.build_input(asset, options)}
        if options.callback_url:
            body["webhook"] = options.callback_url
            body["webhook_events_filter"] = ["completed"]
        async with self._client(30.0) as client:
            response = await client.post(
                f"{self.base_url}/models/{self.model_path}/predictions",
                headers=self._headers(),
                json=body,
            )
            response.raise_for_status()
            data = response.json()
        ref = ProviderJobRef(
            self.provider_id,
            data["id"],
            status_url=(data.get("urls") or {}).get("get") or f"{self.base_url}/predictions/{data['id']}",
            raw={"language": options.language},
        )
        if data.get("status") == "succeeded":
            ref.result = self.parse_output(data.get("output"), options.language)
        return ref

    async def poll(self, ref: ProviderJobRef) -> Optional[TranscriptionResult]:
        async with self._client(30.0) as client:
            response = await client.get(ref.status_url, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        status = data.get("status")
        if status == "succeeded":
            return self.parse_output(data.get("output"), ref.raw.get("language"))
        if status in ("failed", "canceled"):
            raise ProviderFailure(self.provider_id, f"prediction {status}: {data.get('error')}")
        return None

    def parse_output(self, output: Any, language_hint: Optional[str] = None) -> TranscriptionResult:
        """Normalize Replicate whisper output (flat or nested under 'output')."""
        if not isinstance(output, dict):
            raise ValueError(f"unexpected output type {type(output).__name__}")
        if "output" in output and isinstance(output["output"], dict):
            output = output["output"]

        language = output.get("detected_language") or language_hint
        chinese = is_chinese_language(language)
        segments: List[Segment] = []
        words: List[Word] = []
        for raw in output.get("segments") or []:
            text = raw.get("text", "")
            segments.append(Segment(
                start=float(raw["start"]),
                end=float(raw["end"]),
                text=clean_cjk_spacing(text) if chinese else text.strip(),
                confidence=raw.get("avg_logprob"),
            ))
            for w in raw.get("words") or []:
                words.append(Word(
                    text=w.get("word", "").strip(),
                    start=float(w["start"]),
                    end=float(w["end"]),
                    confidence=w.get("probability"),
                ))

        text = output.get("transcription") or ("" if chinese else " ").join(s.text for s in segments)
        if chinese:
            text = clean_cjk_spacing(text)
        segments = normalize_segments(segments)
        return TranscriptionResult(
            text=text.strip(),
            segments=segments,
            words=words,
            language=language,
            duration=segments[-1].end if segments else 0.0,
            provider=self.provider_id,
        )
