"""
Shared domain types: tiers, sources, job options, audio assets and normalized
transcription results.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    """Subscription level governing quotas, priority and concurrency."""
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"


class SourceKind(str, Enum):
    """Where the media comes from."""
    STORED = "stored"
    REMOTE_URL = "remote_url"
    PLATFORM = "platform"


class JobType(str, Enum):
    """Kinds of work a job can request."""
    TRANSCRIPTION = "transcription"
    CHAPTER_GENERATION = "chapter_generation"
    SUMMARY = "summary"


class AccuracyMode(str, Enum):
    STANDARD = "standard"
    HIGH = "high"


OUTPUT_FORMATS = ("txt", "srt", "vtt", "json", "md")


class SourceDescriptor(BaseModel):
    """Source kind plus the raw reference supplied by the caller."""
    kind: SourceKind
    reference: str = Field(..., min_length=1, max_length=2048)
    duration_seconds: Optional[float] = Field(None, ge=0)

    @field_validator("reference")
    @classmethod
    def strip_reference(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reference must not be blank")
        return v


class JobOptions(BaseModel):
    """Options requested with a job."""
    language: Optional[str] = None
    formats: List[str] = Field(default_factory=lambda: ["txt", "srt"])
    accuracy: AccuracyMode = AccuracyMode.STANDARD
    preview_seconds: Optional[int] = Field(None, ge=1)
    offset_seconds: float = Field(0.0, ge=0)
    job_type: JobType = JobType.TRANSCRIPTION
    diarize: bool = False

    @field_validator("formats")
    @classmethod
    def check_formats(cls, v: List[str]) -> List[str]:
        cleaned = []
        for fmt in v:
            fmt = fmt.lower().strip()
            if fmt not in OUTPUT_FORMATS:
                raise ValueError(f"Unsupported format: {fmt}")
            if fmt not in cleaned:
                cleaned.append(fmt)
        return cleaned or ["txt"]


@dataclass
class AudioAsset:
    """A fetchable audio resource tied to one job."""
    url: str
    source_kind: SourceKind
    job_id: Optional[str] = None
    clipped: bool = False
    duration_seconds: Optional[float] = None
    offset_seconds: float = 0.0
    expires_at: Optional[datetime] = None
    content_type: Optional[str] = None
    blob_key: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.utcnow()) >= self.expires_at


@dataclass
class Word:
    """Provider word with trustworthy timing, used as a realignment anchor."""
    text: str
    start: float
    end: float
    speaker: Optional[int] = None
    confidence: Optional[float] = None


@dataclass
class Segment:
    start: float
    end: float
    text: str
    speaker: Optional[int] = None
    confidence: Optional[float] = None


@dataclass
class TranscriptionResult:
    """Normalized provider output."""
    text: str
    segments: List[Segment] = field(default_factory=list)
    words: List[Word] = field(default_factory=list)
    language: Optional[str] = None
    duration: Optional[float] = None
    provider: Optional[str] = None

    def is_well_formed(self) -> bool:
        """A result counts only if it carries text and ordered, non-overlapping segments."""
        if not self.text or not self.text.strip():
            return False
        previous_end = 0.0
        for seg in self.segments:
            if seg.end < seg.start or seg.start < previous_end - 1e-6:
                return False
            previous_end = seg.end
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "segments": [asdict(s) for s in self.segments],
            "words": [asdict(w) for w in self.words],
            "language": self.language,
            "duration": self.duration,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptionResult":
        return cls(
            text=data.get("text", ""),
            segments=[Segment(**s) for s in data.get("segments", [])],
            words=[Word(**w) for w in data.get("words", [])],
            language=data.get("language"),
            duration=data.get("duration"),
            provider=data.get("provider"),
        )
