"""Structured types shared by the rate limiter, pipeline and API layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Plan(Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    SCALE = "scale"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: Any) -> "Plan":
        """Map a stored plan string to a Plan, falling back to ``FREE``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.FREE


class WindowKind(Enum):
    SUSTAINED = "sustained"
    BURST = "burst"


@dataclass(frozen=True)
class RateLimitConfig:
    sustained_limit: int
    sustained_window: int
    burst_limit: int
    burst_window: int

    def validate(self) -> None:
        if self.burst_limit >= self.sustained_limit:
            raise ValueError("burst_limit must be lower than sustained_limit")
        if self.burst_window >= self.sustained_window:
            raise ValueError("burst_window must be shorter than sustained_window")


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one quota check. Reset values are unix seconds."""

    limit_sustained: int
    limit_burst: int
    allowed_sustained: bool
    allowed_burst: bool
    remaining_sustained: int
    remaining_burst: int
    reset_sustained: int
    reset_burst: int
    fail_open: bool = False

    @property
    def allowed(self) -> bool:
        return self.allowed_sustained and self.allowed_burst

    @property
    def exceeded_window(self) -> WindowKind | None:
        # The longer horizon wins when both windows are exceeded.
        if not self.allowed_sustained:
            return WindowKind.SUSTAINED
        if not self.allowed_burst:
            return WindowKind.BURST
        return None


@dataclass(frozen=True)
class ValueRange:
    min: float | None = None
    max: float | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ValueRange | None":
        if not isinstance(payload, dict):
            return None
        low = _coerce_number(payload.get("min"))
        high = _coerce_number(payload.get("max"))
        if low is None and high is None:
            return None
        return cls(min=low, max=high)

    def contains(self, value: float, *, default_min: float, default_max: float) -> bool:
        low = self.min if self.min is not None else default_min
        high = self.max if self.max is not None else default_max
        return low <= value <= high

    def to_dict(self) -> dict[str, float]:
        out: dict[str, float] = {}
        if self.min is not None:
            out["min"] = self.min
        if self.max is not None:
            out["max"] = self.max
        return out


@dataclass(frozen=True)
class QueryFilters:
    bpm: ValueRange | None = None
    key: tuple[str, ...] = ()
    genre: tuple[str, ...] = ()
    mood: tuple[str, ...] = ()
    energy: ValueRange | None = None
    duration: ValueRange | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "QueryFilters":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            bpm=ValueRange.from_payload(payload.get("bpm")),
            key=_string_tuple(payload.get("key")),
            genre=_string_tuple(payload.get("genre")),
            mood=_string_tuple(payload.get("mood")),
            energy=ValueRange.from_payload(payload.get("energy")),
            duration=ValueRange.from_payload(payload.get("duration")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in ("bpm", "energy", "duration"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value.to_dict()
        for name in ("key", "genre", "mood"):
            value = getattr(self, name)
            if value:
                out[name] = list(value)
        return out


INTENTS = ("search", "analyze", "discover")
SORT_ORDERS = ("relevance", "popularity", "date", "bpm", "energy")


@dataclass(frozen=True)
class ProcessedQuery:
    intent: str
    search_terms: tuple[str, ...]
    filters: QueryFilters = field(default_factory=QueryFilters)
    max_results: int = 10
    sort_by: str = "relevance"

    @classmethod
    def fallback(cls, raw_text: str) -> "ProcessedQuery":
        """Single-term query used when the understanding stage fails."""
        return cls(intent="search", search_terms=(raw_text,))

    @classmethod
    def from_payload(cls, payload: Any) -> "ProcessedQuery":
        """Validate a language-model JSON object.

        Raises:
            ValueError: If ``intent`` or ``searchTerms`` is missing or unusable.
        """
        if not isinstance(payload, dict):
            raise ValueError("processed query must be an object")
        intent = str(payload.get("intent") or "").strip().lower()
        if intent not in INTENTS:
            raise ValueError(f"unsupported intent: {intent!r}")
        terms = _string_tuple(payload.get("searchTerms"))
        if not terms:
            raise ValueError("searchTerms must contain at least one term")
        max_results = _coerce_number(payload.get("maxResults"))
        sort_by = str(payload.get("sortBy") or "relevance").strip()
        return cls(
            intent=intent,
            search_terms=terms,
            filters=QueryFilters.from_payload(payload.get("filters")),
            max_results=int(max_results) if max_results and max_results > 0 else 10,
            sort_by=sort_by if sort_by in SORT_ORDERS else "relevance",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "searchTerms": list(self.search_terms),
            "filters": self.filters.to_dict(),
            "maxResults": self.max_results,
            "sortBy": self.sort_by,
        }


ANALYSIS_PENDING = "pending"
ANALYSIS_COMPLETED = "completed"
ANALYSIS_FAILED = "failed"

# Fields the audio-analysis provider owns; its values replace language-model guesses.
_ANALYSIS_AUTHORITATIVE = (
    "bpm",
    "musical_key",
    "camelot_key",
    "energy_level",
    "loudness",
    "waveform_peaks",
    "tempo_confidence",
    "key_confidence",
)


@dataclass
class TrackCandidate:
    """A search hit accumulating metadata as pipeline stages complete.

    Merge rules:
    - ``fill_missing`` only sets fields that are still unset.
    - ``apply_metadata`` replaces title/artist when the platform returns them.
    - ``apply_analysis`` overwrites analysis fields; genre/mood only fill gaps.
    """

    youtube_id: str
    title: str
    artist: str | None = None
    description: str | None = None
    duration_seconds: int | None = None
    thumbnail_url: str | None = None
    youtube_url: str | None = None
    audio_url: str | None = None
    bpm: float | None = None
    musical_key: str | None = None
    camelot_key: str | None = None
    energy_level: float | None = None
    loudness: float | None = None
    tempo_confidence: float | None = None
    key_confidence: float | None = None
    waveform_peaks: list[float] | None = None
    genre: str | None = None
    mood: str | None = None
    tags: list[str] = field(default_factory=list)
    analysis_status: str = ANALYSIS_PENDING
    analysis_completed_at: datetime | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_search_result(cls, result: dict[str, Any]) -> "TrackCandidate":
        video_id = str(result.get("id") or "").strip()
        if not video_id:
            raise ValueError("search result is missing an id")
        return cls(
            youtube_id=video_id,
            title=str(result.get("title") or "").strip() or video_id,
            artist=_clean_str(result.get("channelTitle")),
            description=_clean_str(result.get("description")),
            duration_seconds=_coerce_int(result.get("durationSeconds")),
            thumbnail_url=_clean_str(result.get("thumbnailUrl")),
            youtube_url=f"https://www.youtube.com/watch?v={video_id}",
        )

    @property
    def is_analyzed(self) -> bool:
        return self.analysis_status == ANALYSIS_COMPLETED

    def fill_missing(self, **values: Any) -> None:
        for name, value in values.items():
            if not _has_value(value):
                continue
            if getattr(self, name) is None:
                setattr(self, name, value)

    def apply_metadata(self, metadata: dict[str, Any] | None) -> None:
        if not metadata:
            return
        title = _clean_str(metadata.get("title"))
        if title:
            self.title = title
        artist = _clean_str(metadata.get("artist"))
        if artist:
            self.artist = artist
        self.fill_missing(
            duration_seconds=_coerce_int(metadata.get("duration")),
            thumbnail_url=_clean_str(metadata.get("thumbnailUrl")),
            description=_clean_str(metadata.get("description")),
        )

    def apply_guesses(self, guesses: dict[str, Any] | None) -> None:
        """Fill gaps from language-model guesses (genre/mood/bpm/key)."""
        if not guesses:
            return
        self.fill_missing(
            genre=_clean_str(guesses.get("genre")),
            mood=_clean_str(guesses.get("mood")),
            bpm=_coerce_number(guesses.get("bpm")),
            musical_key=_clean_str(guesses.get("key")),
        )

    def apply_analysis(self, analysis: dict[str, Any]) -> None:
        values = {
            "bpm": _coerce_number(analysis.get("bpm")),
            "musical_key": _clean_str(analysis.get("musicalKey")),
            "camelot_key": _clean_str(analysis.get("camelotKey")),
            "energy_level": _coerce_number(analysis.get("energyLevel")),
            "loudness": _coerce_number(analysis.get("loudness")),
            "waveform_peaks": analysis.get("waveformPeaks") or None,
            "tempo_confidence": _coerce_number(analysis.get("tempoConfidence")),
            "key_confidence": _coerce_number(analysis.get("keyConfidence")),
        }
        for name in _ANALYSIS_AUTHORITATIVE:
            if values[name] is not None:
                setattr(self, name, values[name])
        self.fill_missing(
            genre=_clean_str(analysis.get("genre")),
            mood=_clean_str(analysis.get("mood")),
        )
        self.analysis_status = ANALYSIS_COMPLETED
        self.analysis_completed_at = datetime.now(timezone.utc)

    def mark_analysis_failed(self) -> None:
        self.analysis_status = ANALYSIS_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "youtubeId": self.youtube_id,
            "title": self.title,
            "artist": self.artist,
            "durationSeconds": self.duration_seconds,
            "thumbnailUrl": self.thumbnail_url,
            "youtubeUrl": self.youtube_url,
            "audioUrl": self.audio_url,
            "bpm": self.bpm,
            "musicalKey": self.musical_key,
            "camelotKey": self.camelot_key,
            "energyLevel": self.energy_level,
            "loudness": self.loudness,
            "tempoConfidence": self.tempo_confidence,
            "keyConfidence": self.key_confidence,
            "waveformPeaks": self.waveform_peaks,
            "genre": self.genre,
            "mood": self.mood,
            "tags": list(self.tags),
            "analysisStatus": self.analysis_status,
            "analysisCompletedAt": _iso(self.analysis_completed_at),
            "createdAt": _iso(self.created_at),
        }


STEP_COMPLETED = "completed"
STEP_FAILED = "failed"


@dataclass
class ProcessingStep:
    step: str
    status: str
    duration_ms: int
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "status": self.status,
            "duration": self.duration_ms,
            "details": dict(self.details),
        }


@dataclass
class PipelineRun:
    """Per-request aggregate; only its summary outlives the request."""

    query: str
    processed_query: ProcessedQuery | None = None
    candidates: list[TrackCandidate] = field(default_factory=list)
    steps: list[ProcessingStep] = field(default_factory=list)
    confidence: float = 0.0

    def step(self, name: str) -> ProcessingStep | None:
        return next((s for s in self.steps if s.step == name), None)

    def to_result(self) -> dict[str, Any]:
        return {
            "tracks": [c.to_dict() for c in self.candidates],
            "totalFound": len(self.candidates),
            "confidence": self.confidence,
            "processingSteps": [s.to_dict() for s in self.steps],
        }


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def _coerce_int(value: Any) -> int | None:
    number = _coerce_number(value)
    return int(number) if number is not None else None


def _string_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    out = []
    for item in value:
        text = _clean_str(item)
        if text:
            out.append(text)
    return tuple(out)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class UsageRecord:
    """One completed protected request. Append-only."""

    subject_id: str
    key_id: str | None
    endpoint: str
    method: str
    status_code: int
    latency_ms: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.subject_id,
            "api_key_id": self.key_id,
            "endpoint": self.endpoint,
            "method": self.method,
            "status_code": self.status_code,
            "response_time_ms": self.latency_ms,
            "created_at": self.timestamp.isoformat(),
        }
