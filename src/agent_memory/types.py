"""Record types shared by the store, the bridge and the tool layer."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class ExperienceType(str, Enum):
    """Kinds of experience rows."""

    EXPERIENCE = "experience"
    CORRECTION = "correction"
    INSIGHT = "insight"
    AUTO_CAPTURE = "auto_capture"
    SESSION_SUMMARY = "session_summary"

    @classmethod
    def parse(cls, value) -> "ExperienceType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown experience type {value!r} (expected one of: {allowed})") from None


class RecordOutcome(str, Enum):
    """What ``SQLiteStore.record`` did with a write."""

    CREATED = "created"
    DEDUPLICATED = "deduplicated"
    UPSERTED = "upserted"


class SearchUnavailableError(Exception):
    """The full-text query could not be executed (bad FTS5 syntax, missing index)."""


@dataclass
class RecordResult:
    id: int
    outcome: RecordOutcome


@dataclass
class Experience:
    """Full view of one experience row."""

    id: int
    type: str
    context: str
    action: str
    result: str
    success: bool
    tags: str
    project: str
    created_at: datetime
    deleted_at: Optional[datetime] = None
    normalized_hash: Optional[str] = None
    duplicate_count: int = 1
    last_seen_at: Optional[datetime] = None
    topic_key: Optional[str] = None
    revision_count: int = 1
    score: Optional[float] = None

    @property
    def tag_list(self) -> List[str]:
        return [t for t in self.tags.split(",") if t]

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class CompactExperience:
    """List/search view: metadata plus a fixed-length context snippet."""

    id: int
    type: str
    tags: str
    created_at: datetime
    success: bool
    project: str
    snippet: str
    topic_key: Optional[str] = None
    duplicate_count: int = 1
    revision_count: int = 1
    score: Optional[float] = None


@dataclass
class Preference:
    """A learned key/value belief. ``origin`` is only set by merged reads."""

    id: int
    key: str
    value: str
    confidence: float
    source: str
    scope: str
    confirmed_count: int = 1
    last_confirmed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    origin: Optional[str] = None

    def decay_factor(self, now: Optional[datetime] = None) -> float:
        from agent_memory.scoring import decay_factor

        return decay_factor(self.last_confirmed_at, now)

    def effective_confidence(self, now: Optional[datetime] = None) -> float:
        from agent_memory.scoring import effective_confidence

        return effective_confidence(self.confidence, self.last_confirmed_at, now)


@dataclass
class Pattern:
    id: int
    description: str
    category: str
    frequency: int
    examples: List[str] = field(default_factory=list)
    last_seen: Optional[datetime] = None


@dataclass
class PruneResult:
    experiences: int = 0
    preferences: int = 0


@dataclass
class MemoryStats:
    experiences: int = 0
    corrections: int = 0
    soft_deleted: int = 0
    global_preferences: int = 0
    project_preferences: int = 0
    patterns: int = 0
