from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from datetime import datetime, timezone
from typing import Optional, List, Dict, Tuple, Any
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _unique(values: List[str]) -> List[str]:
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


class Platform(str, Enum):
    GMAIL = "gmail"
    TWITTER = "twitter"
    MANUAL = "manual"
    SLACK = "slack"
    DISCORD = "discord"
    OTHER = "other"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Impact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SuggestedAction(str, Enum):
    MERGE = "merge"
    KEEP_SEPARATE = "keep_separate"
    FLAG_FOR_REVIEW = "flag_for_review"


class AnalysisResult(BaseModel):
    """Structured AI analysis of a single feedback item."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    sentiment: Sentiment = Sentiment.NEUTRAL
    sentiment_score: float = 0.0
    priority: Priority = Priority.MEDIUM
    categories: List[str] = Field(default_factory=lambda: ["general"])
    confidence: float = 0.5
    themes: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    summary: str = ""
    user_intent: str = ""
    business_impact: Impact = Impact.MEDIUM
    suggested_action: str = ""
    is_fallback: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_single_category(cls, data: Any) -> Any:
        # Upstream sometimes answers with "category": "bug" instead of a list
        if isinstance(data, dict) and "categories" not in data and isinstance(data.get("category"), str):
            data = {**data, "categories": [data["category"]]}
        return data

    @field_validator("sentiment", "priority", "business_impact", mode="before")
    @classmethod
    def _lowercase_labels(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("sentiment_score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return _clamp(value, -1.0, 1.0)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp(value, 0.0, 1.0)

    @field_validator("categories")
    @classmethod
    def _normalize_categories(cls, value: List[str]) -> List[str]:
        cleaned = _unique([c.strip().lower() for c in value if c and c.strip()])
        return cleaned or ["general"]


class FeedbackItem(BaseModel):
    """Feedback row owned by the persistence store."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    content: str
    platform: Platform = Platform.MANUAL
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    analysis: Optional[AnalysisResult] = None

    @field_validator("platform", mode="before")
    @classmethod
    def _coerce_platform(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() not in {p.value for p in Platform}:
            return Platform.OTHER
        return value.lower() if isinstance(value, str) else value


class BatchAnalysis(BaseModel):
    """Aggregated analysis of a batch of feedback produced by one request."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    total_feedback: int = Field(0, ge=0)
    overall_sentiment: Sentiment = Sentiment.NEUTRAL
    average_sentiment_score: float = 0.0
    sentiment_distribution: Dict[str, int] = Field(default_factory=dict)
    priority_distribution: Dict[str, int] = Field(default_factory=dict)
    category_distribution: Dict[str, int] = Field(default_factory=dict)
    top_themes: List[str] = Field(default_factory=list)
    key_insights: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)
    summary: str = ""
    is_fallback: bool = False

    @field_validator("average_sentiment_score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return _clamp(value, -1.0, 1.0)

    @field_validator("sentiment_distribution", "priority_distribution", "category_distribution")
    @classmethod
    def _non_negative_counts(cls, value: Dict[str, int]) -> Dict[str, int]:
        if any(count < 0 for count in value.values()):
            raise ValueError("distribution counts must be non-negative")
        return value


class DuplicateVerdict(BaseModel):
    """Advisory result of comparing new feedback against recent items."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    is_duplicate: bool = False
    similarity_score: float = 0.0
    most_similar_id: Optional[str] = None
    suggested_action: SuggestedAction = SuggestedAction.KEEP_SEPARATE
    explanation: str = ""
    is_fallback: bool = False

    @field_validator("similarity_score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return _clamp(value, 0.0, 1.0)

    @field_validator("most_similar_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return str(value)


class Cluster(BaseModel):
    """Themed group of feedback items persisted with a stable storage id."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    theme: str
    description: str = ""
    severity: Severity = Severity.MEDIUM
    category: str = "general"
    member_ids: List[str] = Field(default_factory=list)
    source_item_count: int = Field(0, ge=0)
    suggested_action: str = ""
    position: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    computed_at: datetime = Field(default_factory=utcnow)

    @field_validator("member_ids", mode="before")
    @classmethod
    def _unique_members(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple, set)):
            return _unique([str(v) for v in value])
        return value


class ReconcilePlan(BaseModel):
    """Diff between persisted clusters and a freshly computed set."""
    updates: List[Tuple[str, Cluster]] = Field(default_factory=list)
    creates: List[Cluster] = Field(default_factory=list)
    orphans: List[str] = Field(default_factory=list)
