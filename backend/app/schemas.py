import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

PDF_MEDIA_TYPE = "application/pdf"


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class ThematicStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    ALIGNED = "ALIGNED"
    OUTLIER = "OUTLIER"


class CitationData(BaseModel):
    title: str
    journal: str | None = None
    year: str | None = None
    authors: list[str] = Field(default_factory=list)
    literature_type: Literal["Primary Research", "Review Article", "Other"] = "Other"
    main_topic: str


class DocumentAnalysis(BaseModel):
    title: str
    summary: str
    key_points: list[str] = Field(default_factory=list)
    citation_data: CitationData
    thematic_tags: list[str] = Field(default_factory=list)


class OutlierEntry(BaseModel):
    filename: str
    reason: str


class OutlierReport(BaseModel):
    main_theme: str
    outliers: list[OutlierEntry] = Field(default_factory=list)


class ReportStructure(BaseModel):
    background: str
    methods: str
    results: str
    discussion: str
    references: list[str] = Field(default_factory=list)


class RecommendedReading(BaseModel):
    title: str
    journal: str


class GapAnalysis(BaseModel):
    identified_gap: str
    recommended_reading: list[RecommendedReading] = Field(default_factory=list)
    future_research: str


class IncomingFile(NamedTuple):
    filename: str
    media_type: str
    content: bytes


class AnalyzedFile(BaseModel):
    id: str = Field(default_factory=new_id)
    filename: str
    media_type: str = PDF_MEDIA_TYPE
    size_bytes: int = 0
    page_count: int | None = None
    # Raw payload lives only in memory; it is never written to storage.
    content: bytes | None = Field(default=None, exclude=True, repr=False)
    status: AnalysisStatus = AnalysisStatus.PENDING
    result: DocumentAnalysis | None = None
    thematic_status: ThematicStatus = ThematicStatus.UNKNOWN
    outlier_reason: str | None = None
    error: str | None = None
    uploaded_at: datetime = Field(default_factory=utc_now)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Literal["user", "ai"]
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    citations: list[str] | None = None
    gap_analysis: GapAnalysis | None = None


class Project(BaseModel):
    id: str = Field(default_factory=new_id)
    nickname: str
    created_at: datetime = Field(default_factory=utc_now)
    files: list[AnalyzedFile] = Field(default_factory=list)
    chat_history: list[ChatMessage] = Field(default_factory=list)
    theme_description: str | None = None

    def next_pending(self) -> AnalyzedFile | None:
        return next((f for f in self.files if f.status == AnalysisStatus.PENDING), None)

    def completed_files(self) -> list[AnalyzedFile]:
        return [f for f in self.files if f.status == AnalysisStatus.COMPLETED]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in AnalysisStatus}
        for f in self.files:
            counts[f.status.value] += 1
        return counts


class ProjectCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    nickname: str = Field(..., min_length=1, max_length=200)


class ProjectSummary(BaseModel):
    id: str
    nickname: str
    created_at: datetime
    file_count: int
    theme_description: str | None


class CohesionSummary(BaseModel):
    theme_description: str | None
    aligned: list[str]
    outliers: list[OutlierEntry]
    unscreened: int


class QueueStatus(BaseModel):
    active_project_id: str | None
    processing: bool
    counts: dict[str, int]


class ChatMessageIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    message: str = Field(..., min_length=1)


class ChatReply(BaseModel):
    question: ChatMessage
    answer: ChatMessage


class ThemePreference(BaseModel):
    dark_mode: bool
