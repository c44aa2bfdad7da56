"""
Data Models Module
Pydantic models for session state, usage accounting and API request/response schemas.
"""

from enum import Enum
from typing import Dict, List, Optional, Set
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from voice_screener.core.constants import STATUS_CREATED, TRANSCRIBING_PLACEHOLDER


class CamelModel(BaseModel):
    """Base for models exchanged with the browser-era API (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    """Conversation roles"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionDescriptor(CamelModel):
    """Interview session as served by the backend. Never mutated on the client."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore"
    )

    session_id: Optional[str] = None
    system_prompt: str = ""
    candidate_name: Optional[str] = None
    job_title: Optional[str] = None
    use_alternate_provider: bool = False
    # Position links resolve to a real session once the candidate is known
    is_position: bool = False


class ConversationTurn(BaseModel):
    """One transcript entry keyed by the provider item identifier."""
    item_id: str = Field(..., description="Provider-assigned (or synthesized) item identifier")
    role: Role = Field(..., description="Role of the speaker (user, assistant, system)")
    text: str = Field(default="", description="Best transcript text seen so far")
    pending: bool = Field(default=False, description="User turn still waiting for its transcript")

    @property
    def display_text(self) -> str:
        if self.pending and not self.text:
            return TRANSCRIBING_PLACEHOLDER
        return self.text


class PricingRates(BaseModel):
    """Advisory rate table (USD per 1M tokens, transcription per minute)."""
    model_config = ConfigDict(frozen=True)

    model: str = "gpt-realtime-mini"
    text_input: float = 0.6
    text_cached_input: float = 0.06
    text_output: float = 2.4
    audio_input: float = 10.0
    audio_cached_input: float = 0.3
    audio_output: float = 20.0
    transcription_per_minute: float = 0.006


class UsageLedger(BaseModel):
    """Token and speech counters accumulated over one session."""
    text_input: int = 0
    audio_input: int = 0
    text_output: int = 0
    audio_output: int = 0
    cached_text_input: int = 0
    cached_audio_input: int = 0
    transcription_total_tokens: int = 0
    transcription_audio_tokens: int = 0
    speech_duration_seconds: float = 0.0
    seen_response_ids: Set[str] = Field(default_factory=set)


class CostSummary(BaseModel):
    """Advisory cost breakdown emitted at teardown. Not billing."""
    model: str
    response_tokens: Dict[str, int]
    transcription_tokens: Dict[str, int]
    speech_duration_seconds: float
    costs_usd: Dict[str, float]
    total_cost_usd: float


# ==================== Server API Schemas ====================

class CreateSessionRequest(CamelModel):
    """Request model for creating an interview session."""
    job_title: str = Field(..., min_length=1)
    job_description: str = Field(..., min_length=1)
    candidate_name: Optional[str] = ""
    max_questions: Optional[int] = None
    use_alternate_provider: bool = False


class CreateSessionResponse(CamelModel):
    """Response model for session creation."""
    session_id: str
    interview_link: str


class CreatePositionRequest(CamelModel):
    """Request model for an open position shared through one reusable link."""
    job_title: str = Field(..., min_length=1)
    job_description: str = Field(..., min_length=1)
    max_questions: Optional[int] = None
    use_alternate_provider: bool = False


class CreatePositionResponse(CamelModel):
    position_id: str
    interview_link: str


class PositionRecord(CamelModel):
    """Server-side position; each candidate who opens the link gets a session."""
    position_id: str
    job_title: str
    job_description: str
    max_questions: int
    use_alternate_provider: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
    session_ids: List[str] = Field(default_factory=list)


class PositionDescriptor(CamelModel):
    """What the session lookup returns for a position link."""
    session_id: str
    job_title: str
    is_position: bool = True


class StartInterviewRequest(CamelModel):
    candidate_name: str = Field(..., min_length=1)
    candidate_email: str = Field(..., min_length=1)


class StartInterviewResponse(CamelModel):
    """Session created from a position link."""
    session_id: str
    interview_link: str = ""


class SessionMedia(CamelModel):
    """Stored media paths per upload type."""
    combined: Optional[str] = None
    camera: Optional[str] = None
    candidate_audio: Optional[str] = None
    assistant_audio: Optional[str] = None


class SessionRecord(CamelModel):
    """Server-side interview session record."""
    session_id: str
    job_title: str
    candidate_name: str = ""
    candidate_email: str = ""
    job_description: str
    position_id: Optional[str] = None
    max_questions: int
    system_prompt: str
    use_alternate_provider: bool = False
    status: str = STATUS_CREATED
    created_at: datetime = Field(default_factory=datetime.now)
    media: SessionMedia = Field(default_factory=SessionMedia)
    transcript_path: Optional[str] = None
    analysis_path: Optional[str] = None


class SessionListItem(CamelModel):
    """Session summary for the admin listing."""
    session_id: str
    job_title: str
    candidate_name: str
    max_questions: int
    status: str
    created_at: datetime
    media: SessionMedia
    transcript_path: Optional[str] = None
    analysis_path: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    """Request model for session status updates."""
    status: str = Field(..., min_length=1)


class AnalyzeRequest(BaseModel):
    """Request model for transcript analysis."""
    transcript: str = ""


class PathResponse(BaseModel):
    """Stored artifact path."""
    path: str


class ReportSections(BaseModel):
    """Analysis report split into its named sections."""
    summary: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    recommendation: List[str] = Field(default_factory=list)
    next: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any([self.summary, self.strengths, self.risks, self.recommendation, self.next])
