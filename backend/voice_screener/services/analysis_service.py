"""
Transcript Analysis Service
Scores a finished interview transcript with Gemini and renders the stored report.

The LLM call is retried with backoff; if it still fails (or no API key is configured)
a placeholder report is stored instead so the endpoint always produces an artifact.
"""

import logging
import re
import time
from typing import Any, Dict, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI

from voice_screener.config import Settings
from voice_screener.core.models import ReportSections, SessionRecord
from voice_screener.prompts.analysis import create_analysis_prompt, placeholder_report
from voice_screener.utils.llm_retry import async_retry_llm_call, call_llm_with_timeout, with_fallback_async
from voice_screener.utils.logging_config import log_llm_call
from voice_screener.utils.metrics import track_llm_call

logger = logging.getLogger(__name__)

AGENT_NAME = "transcript_analyzer"

SCORE_PATTERN = re.compile(r"score[^0-9]{0,5}(\d{1,3})(?:\s*/\s*100)?", re.IGNORECASE)
BULLET_PATTERN = re.compile(r"^[-•]\s*")

SECTION_LABELS = (
    ("summary", "Summary"),
    ("strengths", "Strengths"),
    ("risks", "Risks/Concerns"),
    ("recommendation", "Recommendation"),
    ("next", "Suggested Next-Step Questions"),
)


def extract_score(report_text: Optional[str]) -> Optional[int]:
    """
    Find "Score: N" (optionally "/100") in a report.

    Returns:
        Score clamped to 0..100, or None when absent
    """
    match = SCORE_PATTERN.search(report_text or "")
    if not match:
        return None
    return max(0, min(100, int(match.group(1))))


def parse_report_sections(report_text: Optional[str]) -> ReportSections:
    """Split the report into its headed sections; lines before the first heading are dropped."""
    sections: Dict[str, list] = {key: [] for key, _ in SECTION_LABELS}
    current: Optional[str] = None

    for raw_line in (report_text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        lower = line.lower()
        if lower.startswith("summary"):
            current = "summary"
            continue
        if lower.startswith("strength"):
            current = "strengths"
            continue
        if lower.startswith("risks"):
            current = "risks"
            continue
        if lower.startswith("recommendation"):
            current = "recommendation"
            continue
        if lower.startswith(("suggested next", "next-step", "next step")):
            current = "next"
            continue
        if current is None:
            continue
        sections[current].append(BULLET_PATTERN.sub("", line))

    return ReportSections(**sections)


def render_markdown_report(
    report_text: str,
    candidate_name: Optional[str],
    job_title: Optional[str],
    title: str = "Interview Analysis Report"
) -> str:
    """Render the stored Markdown analysis report."""
    score = extract_score(report_text)
    score_label = f"{score}/100" if score is not None else "N/A"
    sections = parse_report_sections(report_text)

    lines = [
        f"# {title}",
        "",
        f"- **Candidate:** {candidate_name or 'N/A'}",
        f"- **Job:** {job_title or 'N/A'}",
        f"- **Score:** {score_label}",
        "",
    ]

    if sections.is_empty():
        lines.extend(["## Report", "", (report_text or "").strip(), ""])
        return "\n".join(lines)

    for key, label in SECTION_LABELS:
        entries = getattr(sections, key)
        if not entries:
            continue
        lines.append(f"## {label}")
        lines.append("")
        lines.extend(f"- {entry}" for entry in entries)
        lines.append("")
    return "\n".join(lines)


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("text"):
                parts.append(part["text"])
        return "\n".join(parts)
    return str(content or "")


class TranscriptAnalyzer:
    """
    Post-interview transcript analysis.

    Args:
        llm: Chat model used for the report (None = always placeholder)
        timeout_seconds: Per-attempt timeout for the LLM call
    """

    def __init__(self, llm: Optional[BaseChatModel], timeout_seconds: int = 60):
        self.llm = llm
        self.timeout_seconds = timeout_seconds
        self._chain = create_analysis_prompt() | llm if llm is not None else None
        if llm is not None:
            logger.info("Initialized TranscriptAnalyzer")
        else:
            logger.warning("TranscriptAnalyzer has no model configured; placeholder reports only")

    @classmethod
    def from_settings(cls, settings: Settings) -> "TranscriptAnalyzer":
        if not settings.gemini_api_key:
            return cls(None, settings.analysis_timeout_seconds)
        llm = ChatGoogleGenerativeAI(
            model=settings.gemini_model,
            google_api_key=settings.gemini_api_key,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens
        )
        return cls(llm, settings.analysis_timeout_seconds)

    @async_retry_llm_call
    async def _invoke(self, inputs: Dict[str, str]) -> Any:
        return await call_llm_with_timeout(self._chain.ainvoke, self.timeout_seconds, inputs)

    async def generate_report(self, transcript: str, session: SessionRecord) -> str:
        """
        Ask the model for the plain-text report.

        Raises:
            LLMAPIError, LLMRateLimitError, LLMTimeoutError: After retries are exhausted
        """
        inputs = {
            "job_title": session.job_title,
            "candidate_name": session.candidate_name or "N/A",
            "transcript": transcript,
        }

        start = time.time()
        with track_llm_call(AGENT_NAME):
            result = await self._invoke(inputs)

        log_llm_call(
            logger,
            agent_name=AGENT_NAME,
            latency_ms=(time.time() - start) * 1000,
            model=getattr(self.llm, "model", None) or "gemini",
            session_id=session.session_id
        )
        return _message_text(result).strip() or "No analysis text returned."

    async def placeholder_report(self, transcript: str, session: SessionRecord) -> str:
        return placeholder_report(session.session_id, session.job_title, session.candidate_name)

    async def analyze(self, transcript: str, session: SessionRecord) -> str:
        """Report text for a transcript, falling back to the placeholder on any failure."""
        if self._chain is None:
            return await self.placeholder_report(transcript, session)

        return await with_fallback_async(
            self.generate_report,
            self.placeholder_report,
            (Exception,),
            transcript,
            session
        )
