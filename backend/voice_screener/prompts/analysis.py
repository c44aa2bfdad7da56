"""
Transcript Analysis Prompts
Post-interview screening report.
Uses LangChain ChatPromptTemplate with a fixed plain-text report format.
"""

from typing import Optional

from langchain_core.prompts import ChatPromptTemplate, SystemMessagePromptTemplate, HumanMessagePromptTemplate


ANALYSIS_SYSTEM = """You are an interview analyst. Respond ONLY in the following format using short, direct bullets:
Score: <integer 0-100>/100

Summary:
- ... (3-4 bullets)

Strengths:
- ... (3-5 bullets)

Risks/Concerns:
- ... (3-5 bullets)

Recommendation:
- ... (1-2 sentences)

Suggested Next-Step Questions:
- ... (3 bullets)

Guidance:
- Be concise and actionable.
- If unsure, be conservative with the score.
- Do not add any preamble or closing text outside this format."""

ANALYSIS_HUMAN = """Job Title: {job_title}
Candidate: {candidate_name}

Transcript:
{transcript}"""


def create_analysis_prompt() -> ChatPromptTemplate:
    """
    Create the transcript analysis prompt.

    Returns:
        ChatPromptTemplate expecting job_title, candidate_name and transcript
    """
    return ChatPromptTemplate.from_messages([
        SystemMessagePromptTemplate.from_template(ANALYSIS_SYSTEM),
        HumanMessagePromptTemplate.from_template(ANALYSIS_HUMAN)
    ])


def placeholder_report(session_id: str, job_title: str, candidate_name: Optional[str]) -> str:
    """Report stored when the analysis LLM is unavailable."""
    return "\n".join([
        "Score: N/A",
        "",
        "Summary:",
        "- Analysis unavailable due to an error calling the analysis model.",
        f"- Session: {session_id}",
        f"- Job: {job_title}",
        f"- Candidate: {candidate_name or 'N/A'}",
        "",
        "Strengths:",
        "- Not assessed (analysis service unavailable).",
        "",
        "Risks/Concerns:",
        "- Not assessed (analysis service unavailable).",
        "",
        "Recommendation:",
        "- Unable to generate recommendation because analysis failed.",
        "",
        "Suggested Next-Step Questions:",
        "- Retry analysis once the service is available.",
        "- Confirm transcript quality (audio/text) before rerunning.",
        "- Verify integration credentials are correct.",
    ])
