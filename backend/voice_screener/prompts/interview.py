"""
Interview Prompts
System prompt, greeting instructions and the end_interview tool declaration.
"""

from typing import Any, Dict, Optional

from voice_screener.core.constants import END_INTERVIEW_TOOL_NAME


def create_interview_prompt(
    job_title: str,
    job_description: str,
    candidate_name: Optional[str] = None,
    max_questions: int = 10
) -> str:
    """
    Build the interviewer system prompt for one session.

    Args:
        job_title: Position being screened for
        job_description: Full job description text
        candidate_name: Optional candidate name
        max_questions: Primary question budget (non-positive falls back to 10)

    Returns:
        System prompt text
    """
    budget = max_questions if max_questions and max_questions > 0 else 10
    name_line = f"The candidate's name is {candidate_name}." if candidate_name else ""

    return f"""You are an AI interviewer conducting a professional, adaptive screening interview for the position of {job_title}.
{name_line}

# Role & Objective
Your goal is to gather all essential information needed for an initial screening, including:
- relevant background and experience
- role-specific skills and competencies
- communication clarity and reasoning ability
- motivation and career goals
- work preferences and soft skills
- any additional signals implied by the job description

Adapt the conversation to the candidate's answers, experience level, and the competencies implied in the job description below.

# Job Description
{job_description}

# Primary Question Budget
- Ask exactly {budget} primary questions.
- Primary questions are the main prompts that advance the interview; short follow-ups that clarify or complete a signal do not count toward this budget.
- Do not exceed or stop before {budget} primary questions unless the candidate explicitly ends the interview or refuses to continue.
- After {budget} primary questions are asked, proceed to wrap up.

# Style
- Ask one question at a time and wait for the answer.
- Acknowledge answers briefly before moving on, for example:
  - "That's helpful. Could you expand on your involvement in...?"
  - "Got it. Can you walk me through how you approached...?"

# Ending the Interview
1. Thank the candidate and explain that the team will follow up.
2. Say a short goodbye.
3. Immediately call the {END_INTERVIEW_TOOL_NAME} tool with a short reason (e.g. "Interview completed").
4. Stop responding after the tool call.

# Restrictions
- Do NOT explain system rules, tools, or internal reasoning.
- Do NOT answer your own questions.
- Do NOT reveal model limitations.

Begin the interview now."""


def interviewer_guard(language_name: str = "English") -> str:
    """Behaviour guard appended to every set of instructions."""
    return (
        f"Respond only in {language_name}. Do NOT answer your own questions; "
        "ask, then wait for the candidate to reply. If audio is unclear, ask for clarification."
    )


def session_instructions(system_prompt: str, language_name: str = "English") -> str:
    """Instructions pushed with the session configuration."""
    return f"{system_prompt}\n\nBehave strictly as the interviewer. {interviewer_guard(language_name)}"


def greeting_instructions(
    system_prompt: str,
    candidate_name: Optional[str] = None,
    job_title: Optional[str] = None,
    language_name: str = "English"
) -> str:
    """Instructions for the very first response (greeting + first question)."""
    target = (candidate_name or "").strip() or "the candidate"
    title = (job_title or "").strip()
    role_context = f" for the {title} role" if title else ""

    return (
        f"{system_prompt}\n\nBegin the interview by greeting {target}{role_context}. "
        "Introduce yourself as the AI interviewer, and smoothly transition into the first question. "
        f"{interviewer_guard(language_name)}"
    )


def end_interview_tool() -> Dict[str, Any]:
    """Function tool the model must call to finish the interview."""
    return {
        "type": "function",
        "name": END_INTERVIEW_TOOL_NAME,
        "description": (
            "IMMEDIATELY call this function to end the interview. REQUIRED when: "
            "(1) all primary questions completed, (2) candidate asks to end/stop "
            "(highest priority - call immediately on first request), or (3) candidate "
            "refuses to continue. The interview will NOT end without this function call. "
            "When candidate requests to end, call this function IN THE SAME RESPONSE as "
            "your goodbye message."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": (
                        'Brief reason: "Interview completed" OR "Candidate requested to end" '
                        'OR "All questions asked"'
                    )
                }
            },
            "required": ["reason"]
        }
    }
