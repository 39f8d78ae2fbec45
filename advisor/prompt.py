from __future__ import annotations

from typing import Any, Iterable, Mapping

from .session_store import SessionTurn


_METADATA_LABELS = (
    ("name", "Name"),
    ("programInterested", "Program Interested"),
    ("source", "Source"),
    ("day", "Day"),
    ("workingStatus", "Working Status"),
    ("currentRole", "Current Role"),
    ("workExperience", "Work Experience"),
)


def build_persona(*, advisor_name: str, org_name: str) -> str:
    """
    Persona constants only. Transport/orchestration must not depend on the wording.
    """

    return f"""You are {advisor_name}, a Program Advisor from {org_name}, engaging in natural, flowing phone conversations with potential learners.

Goal: understand the caller's needs and book them into a free-trial workshop.

Style:
- Adapt to the caller; no rigid scripts.
- Warm verbal cues ("I hear you", "Got it", "That makes sense").
- Keep replies short and spoken-friendly; never repeat the greeting once the call has started.

Facts:
- Use the knowledge base context when it is relevant; never invent prices or dates.
- If unsure, say you'll check with the team and get back to them.
"""


def format_history(history: Iterable[SessionTurn], *, window: int = 4) -> str:
    turns = list(history)
    if window <= 0:
        return ""
    recent = turns[-window:]
    return "\n".join(f"{t.role}: {t.content}" for t in recent)


def format_caller_metadata(metadata: Mapping[str, Any] | None) -> str:
    if not metadata:
        return ""
    rows: list[str] = []
    for key, label in _METADATA_LABELS:
        value = metadata.get(key)
        if value in (None, ""):
            continue
        rows.append(f"- {label}: {value}")
    return "\n".join(rows)


def build_prompt(
    *,
    persona: str,
    utterance: str,
    context: str,
    history: list[SessionTurn],
    caller_metadata: Mapping[str, Any] | None = None,
    history_window: int = 4,
) -> str:
    first_interaction = len(history) <= 1
    if first_interaction:
        flow = (
            "Conversation flow:\n"
            "- Hook their interest: ask what caught their eye.\n"
            "- Set the stage: mention today's free-trial workshop as an easy way to start."
        )
    else:
        flow = (
            "Continue the conversation:\n"
            "- Build on what they've shared and ask one follow-up question.\n"
            "- Guide toward booking the workshop naturally."
        )

    parts = [persona.strip(), flow]
    meta = format_caller_metadata(caller_metadata)
    if meta:
        parts.append("Caller details:\n" + meta)
    parts.append("Knowledge Base Context:\n" + (context or "(none)"))
    recent = format_history(history, window=history_window)
    if recent:
        parts.append("Previous conversation:\n" + recent)
    parts.append(f"User: {utterance}")
    parts.append("Respond in one or two short spoken sentences.")
    return "\n\n".join(parts)
