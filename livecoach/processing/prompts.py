"""
LiveCoach — Prompt construction

Every interjection is one prompt: the step situation, recalled fixes from
other trainees, this step's badly-rated answers, then a directive for the
interjection kind.
"""

from __future__ import annotations

import random
from typing import List, Optional, Sequence, Set

from ..core.models import FeedbackLog, InterjectionKind, RankedFix


def tutor_system_instruction(steps_context: str) -> str:
    """Seeds the chat with the module's steps as the source of truth."""
    return (
        "You are the LiveCoach tutor, a hands-on teaching assistant watching a trainee "
        "through a camera. Teach the process exactly as written in the PROCESS STEPS "
        "below; they are your source of truth.\n\n"
        "Rules:\n"
        "1. Answer from the PROCESS STEPS. For \"what's next?\" find the relevant step and "
        "explain it in the owner's words.\n"
        "2. Your reply is spoken aloud while the trainee's hands are busy. Keep it to one "
        "or two short sentences. No markdown, no lists.\n"
        "3. If a question is outside the training, say so before answering from general "
        "knowledge.\n\n"
        "--- PROCESS STEPS ---\n"
        f"{steps_context}\n"
        "--- END PROCESS STEPS ---"
    )


_DIRECTIVES = {
    InterjectionKind.HINT: (
        "My vision system does not see everything this step needs. Give a gentle, "
        "proactive hint that helps them find the right item. Keep it brief."
    ),
    InterjectionKind.TUTORING: (
        "They already received a hint for this step and are still missing what it needs. "
        "Walk them through the step in a little more detail, one concrete action at a time."
    ),
    InterjectionKind.CORRECTION: (
        "My vision system detected an item that must not be used here. Give an immediate, "
        "gentle but clear correction to get them back on track."
    ),
}


def build_prompt(
    kind: InterjectionKind,
    step_title: str,
    required: Sequence[str] = (),
    past_feedback: Sequence[FeedbackLog] = (),
    similar_fixes: Sequence[RankedFix] = (),
    utterance: str = "",
    detected_labels: Sequence[str] = (),
    trigger_item: str = "",
    step_context: str = "",
) -> str:
    lines: List[str] = [f'The user is on step "{step_title}".']
    if step_context:
        lines.append(f"Step instructions: {step_context}")
    if required:
        lines.append(f'This step requires: {", ".join(required)}.')
    if detected_labels:
        lines.append(f'My live camera analysis shows: {", ".join(detected_labels)}.')
    else:
        lines.append("My live camera analysis shows nothing relevant right now.")

    if similar_fixes:
        lines.append("")
        lines.append("--- INSIGHTS FROM PAST TRAINEES ---")
        for fix in similar_fixes:
            lines.append(
                f'- In a similar situation another trainee found this worked: "{fix.user_fix_text}". '
                "Prioritize this insight."
            )
        lines.append("--- END INSIGHTS ---")

    bad = [fb for fb in past_feedback if fb.feedback == "bad"]
    if bad:
        lines.append("")
        lines.append("--- PREVIOUS FEEDBACK FOR THIS STEP ---")
        for fb in bad:
            entry = f'- My earlier answer ("{fb.ai_response}") was rated NOT helpful.'
            if fb.user_fix_text:
                entry += f' The trainee said this worked instead: "{fb.user_fix_text}". Prioritize it.'
            else:
                entry += " Avoid giving a similar answer."
            lines.append(entry)
        lines.append("--- END PREVIOUS FEEDBACK ---")

    lines.append("")
    if kind == InterjectionKind.QUERY:
        lines.append(
            f'The user asked: "{utterance}". Answer their question based on the step\'s '
            "instructions and the visual context."
        )
    else:
        directive = _DIRECTIVES[kind]
        if kind == InterjectionKind.CORRECTION and trigger_item:
            directive += f' The item is "{trigger_item}".'
        lines.append(directive)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Taglines
# ---------------------------------------------------------------------------

TAGLINES = (
    "Let me know if that did the trick.",
    "Tell me if it worked. I keep score of my good calls.",
    "If that helped, I'm claiming it as a win.",
    "Did that sort it? Be honest, I can take it.",
    "If not, tell me what worked. I learn from every kitchen.",
    "Shout if you're still stuck.",
    "Hope that helps. If it doesn't, we'll blame the lighting.",
)


class TaglinePicker:
    """Random tagline, no repeats until every tagline has been used."""

    def __init__(self, taglines: Sequence[str] = TAGLINES, rng: Optional[random.Random] = None):
        self._taglines = tuple(taglines)
        self._used: Set[str] = set()
        self._rng = rng or random.Random()

    def next(self) -> str:
        if not self._taglines:
            return ""
        if len(self._used) >= len(self._taglines):
            self._used.clear()
        available = [t for t in self._taglines if t not in self._used]
        pick = self._rng.choice(available)
        self._used.add(pick)
        return pick
