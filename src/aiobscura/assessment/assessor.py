"""LLM assessment of whole sessions.

A session's transcript is rendered into a bounded prompt and sent to the
configured provider, which answers with a JSON object of scores in
``[0.0, 1.0]`` plus a short summary. The response is stored verbatim as an
``Assessment`` row keyed by the sha256 of the prompt, so re-running on an
unchanged session is a no-op.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from aiobscura.assessment.providers import LLMProvider, create_provider
from aiobscura.config import LLMSettings
from aiobscura.db.connection import Database
from aiobscura.db.repositories import AnalyticsRepository, MessageRepository, SessionRepository
from aiobscura.exceptions import LLMError, SessionNotFoundError
from aiobscura.models.db import Assessment, AssistantSession, Message
from aiobscura.utils.hashing import calculate_content_hash
from aiobscura.utils.timestamps import utc_now

logger = logging.getLogger(__name__)

ASSESSOR_NAME = "llm.assessment"

MAX_TRANSCRIPT_CHARS = 16_000
TRUNCATION_MARKER = "\n...[truncated]"

SCORE_KEYS = (
    "sycophancy",
    "goal_clarity",
    "autonomy_level",
    "code_quality_signals",
    "frustration_indicators",
)

SYSTEM_PROMPT = (
    "You are an assessment engine for AI coding sessions. Return strict JSON with "
    "numeric scores 0.0-1.0 for keys: sycophancy, goal_clarity, autonomy_level, "
    "code_quality_signals, frustration_indicators. Also include a short string "
    "field summary."
)


@dataclass
class AssessmentDraft:
    """A prompt ready to send, plus the hash used for deduplication."""

    session_id: str
    prompt: str
    prompt_hash: str


def render_transcript(messages: Sequence[Message]) -> str:
    """One line per message, cut at ``MAX_TRANSCRIPT_CHARS``."""
    transcript = ""
    for message in messages:
        content = (message.content or "").replace("\n", " ")
        transcript += (
            f"[{message.emitted_at.isoformat()}] "
            f"{message.author_role.value} {message.message_type.value}: {content}\n"
        )
        if len(transcript) >= MAX_TRANSCRIPT_CHARS:
            transcript = transcript[:MAX_TRANSCRIPT_CHARS] + TRUNCATION_MARKER
            break
    return transcript


def build_prompt(session: AssistantSession, messages: Sequence[Message]) -> Optional[AssessmentDraft]:
    """
    Build the assessment prompt for a session.

    Returns:
        AssessmentDraft, or None when the session has no messages
    """
    if not messages:
        return None

    prompt = (
        f"{SYSTEM_PROMPT}\n\n"
        f"Session ID: {session.id}\n"
        f"Assistant: {session.assistant.value}\n\n"
        f"Transcript:\n{render_transcript(messages)}\n\n"
        "Return only JSON."
    )
    return AssessmentDraft(
        session_id=session.id,
        prompt=prompt,
        prompt_hash=calculate_content_hash(prompt),
    )


def extract_json_object(text: str) -> Optional[str]:
    """Slice from the first ``{`` to the last ``}``, if both exist in order."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        return None
    return text[start : end + 1]


def parse_scores(response_text: str) -> dict[str, Any]:
    """
    Parse the provider's answer into a scores object.

    Models often wrap JSON in prose or code fences, so a failed direct parse
    falls back to the outermost brace-delimited span.

    Raises:
        LLMError: If no JSON object can be recovered
    """
    try:
        parsed = json.loads(response_text)
    except json.JSONDecodeError:
        candidate = extract_json_object(response_text)
        if candidate is None:
            raise LLMError("response did not contain a JSON object")
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise LLMError(f"response JSON could not be parsed: {e}") from e

    if not isinstance(parsed, dict):
        raise LLMError("response JSON was not an object")
    return parsed


def assess(provider: LLMProvider, draft: AssessmentDraft) -> tuple[dict[str, Any], str]:
    """Send a draft and return ``(scores, raw_response_text)``."""
    response = provider.complete(system_prompt=SYSTEM_PROMPT, user_prompt=draft.prompt)
    logger.debug(
        f"Assessment for {draft.session_id} took {response.duration_ms:.0f}ms "
        f"({response.total_tokens} tokens)"
    )
    return parse_scores(response.content), response.content


class SessionAssessor:
    """Runs assessments against the store, skipping unchanged sessions."""

    def __init__(
        self,
        db: Database,
        settings: LLMSettings,
        provider: Optional[LLMProvider] = None,
    ):
        self.db = db
        self.settings = settings
        self.provider = provider or create_provider(settings)

    def prepare(self, session_id: str) -> Optional[AssessmentDraft]:
        """
        Build a draft for the session unless the latest assessment used the same prompt.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self.db.session() as session:
            record = SessionRepository(session).get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            messages = MessageRepository(session).list_for_session(session_id)
            draft = build_prompt(record, messages)
            if draft is None:
                return None
            latest = AnalyticsRepository(session).latest_assessment(session_id, ASSESSOR_NAME)

        if latest is not None and latest.prompt_hash == draft.prompt_hash:
            logger.debug(f"Skipping assessment for {session_id}: transcript unchanged")
            return None
        return draft

    def assess_and_store(self, session_id: str, force: bool = False) -> Optional[Assessment]:
        """
        Assess a session and persist the result.

        Args:
            session_id: Session to assess
            force: Re-assess even when the prompt is unchanged

        Returns:
            The stored Assessment, or None when nothing needed assessing

        Raises:
            SessionNotFoundError: If the session does not exist
            NetworkError: If the provider could not be reached
            LLMError: If the provider's answer was not a JSON object
        """
        if force:
            with self.db.session() as session:
                record = SessionRepository(session).get(session_id)
                if record is None:
                    raise SessionNotFoundError(session_id)
                draft = build_prompt(record, MessageRepository(session).list_for_session(session_id))
        else:
            draft = self.prepare(session_id)
        if draft is None:
            return None

        # Provider call happens outside any db session so the store stays unlocked.
        scores, raw = assess(self.provider, draft)

        assessment = Assessment(
            session_id=session_id,
            assessor=ASSESSOR_NAME,
            model=self.settings.model,
            assessed_at=utc_now(),
            scores=scores,
            raw_response=raw,
            prompt_hash=draft.prompt_hash,
        )
        with self.db.session() as session:
            AnalyticsRepository(session).insert_assessment(assessment)
        logger.info(f"Stored assessment for session {session_id} ({self.settings.model})")
        return assessment

    def latest(self, session_id: str) -> Optional[Assessment]:
        with self.db.session() as session:
            return AnalyticsRepository(session).latest_assessment(session_id, ASSESSOR_NAME)
