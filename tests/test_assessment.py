"""Tests for LLM session assessment."""

from datetime import UTC, datetime, timedelta

import pytest

from aiobscura.assessment.assessor import (
    ASSESSOR_NAME,
    MAX_TRANSCRIPT_CHARS,
    SYSTEM_PROMPT,
    TRUNCATION_MARKER,
    SessionAssessor,
    build_prompt,
    extract_json_object,
    parse_scores,
    render_transcript,
)
from aiobscura.assessment.providers import LLMProvider, LLMResponse
from aiobscura.config import LLMProviderType, LLMSettings
from aiobscura.db.repositories import MessageRepository
from aiobscura.exceptions import LLMError, SessionNotFoundError
from aiobscura.models.db import Assistant, AssistantSession, AuthorRole, Message, MessageType
from aiobscura.models.parsed import ParsedMessage

START = datetime(2025, 6, 2, 10, 0, 0, tzinfo=UTC)

SCORES_JSON = (
    '{"sycophancy": 0.1, "goal_clarity": 0.9, "autonomy_level": 0.5, '
    '"code_quality_signals": 0.7, "frustration_indicators": 0.0, "summary": "focused"}'
)


class FakeProvider(LLMProvider):
    """Answers every prompt with a fixed text and records the calls."""

    provider_name = "fake"

    def __init__(self, answer: str = SCORES_JSON):
        super().__init__("fake-1")
        self.answer = answer
        self.calls: list[tuple[str, str]] = []

    def _request(self, system_prompt, user_prompt, max_tokens, temperature):
        self.calls.append((system_prompt, user_prompt))
        return LLMResponse(content=self.answer, prompt_tokens=10, completion_tokens=5, model="fake-1")


@pytest.fixture
def llm_settings() -> LLMSettings:
    return LLMSettings(provider=LLMProviderType.OLLAMA, model="llama3.2")


def line(content: str, seconds: int = 0) -> Message:
    return Message(
        emitted_at=START + timedelta(seconds=seconds),
        author_role=AuthorRole.HUMAN,
        message_type=MessageType.PROMPT,
        content=content,
    )


class TestTranscript:
    def test_one_line_per_message(self):
        transcript = render_transcript([line("fix\nthe bug"), line("thanks", 5)])

        assert transcript.splitlines() == [
            "[2025-06-02T10:00:00+00:00] human prompt: fix the bug",
            "[2025-06-02T10:00:05+00:00] human prompt: thanks",
        ]

    def test_long_transcripts_are_truncated(self):
        messages = [line("x" * 1000, i) for i in range(40)]

        transcript = render_transcript(messages)

        assert transcript.endswith(TRUNCATION_MARKER)
        assert len(transcript) == MAX_TRANSCRIPT_CHARS + len(TRUNCATION_MARKER)

    def test_prompt_hash_tracks_content(self):
        session = AssistantSession(id="s1", assistant=Assistant.CLAUDE_CODE)

        first = build_prompt(session, [line("a")])
        second = build_prompt(session, [line("a"), line("b", 1)])

        assert first.prompt.startswith(SYSTEM_PROMPT)
        assert "Session ID: s1" in first.prompt
        assert "Assistant: claude_code" in first.prompt
        assert len(first.prompt_hash) == 64
        assert first.prompt_hash != second.prompt_hash
        assert build_prompt(session, []) is None


class TestParseScores:
    """Tests for recovering a JSON object from model output."""

    def test_plain_json(self):
        assert parse_scores(SCORES_JSON)["goal_clarity"] == 0.9

    def test_json_wrapped_in_prose(self):
        text = f"Here is my assessment:\n```json\n{SCORES_JSON}\n```\nHope this helps!"

        assert parse_scores(text)["summary"] == "focused"

    @pytest.mark.parametrize(
        "text,message",
        [
            ("no json here", "did not contain a JSON object"),
            ("} backwards {", "did not contain a JSON object"),
            ("prefix {not: json} suffix", "could not be parsed"),
            ("[1, 2, 3]", "was not an object"),
        ],
    )
    def test_unusable_responses(self, text: str, message: str):
        with pytest.raises(LLMError, match=message):
            parse_scores(text)

    def test_extract_json_object(self):
        assert extract_json_object('a {"b": {"c": 1}} d') == '{"b": {"c": 1}}'
        assert extract_json_object("nothing") is None


class TestSessionAssessor:
    def test_assess_and_store(self, db, llm_settings, seed_session, prompts):
        seed_session("s1", prompts(4))
        provider = FakeProvider()
        assessor = SessionAssessor(db, llm_settings, provider)

        assessment = assessor.assess_and_store("s1")

        assert assessment.assessor == ASSESSOR_NAME
        assert assessment.model == "llama3.2"
        assert assessment.scores["sycophancy"] == 0.1
        assert assessment.raw_response == SCORES_JSON
        system_prompt, user_prompt = provider.calls[0]
        assert system_prompt == SYSTEM_PROMPT
        assert "question 0" in user_prompt
        assert assessor.latest("s1").prompt_hash == assessment.prompt_hash

    def test_unchanged_session_is_skipped(self, db, llm_settings, seed_session, prompts):
        seed_session("s1", prompts(2))
        provider = FakeProvider()
        assessor = SessionAssessor(db, llm_settings, provider)

        assessor.assess_and_store("s1")

        assert assessor.assess_and_store("s1") is None
        assert assessor.assess_and_store("s1", force=True) is not None
        assert len(provider.calls) == 2

    def test_new_messages_trigger_reassessment(self, db, llm_settings, seed_session, prompts):
        seed_session("s1", prompts(2))
        assessor = SessionAssessor(db, llm_settings, FakeProvider())
        assessor.assess_and_store("s1")

        with db.session() as session:
            MessageRepository(session).insert_many(
                [
                    ParsedMessage(
                        session_id="s1",
                        thread_id="s1-main",
                        seq=3,
                        emitted_at=START + timedelta(minutes=5),
                        observed_at=START + timedelta(minutes=5),
                        author_role=AuthorRole.HUMAN,
                        message_type=MessageType.PROMPT,
                        source_file_path="/logs/s1.jsonl",
                        source_offset=300,
                        content="one more thing",
                        raw_data={},
                    )
                ]
            )

        assert assessor.assess_and_store("s1") is not None

    def test_empty_session(self, db, llm_settings, seed_session):
        seed_session("s1")

        assert SessionAssessor(db, llm_settings, FakeProvider()).assess_and_store("s1") is None

    def test_unknown_session(self, db, llm_settings):
        assessor = SessionAssessor(db, llm_settings, FakeProvider())

        with pytest.raises(SessionNotFoundError):
            assessor.assess_and_store("ghost")

    def test_unparseable_answer_is_not_stored(self, db, llm_settings, seed_session, prompts):
        seed_session("s1", prompts(2))
        assessor = SessionAssessor(db, llm_settings, FakeProvider("I cannot assess this."))

        with pytest.raises(LLMError):
            assessor.assess_and_store("s1")

        assert assessor.latest("s1") is None
