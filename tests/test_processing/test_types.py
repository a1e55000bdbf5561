"""Tests for the pipeline result types and the default taxonomy."""

import pytest

from src.processing.types import (
    DEFAULT_TOPICS,
    RESULT_TYPES,
    EmailIntent,
    ThreadSummaryResult,
    TopicLabel,
)


class TestDefaultTopics:
    def test_names(self) -> None:
        assert [t.name for t in DEFAULT_TOPICS] == [
            "to respond", "FYI", "comment", "notification", "promotion", "meeting", "billing",
        ]

    def test_every_topic_has_a_usecase(self) -> None:
        assert all(t.usecase for t in DEFAULT_TOPICS)

    def test_topic_label_is_frozen(self) -> None:
        with pytest.raises(AttributeError):
            TopicLabel("x").name = "y"  # type: ignore[misc]


class TestResultTypes:
    @pytest.mark.parametrize("step_id", sorted(RESULT_TYPES))
    def test_every_result_has_a_neutral_default(self, step_id: str) -> None:
        result_type = RESULT_TYPES[step_id]
        assert isinstance(result_type(), result_type)

    def test_summary_default_is_not_regenerated(self) -> None:
        assert ThreadSummaryResult() == ThreadSummaryResult(summary=None, regenerated=False)


class TestEmailIntent:
    def test_default_requires_no_response(self) -> None:
        assert not EmailIntent().requires_response

    @pytest.mark.parametrize("flag", ["is_question", "is_request", "is_meeting", "is_urgent"])
    def test_any_flag_requires_response(self, flag: str) -> None:
        assert EmailIntent(**{flag: True}).requires_response
