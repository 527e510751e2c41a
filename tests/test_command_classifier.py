"""Tests for prompt classification."""

import pytest

from apiforge.core.enums import CommandType
from apiforge.services.command_classifier import DEFAULT_CONFIDENCE, classify_command


class TestClassifyCommand:
    """Keyword routing of follow-up prompts."""

    def test_everything_is_create_without_versions(self) -> None:
        result = classify_command("add a books endpoint", has_versions=False)
        assert result.command_type == CommandType.CREATE

    def test_question_even_without_versions(self) -> None:
        assert classify_command("What does this API do?", has_versions=False).command_type == CommandType.QUESTION

    @pytest.mark.parametrize(
        "prompt,expected",
        [
            ("how do I run the tests", CommandType.QUESTION),
            ("fix the 500 internal server error on /books", CommandType.FIX_ERROR),
            ("Why does POST /books crash?", CommandType.FIX_ERROR),
            ("add pagination to the list endpoint", CommandType.MODIFY),
            ("rename Book.title to Book.name", CommandType.MODIFY),
            ("build a new service for orders", CommandType.CREATE),
        ],
    )
    def test_follow_up_prompts(self, prompt: str, expected: CommandType) -> None:
        assert classify_command(prompt, has_versions=True).command_type == expected

    def test_create_on_linked_repository(self) -> None:
        result = classify_command("create an api for invoices", has_versions=True, has_repo=True)
        assert result.command_type == CommandType.CREATE_AND_LINK

    def test_unmatched_defaults_to_modify(self) -> None:
        result = classify_command("books should have an isbn", has_versions=True)
        assert result.command_type == CommandType.MODIFY
        assert result.confidence == DEFAULT_CONFIDENCE
        assert result.matched == []
