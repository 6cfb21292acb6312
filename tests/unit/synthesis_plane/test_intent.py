from __future__ import annotations

import pytest

from forge_agent.domain.models import Intent
from forge_agent.synthesis_plane.intent import (
    ModelAssistedClassifier,
    RuleBasedClassifier,
    build_classifier,
    classify_intent,
    determine_intent,
    is_explicit_edit_request,
    is_file_read_question,
    is_validation_fix_request,
    merge_chat_history,
    should_continue_after_validation_pass,
)
from forge_agent.synthesis_plane.json_retry import JsonRetryClient
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderAuthenticationError
from tests.fakes import ScriptedProvider, make_settings


@pytest.mark.parametrize(
    ("instruction", "expected"),
    [
        ("hello", Intent.QUESTION),
        ("thanks for the help earlier", Intent.QUESTION),
        ("fix the failing tests in the build", Intent.FIX),
        ("add a docstring to the parser module", Intent.EDIT),
        ("how does the config module load files?", Intent.QUESTION),
        ("list every module that imports yaml", Intent.QUESTION),
    ],
)
def test_rule_classification(instruction: str, expected: Intent) -> None:
    assert classify_intent(instruction) is expected


def test_explicit_edit_requests_need_a_path_and_a_verb() -> None:
    assert is_explicit_edit_request("update src/app.py to log errors")
    assert not is_explicit_edit_request("what does src/app.py do?")
    assert not is_explicit_edit_request("update the logging setup")


def test_validation_and_continuation_helpers() -> None:
    assert is_validation_fix_request("the CI pipeline is red")
    assert not is_validation_fix_request("make the header blue")
    assert should_continue_after_validation_pass("fix lint errors")
    assert not should_continue_after_validation_pass("run the tests")


def test_file_read_questions() -> None:
    assert is_file_read_question("show me app.py")
    assert is_file_read_question("what is in the readme")
    assert not is_file_read_question("show the weather")


def test_merge_history_keeps_newest_turns_within_budget_and_pins_system_items() -> None:
    history = [
        {"role": "user", "content": "x" * 3},
        {"role": "assistant", "content": "y" * 20},
        {"role": "system", "content": "pinned"},
        {"role": "user", "content": "z" * 10},
        {"role": "user", "content": "   "},
    ]
    messages = [ChatMessage.system("sys"), ChatMessage.user("now")]

    merged = merge_chat_history(history, messages, max_chars=15)

    assert [message.content for message in merged] == ["sys", "pinned", "xxx", "z" * 10, "now"]
    assert merged[1].role == "system"


def test_merge_history_respects_message_count() -> None:
    history = [{"role": "user", "content": f"turn {index}"} for index in range(5)]
    merged = merge_chat_history(history, [ChatMessage.user("now")], max_messages=2)
    assert [message.content for message in merged] == ["turn 3", "turn 4", "now"]
    assert merge_chat_history(None, [ChatMessage.user("now")]) == [ChatMessage.user("now")]


async def test_determine_intent_forces_edit_for_explicit_paths() -> None:
    classifier = RuleBasedClassifier()
    assert (
        await determine_intent(classifier, "why not rename helper in utils/io.py?")
        is Intent.EDIT
    )
    assert await determine_intent(classifier, "why is the sky blue?") is Intent.QUESTION


async def test_model_classifier_uses_model_answer() -> None:
    provider = ScriptedProvider({"intent": '{"intent": "question", "confidence": 0.9}'})
    classifier = ModelAssistedClassifier(JsonRetryClient(provider))

    assert await classifier.classify("refactor the cache layer") is Intent.QUESTION
    request = provider.last_request("intent")
    assert request.messages[-1].content == "refactor the cache layer"


async def test_model_fix_without_validation_terms_becomes_edit() -> None:
    provider = ScriptedProvider({"intent": '{"intent": "fix"}'})
    classifier = ModelAssistedClassifier(JsonRetryClient(provider))

    assert await classifier.classify("make the header blue") is Intent.EDIT
    assert await classifier.classify("fix the lint errors") is Intent.FIX


@pytest.mark.parametrize(
    "reply",
    ["not json", ProviderAuthenticationError("missing key", provider="scripted")],
)
async def test_model_failure_falls_back_to_rules(reply: object) -> None:
    provider = ScriptedProvider({"intent": reply})  # type: ignore[dict-item]
    classifier = ModelAssistedClassifier(JsonRetryClient(provider), max_retries=0)

    assert await classifier.classify("fix the failing tests") is Intent.FIX


def test_build_classifier_follows_settings() -> None:
    client = JsonRetryClient(ScriptedProvider())
    assert isinstance(build_classifier(make_settings(intent_use_llm=True), client), ModelAssistedClassifier)
    assert isinstance(build_classifier(make_settings(intent_use_llm=True), None), RuleBasedClassifier)
    assert isinstance(build_classifier(make_settings(intent_use_llm=False), client), RuleBasedClassifier)
