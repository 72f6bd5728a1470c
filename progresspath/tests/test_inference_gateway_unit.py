import sys
from types import SimpleNamespace

import pytest
from conftest import ScriptedBackend, goal_json, verdict_json

from progresspath.inference.gateway import (
    InferenceGateway,
    InferenceGatewayError,
    LlamaCppBackend,
    OpenAIChatBackend,
    _extract_first_json_object,
)
from progresspath.inference.history import HistoryMessage, TurnContext, split_history
from progresspath.inference.prompts import FALLBACK_SUMMARY


def _context(progress: int = 0) -> TurnContext:
    return TurnContext(
        goal_text="Learn to add fractions",
        goal_kind="Percentage",
        steps=["Define a fraction", "Add fractions"],
        progress=progress,
        terminal_progress=100,
        off_topic_count=0,
        history=[HistoryMessage(sender="participant", body="Hi")],
    )


def test_evaluate_turn_parses_structured_verdict(gateway, backend) -> None:
    backend.queue(verdict_json("Try 1/2 + 1/2.", progress=50, off_topic=False, significant=True))
    verdict = gateway.evaluate_turn(_context())
    assert verdict.guidance == "Try 1/2 + 1/2."
    assert verdict.progress == 50
    assert verdict.significant is True
    assert backend.calls[0]["json_output"] is True


def test_evaluate_turn_extracts_json_wrapped_in_prose(gateway, backend) -> None:
    backend.queue("Sure! Here you go:\n" + verdict_json("Keep going {slowly}.", progress=20) + "\nThanks")
    verdict = gateway.evaluate_turn(_context())
    assert verdict.guidance == "Keep going {slowly}."
    assert verdict.progress == 20


def test_evaluate_turn_defaults_missing_progress_to_current(gateway, backend) -> None:
    backend.queue(verdict_json(progress=None))
    assert gateway.evaluate_turn(_context(progress=40)).progress == 40


def test_evaluate_turn_rounds_and_clamps_progress(gateway, backend) -> None:
    backend.queue(verdict_json(progress=66.6), verdict_json(progress=250))
    assert gateway.evaluate_turn(_context()).progress == 67
    assert gateway.evaluate_turn(_context()).progress == 100


def test_evaluate_turn_retries_with_exponential_backoff(gateway, backend, sleeps) -> None:
    backend.queue(ConnectionError("reset"), '{"message": ""}', verdict_json(progress=10))
    verdict = gateway.evaluate_turn(_context())
    assert verdict.progress == 10
    assert sleeps == [1.0, 2.0]
    assert len(backend.calls) == 3


def test_evaluate_turn_fails_after_retry_budget(backend, sleeps) -> None:
    gateway = InferenceGateway(backend, max_attempts=4, backoff_sec=1.0, sleep=sleeps.append)
    backend.queue(*[TimeoutError("timeout")] * 4)
    with pytest.raises(InferenceGatewayError):
        gateway.evaluate_turn(_context())
    assert sleeps == [1.0, 2.0, 4.0]


def test_interpret_goal_normalizes_single_step_to_binary(gateway, backend) -> None:
    backend.queue(goal_json(goal_type="percentage", steps=["Explain photosynthesis"]))
    interpretation = gateway.interpret_goal("Explain photosynthesis")
    assert interpretation.goal_kind == "Binary"
    assert interpretation.step_count is None
    assert interpretation.welcome_message == "Welcome to fractions!"


def test_interpret_goal_groups_long_step_lists_into_stages(gateway, backend) -> None:
    backend.queue(goal_json(steps=[f"Task {index}" for index in range(1, 13)]))
    interpretation = gateway.interpret_goal("A very long goal")
    assert interpretation.goal_kind == "Percentage"
    # ceil(12 / 10) = 2 tasks per stage, so only six stages are needed
    assert interpretation.step_count == 6
    assert interpretation.steps[0] == "Stage 1: Task 1; Task 2"
    assert interpretation.steps[-1] == "Stage 6: Task 11; Task 12"


def test_summarize_falls_back_on_failure(gateway, backend) -> None:
    backend.queue(RuntimeError("down"))
    history = [HistoryMessage(sender="participant", body="hello")]
    assert gateway.summarize(history) == FALLBACK_SUMMARY
    assert gateway.summarize([]) == FALLBACK_SUMMARY


def test_split_history_keeps_recent_tail() -> None:
    messages = [HistoryMessage(sender="participant", body=f"m{index}") for index in range(60)]
    window = split_history(messages, max_messages=50, max_tokens=8000, tail_messages=40)
    assert window.needs_summary is True
    assert len(window.older) == 20
    assert window.recent[0].body == "m20"

    short = split_history(messages[:10])
    assert short.needs_summary is False
    assert len(short.recent) == 10


def test_split_history_triggers_on_token_budget() -> None:
    messages = [HistoryMessage(sender="assistant", body="x" * 4000) for _ in range(10)]
    window = split_history(messages, max_messages=50, max_tokens=8000, tail_messages=4)
    assert len(window.older) == 6
    assert len(window.recent) == 4


def test_extract_first_json_object_respects_strings() -> None:
    text = 'noise {"a": "}", "b": {"c": 1}} trailing'
    assert _extract_first_json_object(text) == '{"a": "}", "b": {"c": 1}}'
    assert _extract_first_json_object("no json here") == ""


def test_openai_backend_requests_json_mode() -> None:
    captured = {}

    def create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=' {"ok": true} '))])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    backend = OpenAIChatBackend(model="gpt-4o-mini", api_key="test", client=client)
    out = backend.complete([{"role": "user", "content": "hi"}], json_output=True, max_tokens=50)
    assert out == '{"ok": true}'
    assert captured["response_format"] == {"type": "json_object"}
    assert captured["model"] == "gpt-4o-mini"
    assert captured["max_tokens"] == 50


def test_llama_cpp_backend_drops_unsupported_response_format(monkeypatch, tmp_path) -> None:
    class FakeLlama:
        def __init__(self, **kwargs) -> None:
            assert kwargs["model_path"].endswith("tutor.gguf")

        def create_chat_completion(self, **kwargs):
            if "response_format" in kwargs:
                raise TypeError("create_chat_completion() got an unexpected keyword argument 'response_format'")
            return {"choices": [{"message": {"content": "plain"}}]}

    monkeypatch.setitem(sys.modules, "llama_cpp", SimpleNamespace(Llama=FakeLlama))
    model_path = tmp_path / "tutor.gguf"
    model_path.write_text("x", encoding="utf-8")

    backend = LlamaCppBackend(model_path=str(model_path))
    assert backend.complete([{"role": "user", "content": "hi"}], json_output=True, max_tokens=20) == "plain"


def test_llama_cpp_backend_without_model_path_fails_cleanly() -> None:
    gateway = InferenceGateway(LlamaCppBackend(model_path=""), max_attempts=1, sleep=lambda _: None)
    with pytest.raises(InferenceGatewayError):
        gateway.evaluate_turn(_context())


def test_scripted_backend_reports_name() -> None:
    assert InferenceGateway(ScriptedBackend()).backend_name == "scripted"
