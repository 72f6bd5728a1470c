from __future__ import annotations

"""
Retrying adapter to the external tutoring model.

Design intent:
- One call per turn returns a structured verdict: guidance text, absolute
  progress, off-topic flag and significant-contribution flag.
- Every attempt is bounded by the backend timeout; attempts are bounded by
  `max_attempts` with exponential backoff (1s, 2s, 4s, ...).
- Transport errors, empty output and malformed JSON all surface as one
  `InferenceGatewayError` once the retry budget is spent.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Sequence, TypeVar

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from progresspath.inference.history import HistoryMessage, TurnContext
from progresspath.inference.interpretation import normalize_interpretation
from progresspath.inference.prompts import (
    FALLBACK_SUMMARY,
    GOAL_INTERPRETATION_SYSTEM_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    build_goal_request,
    build_turn_system_prompt,
)
from progresspath.internal_core.config import AppConfig
from progresspath.internal_core.contracts import GoalInterpretation

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChatMessages = Sequence[dict[str, str]]


class InferenceGatewayError(RuntimeError):
    """Raised when the model cannot produce a usable answer within the retry budget."""


class InferenceBackend(ABC):
    @abstractmethod
    def complete(self, messages: ChatMessages, *, json_output: bool, max_tokens: int) -> str: ...

    @abstractmethod
    def name(self) -> str: ...


class OpenAIChatBackend(InferenceBackend):
    """Any OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_sec: float = 30.0,
        client: Any = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url
        self._timeout_sec = timeout_sec
        self._client = client

    def _get_client(self) -> Any:
        # Created lazily; a missing key surfaces as a failed call.
        if self._client is None:
            self._client = OpenAI(
                api_key=self._api_key or None,
                base_url=self._base_url or None,
                timeout=self._timeout_sec,
                max_retries=0,
            )
        return self._client

    def complete(self, messages: ChatMessages, *, json_output: bool, max_tokens: int) -> str:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": list(messages),
            "max_tokens": int(max_tokens),
            "temperature": 0.2,
        }
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}
        response = self._get_client().chat.completions.create(**kwargs)
        return str(response.choices[0].message.content or "").strip()

    def name(self) -> str:
        return "openai"


class LlamaCppBackend(InferenceBackend):
    """Local GGUF model through llama-cpp-python, loaded on first use."""

    def __init__(
        self,
        *,
        model_path: str,
        n_ctx: int = 8192,
        n_gpu_layers: int = -1,
        n_threads: Optional[int] = None,
    ) -> None:
        self._model_path = model_path
        self._n_ctx = n_ctx
        self._n_gpu_layers = n_gpu_layers
        self._n_threads = n_threads
        self._llm: Any = None
        # llama.cpp contexts are not safe for concurrent use.
        self._lock = threading.Lock()

    def _load(self) -> Any:
        if self._llm is not None:
            return self._llm
        if not self._model_path:
            raise InferenceGatewayError(
                "llama_cpp model path is missing. Set PROGRESSPATH_LLAMA_CPP_MODEL."
            )
        try:
            from llama_cpp import Llama  # type: ignore
        except Exception as exc:
            raise InferenceGatewayError(f"llama_cpp import failed: {exc}") from exc

        llm_kwargs: dict[str, Any] = {
            "model_path": self._model_path,
            "n_ctx": int(self._n_ctx),
            "n_gpu_layers": int(self._n_gpu_layers),
            "verbose": False,
        }
        if self._n_threads is not None:
            llm_kwargs["n_threads"] = int(self._n_threads)
        self._llm = Llama(**llm_kwargs)
        return self._llm

    def complete(self, messages: ChatMessages, *, json_output: bool, max_tokens: int) -> str:
        completion_kwargs: dict[str, Any] = {
            "messages": list(messages),
            "temperature": 0.2,
            "max_tokens": int(max_tokens),
        }
        if json_output:
            completion_kwargs["response_format"] = {"type": "json_object"}
        with self._lock:
            llm = self._load()
            try:
                resp = llm.create_chat_completion(**completion_kwargs)
            except TypeError as exc:
                # Older llama-cpp-python builds do not accept response_format.
                if "response_format" not in str(exc):
                    raise
                completion_kwargs.pop("response_format", None)
                resp = llm.create_chat_completion(**completion_kwargs)
        return str(resp["choices"][0]["message"]["content"] or "").strip()

    def name(self) -> str:
        return "llama_cpp"


class TurnVerdict(BaseModel):
    model_config = ConfigDict(extra="forbid")

    guidance: str
    progress: int = Field(ge=0, le=100)
    off_topic: bool = False
    significant: bool = False


class _VerdictPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message: str
    overall_progress: Optional[float] = Field(default=None, alias="overallProgress")
    is_off_topic: bool = Field(default=False, alias="isOffTopic")
    significant_progress: bool = Field(default=False, alias="significantProgress")

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("message is empty")
        return value


class _GoalPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    goal_type: str = Field(default="binary", alias="goalType")
    steps: list[str] = Field(default_factory=list)
    welcome_message: str = Field(default="", alias="welcomeMessage")
    initial_guidance: str = Field(default="", alias="initialGuidance")


def _parse_json_object(raw: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        if isinstance(data, dict):
            return data
    except Exception:
        pass

    extracted = _extract_first_json_object(raw)
    if not extracted:
        return None
    try:
        data = json.loads(extracted)
        if isinstance(data, dict):
            return data
    except Exception:
        return None
    return None


def _extract_first_json_object(text: str) -> str:
    start = text.find("{")
    if start < 0:
        return ""
    depth = 0
    in_str = False
    escape = False
    for i, ch in enumerate(text[start:], start=start):
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""


def _chat_role(message: HistoryMessage) -> str:
    return "user" if message.sender == "participant" else "assistant"


def _preview(text: str, limit: int = 80) -> str:
    text = (text or "").replace("\n", " ").strip()
    return text if len(text) <= limit else text[:limit] + "..."


class InferenceGateway:
    def __init__(
        self,
        backend: InferenceBackend,
        *,
        max_attempts: int = 3,
        backoff_sec: float = 1.0,
        max_tokens: int = 800,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backend = backend
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_sec = max(0.0, float(backoff_sec))
        self._max_tokens = int(max_tokens)
        self._sleep = sleep

    @property
    def backend_name(self) -> str:
        return self._backend.name()

    def _with_retry(self, operation: str, action: Callable[[], T]) -> T:
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return action()
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "inference_attempt_failed operation=%s backend=%s attempt=%s/%s error=%s",
                    operation,
                    self._backend.name(),
                    attempt,
                    self._max_attempts,
                    exc,
                )
                if attempt < self._max_attempts:
                    self._sleep(self._backoff_sec * (2 ** (attempt - 1)))
        raise InferenceGatewayError(
            f"{operation} failed after {self._max_attempts} attempts: {last_error}"
        ) from last_error

    def _complete_json(self, messages: ChatMessages) -> dict[str, Any]:
        raw = self._backend.complete(messages, json_output=True, max_tokens=self._max_tokens)
        if not raw:
            raise InferenceGatewayError("Empty response from model.")
        payload = _parse_json_object(raw)
        if payload is None:
            raise InferenceGatewayError(f"Model output is not valid JSON: {_preview(raw)}")
        return payload

    def evaluate_turn(self, context: TurnContext) -> TurnVerdict:
        messages: list[dict[str, str]] = [
            {
                "role": "system",
                "content": build_turn_system_prompt(
                    goal_text=context.goal_text,
                    goal_kind=context.goal_kind,
                    steps=context.steps,
                    progress=context.progress,
                    terminal_progress=context.terminal_progress,
                    off_topic_count=context.off_topic_count,
                ),
            }
        ]
        if context.summary:
            messages.append(
                {"role": "system", "content": f"[Previous conversation summary: {context.summary}]"}
            )
        messages.extend({"role": _chat_role(item), "content": item.body} for item in context.history)

        def _attempt() -> TurnVerdict:
            payload = self._complete_json(messages)
            try:
                parsed = _VerdictPayload.model_validate(payload)
            except ValidationError as exc:
                raise InferenceGatewayError(f"Model verdict failed validation: {exc}") from exc
            proposed = context.progress if parsed.overall_progress is None else parsed.overall_progress
            return TurnVerdict(
                guidance=parsed.message,
                progress=max(0, min(100, int(round(proposed)))),
                off_topic=parsed.is_off_topic,
                significant=parsed.significant_progress,
            )

        verdict = self._with_retry("evaluate_turn", _attempt)
        logger.debug(
            "turn_verdict progress=%s off_topic=%s significant=%s",
            verdict.progress,
            verdict.off_topic,
            verdict.significant,
        )
        return verdict

    def interpret_goal(self, goal_text: str) -> GoalInterpretation:
        messages = [
            {"role": "system", "content": GOAL_INTERPRETATION_SYSTEM_PROMPT},
            {"role": "user", "content": build_goal_request(goal_text)},
        ]

        def _attempt() -> GoalInterpretation:
            payload = self._complete_json(messages)
            try:
                parsed = _GoalPayload.model_validate(payload)
            except ValidationError as exc:
                raise InferenceGatewayError(f"Goal interpretation failed validation: {exc}") from exc
            return normalize_interpretation(
                goal_type=parsed.goal_type,
                steps=parsed.steps,
                welcome_message=parsed.welcome_message,
                initial_guidance=parsed.initial_guidance,
            )

        interpretation = self._with_retry("interpret_goal", _attempt)
        logger.info(
            "goal_interpreted kind=%s steps=%s",
            interpretation.goal_kind,
            len(interpretation.steps),
        )
        return interpretation

    def summarize(self, history: Sequence[HistoryMessage]) -> str:
        """Summarize older history; falls back to a fixed sentence instead of failing the turn."""

        if not history:
            return FALLBACK_SUMMARY
        transcript = "\n".join(
            f"{'Student' if item.sender == 'participant' else 'Tutor'}: {item.body}" for item in history
        )
        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": transcript},
        ]
        try:
            summary = self._backend.complete(messages, json_output=False, max_tokens=self._max_tokens)
        except Exception as exc:
            logger.warning("summary_failed backend=%s error=%s", self._backend.name(), exc)
            return FALLBACK_SUMMARY
        return summary.strip() or FALLBACK_SUMMARY


def build_gateway(cfg: AppConfig) -> InferenceGateway:
    if cfg.LLM_BACKEND == "llama_cpp":
        backend: InferenceBackend = LlamaCppBackend(
            model_path=cfg.LLAMA_CPP_MODEL,
            n_ctx=cfg.LLAMA_CPP_N_CTX,
            n_gpu_layers=cfg.LLAMA_CPP_N_GPU_LAYERS,
            n_threads=cfg.LLAMA_CPP_N_THREADS,
        )
    elif cfg.LLM_BACKEND == "openai":
        backend = OpenAIChatBackend(
            model=cfg.LLM_MODEL,
            api_key=cfg.LLM_API_KEY,
            base_url=cfg.LLM_BASE_URL,
            timeout_sec=cfg.LLM_TIMEOUT_SECONDS,
        )
    else:
        raise ValueError(f"Unsupported LLM backend: {cfg.LLM_BACKEND}")

    if not cfg.llm_configured:
        logger.warning("llm_not_configured backend=%s model=%s", cfg.LLM_BACKEND, cfg.LLM_MODEL)
    return InferenceGateway(
        backend,
        max_attempts=cfg.LLM_MAX_ATTEMPTS,
        backoff_sec=cfg.LLM_BACKOFF_SECONDS,
        max_tokens=cfg.LLM_MAX_TOKENS,
    )
