"""Inference sessions: prompt feeding, token generation and their state machine.

A session owns a key/value cache and the token history for one conversation
with a shared, read-only :class:`~infer_runtime.loader.Model`::

    EMPTY -> FEEDING_PROMPT -> READY_TO_GENERATE -> GENERATING -> FINISHED
                     \\______________________\\______________/-> ERROR

Step calls never raise for evaluation faults: the fault is recorded, the
session moves to ``ERROR`` and every later step returns the same error.
Exceptions raised by token callbacks, status callbacks, logits hooks or
samplers are not evaluation faults; they propagate to the caller and leave
the session in the state it had reached.
"""
from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence, Union

import numpy as np

from infer_runtime.backends import (
    BackendHandle,
    BackendPreference,
    CPUBackend,
    materialize,
    select_backend,
)
from infer_runtime.errors import (
    BackendError,
    CapacityExceeded,
    EvaluationError,
    SessionStateError,
)
from infer_runtime.executor import TransformerExecutor
from infer_runtime.kv_cache import KVCache
from infer_runtime.loader.weight_store import Model
from infer_runtime.sampler import Sampler, TopPTopKSampler, softmax
from infer_runtime.tokenizer import Tokenizer, Utf8Buffer, VocabularyTokenizer
from infer_runtime.types import ElementType

log = logging.getLogger(__name__)

# failures inside an evaluation that end the session instead of propagating
_EVALUATION_FAULTS = (
    EvaluationError,
    BackendError,
    CapacityExceeded,
    MemoryError,
    OSError,
)


class SessionState(enum.Enum):
    EMPTY = "empty"
    FEEDING_PROMPT = "feeding_prompt"
    READY_TO_GENERATE = "ready_to_generate"
    GENERATING = "generating"
    FINISHED = "finished"
    ERROR = "error"


class StopReason(enum.Enum):
    END_OF_SEQUENCE = "end_of_sequence"
    LENGTH = "length"
    CAPACITY = "capacity"
    CANCELLED = "cancelled"


class Feedback(enum.Enum):
    CONTINUE = "continue"
    HALT = "halt"


class ResponseKind(enum.Enum):
    PROMPT_TOKEN = "prompt_token"
    INFERRED_TOKEN = "inferred_token"
    END_OF_TEXT = "end_of_text"


@dataclass(frozen=True, slots=True)
class InferenceResponse:
    kind: ResponseKind
    token_id: int
    text: str


@dataclass(frozen=True, slots=True)
class StatusEvent:
    """Out-of-band notice: ``batch``, ``fallback``, ``evicted``, ``finished`` or ``error``."""

    kind: str
    n_past: int
    backend: str = ""
    tokens: int = 0
    message: str = ""


TokenCallback = Callable[[InferenceResponse], Union[Feedback, None]]
StatusCallback = Callable[[StatusEvent], None]


@dataclass
class SessionConfig:
    n_batch: int = 8
    max_tokens: int | None = None
    sliding_window: bool = False
    memory_type: ElementType = ElementType.F16
    seed: int | None = None
    sampler: Sampler = field(default_factory=TopPTopKSampler)
    ignore_eos: bool = False
    cpu_fallback: bool = True
    status_callback: StatusCallback | None = None

    def __post_init__(self) -> None:
        if self.n_batch < 1:
            raise ValueError("n_batch must be >= 1")
        if self.max_tokens is not None and self.max_tokens < 0:
            raise ValueError("max_tokens must be >= 0")
        if self.memory_type not in (ElementType.F16, ElementType.F32):
            raise ValueError("memory_type must be F16 or F32")


@dataclass
class InferenceStats:
    feed_prompt_seconds: float = 0.0
    prompt_tokens: int = 0
    predict_seconds: float = 0.0
    predict_tokens: int = 0
    fallback_tokens: int = 0

    @property
    def prompt_ms_per_token(self) -> float:
        return self.feed_prompt_seconds * 1000 / self.prompt_tokens if self.prompt_tokens else 0.0

    @property
    def predict_ms_per_token(self) -> float:
        return self.predict_seconds * 1000 / self.predict_tokens if self.predict_tokens else 0.0

    def __str__(self) -> str:
        lines = [
            f"feed_prompt_duration: {self.feed_prompt_seconds * 1000:.1f}ms",
            f"prompt_tokens: {self.prompt_tokens}",
            f"predict_duration: {self.predict_seconds * 1000:.1f}ms",
            f"predict_tokens: {self.predict_tokens}",
            f"per_token_duration: {self.predict_ms_per_token:.3f}ms",
        ]
        if self.fallback_tokens:
            lines.append(f"fallback_tokens: {self.fallback_tokens}")
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one step call: the tokens it consumed or produced, and where it left the session."""

    state: SessionState
    n_past: int
    tokens: tuple[int, ...] = ()
    stop_reason: StopReason | None = None
    error: EvaluationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class InferenceSession:
    """One conversation against a materialized model.  Not thread-safe, except :meth:`cancel`."""

    def __init__(
        self,
        model: Model,
        handle: BackendHandle,
        config: SessionConfig | None = None,
        tokenizer: Tokenizer | None = None,
        *,
        owns_handle: bool = False,
    ) -> None:
        self.model = model
        self.handle = handle
        self.config = config or SessionConfig()
        self.tokenizer: Tokenizer = tokenizer or VocabularyTokenizer(model.vocabulary)
        hp = model.hparams
        self._executor = TransformerExecutor(hp)
        self._cache = KVCache(hp.n_layer, hp.n_head_kv, hp.head_dim, hp.n_ctx, self.config.memory_type)
        self._rng = np.random.default_rng(self.config.seed)
        self._owns_handle = owns_handle
        self._fallback: BackendHandle | None = None

        self._state = SessionState.EMPTY
        self._history: list[int] = []
        self._generated: list[int] = []
        self._pending: int | None = None
        self._logits: Any = None
        self._stop_reason: StopReason | None = None
        self._capacity_exceeded = False
        self._error: EvaluationError | None = None
        self._token_limit = self.config.max_tokens
        self._cancel = threading.Event()
        self._text = Utf8Buffer()
        self._closed = False
        self.stats = InferenceStats()

    def __enter__(self) -> "InferenceSession":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # -- properties ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> tuple[int, ...]:
        return tuple(self._history)

    @property
    def generated_tokens(self) -> tuple[int, ...]:
        return tuple(self._generated)

    @property
    def n_past(self) -> int:
        return self._cache.n_past

    @property
    def n_evicted(self) -> int:
        return self._cache.n_evicted

    @property
    def context_size(self) -> int:
        return self._cache.capacity

    @property
    def stop_reason(self) -> StopReason | None:
        return self._stop_reason

    @property
    def capacity_exceeded(self) -> bool:
        return self._capacity_exceeded

    @property
    def error(self) -> EvaluationError | None:
        return self._error

    @property
    def fallback_handle(self) -> BackendHandle | None:
        return self._fallback

    @property
    def distribution(self) -> Any:
        """Next-token probabilities from the most recent evaluation, or ``None``."""
        if self._logits is None:
            return None
        return softmax(self._logits)

    # -- helpers ------------------------------------------------------------

    def _result(self, tokens: Sequence[int] = ()) -> StepResult:
        return StepResult(
            state=self._state,
            n_past=self._cache.n_past,
            tokens=tuple(tokens),
            stop_reason=self._stop_reason,
            error=self._error,
        )

    def _status(self, kind: str, *, backend: str = "", tokens: int = 0, message: str = "") -> None:
        callback = self.config.status_callback
        if callback is not None:
            callback(StatusEvent(kind, self._cache.n_past, backend, tokens, message))

    def _check_open(self, operation: str, allowed: tuple[SessionState, ...]) -> bool:
        """False when the session is in ERROR and the recorded error should be returned."""
        if self._closed:
            raise SessionStateError(f"{operation}: session is closed")
        if self._state is SessionState.ERROR:
            return False
        if self._state not in allowed:
            raise SessionStateError(f"{operation} is not allowed in state {self._state.name}")
        return True

    def _finish(self, reason: StopReason, *, capacity: bool = False) -> None:
        self._state = SessionState.FINISHED
        self._stop_reason = reason
        self._capacity_exceeded = capacity
        self._text.flush()
        log.info(
            "session finished: %s after %d generated tokens (n_past=%d)",
            reason.value, len(self._generated), self._cache.n_past,
        )
        self._status("finished", message=reason.value)

    def _fail(self, exc: BaseException) -> StepResult:
        if isinstance(exc, EvaluationError):
            error = exc
        else:
            error = EvaluationError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
        self._error = error
        self._state = SessionState.ERROR
        log.error("evaluation failed at n_past=%d: %s", self._cache.n_past, error)
        self._status("error", message=str(error))
        return self._result()

    def _emit(self, callback: TokenCallback | None, kind: ResponseKind, token: int) -> bool:
        """Deliver one token; True when the callback asked to halt."""
        if kind is ResponseKind.END_OF_TEXT:
            text = self._text.flush()
        else:
            text = self._text.push(self.tokenizer.token_bytes(token))
        if callback is None:
            return False
        return callback(InferenceResponse(kind, token, text)) is Feedback.HALT

    def _fallback_for_prompt(self) -> BackendHandle:
        if self._fallback is None:
            primary = self.handle
            fallback = BackendHandle(CPUBackend(primary.backend.device_id))
            materialize(self.model, fallback)
            self._fallback = fallback
            log.info(
                "%s cannot evaluate batches; prompt batches go through %s",
                primary.device, fallback.device,
            )
        return self._fallback

    def _evaluate(self, handle: BackendHandle, tokens: Sequence[int]) -> Any:
        """Evaluate and commit one batch; the cache is untouched when this raises."""
        try:
            logits = handle.evaluate(self.model, self._executor, self._cache, tokens)
            self._cache.commit(len(tokens))
        except BaseException:
            self._cache.rollback()
            raise
        return logits

    def _make_room(self, count: int) -> None:
        overflow = self._cache.n_past + count - self._cache.capacity
        if overflow > 0:
            self._cache.evict(overflow)
            log.debug("evicted %d oldest cache entries", overflow)
            self._status("evicted", tokens=overflow)

    def _tokens_of(self, prompt: str | Sequence[int]) -> list[int]:
        if isinstance(prompt, str):
            tokens = self.tokenizer.encode(prompt, add_bos=not self._history)
        else:
            tokens = [int(t) for t in prompt]
        n_vocab = self.model.hparams.n_vocab
        bad = [t for t in tokens if not 0 <= t < n_vocab]
        if bad:
            raise ValueError(f"token ids out of range [0, {n_vocab}): {bad}")
        return tokens

    # -- prompt -------------------------------------------------------------

    def _feed(
        self,
        tokens: list[int],
        callback: TokenCallback | None,
        on_logits: Callable[[int, Any], None] | None = None,
    ) -> StepResult:
        if self._cancel.is_set():
            self._finish(StopReason.CANCELLED)
            return self._result()
        cache = self._cache
        if not self.config.sliding_window and cache.n_past + len(tokens) > cache.capacity:
            log.warning(
                "prompt of %d tokens does not fit: n_past=%d, context size %d",
                len(tokens), cache.n_past, cache.capacity,
            )
            self._finish(StopReason.CAPACITY, capacity=True)
            return self._result()

        self._state = SessionState.FEEDING_PROMPT
        primary = self.handle
        t0 = time.perf_counter()
        fed: list[int] = []
        halted = False
        announced_fallback = False
        try:
            while len(fed) < len(tokens):
                if self._cancel.is_set():
                    break
                remaining = len(tokens) - len(fed)
                handle = primary
                if (
                    remaining > 1
                    and not primary.capabilities.supports_batched_eval
                    and self.config.cpu_fallback
                ):
                    try:
                        handle = self._fallback_for_prompt()
                    except BackendError as exc:
                        return self._fail(exc)
                    if not announced_fallback:
                        announced_fallback = True
                        self._status(
                            "fallback", backend=handle.device, tokens=remaining,
                            message=f"{primary.device} evaluates one token per call",
                        )

                size = min(handle.capabilities.batch_limit(self.config.n_batch), remaining, cache.capacity)
                batch = tokens[len(fed) : len(fed) + size]
                if self.config.sliding_window:
                    self._make_room(len(batch))
                try:
                    logits = self._evaluate(handle, batch)
                except _EVALUATION_FAULTS as exc:
                    return self._fail(exc)

                if on_logits is not None:
                    on_logits(len(fed), logits)
                self._logits = logits[-1]
                self._history.extend(batch)
                fed.extend(batch)
                self.stats.prompt_tokens += len(batch)
                if handle is not primary:
                    self.stats.fallback_tokens += len(batch)
                if log.isEnabledFor(logging.DEBUG):
                    log.debug("fed %d prompt tokens on %s (n_past=%d)", len(batch), handle.device, cache.n_past)
                self._status("batch", backend=handle.device, tokens=len(batch))

                for token in batch:
                    halted = self._emit(callback, ResponseKind.PROMPT_TOKEN, token) or halted
                if halted:
                    break
        finally:
            self.stats.feed_prompt_seconds += time.perf_counter() - t0

        if halted or self._cancel.is_set():
            self._finish(StopReason.CANCELLED)
        else:
            self._state = SessionState.READY_TO_GENERATE
        return self._result(fed)

    def feed_prompt(self, prompt: str | Sequence[int], callback: TokenCallback | None = None) -> StepResult:
        """Evaluate prompt tokens (or text) into the cache.

        Allowed from ``EMPTY`` and ``READY_TO_GENERATE``.
        """
        if not self._check_open("feed_prompt", (SessionState.EMPTY, SessionState.READY_TO_GENERATE)):
            return self._result()
        tokens = self._tokens_of(prompt)
        if not tokens:
            raise ValueError("prompt is empty")
        return self._feed(tokens, callback)

    # -- generation ---------------------------------------------------------

    def next_token(self, callback: TokenCallback | None = None) -> StepResult:
        """Evaluate the previously sampled token, then sample and return the next one."""
        if not self._check_open(
            "next_token", (SessionState.READY_TO_GENERATE, SessionState.GENERATING),
        ):
            return self._result()
        if self._cancel.is_set():
            self._finish(StopReason.CANCELLED)
            return self._result()
        if self._token_limit is not None and len(self._generated) >= self._token_limit:
            self._finish(StopReason.LENGTH)
            return self._result()

        t0 = time.perf_counter()
        cache = self._cache
        try:
            if self._pending is not None:
                if cache.is_full:
                    if not self.config.sliding_window:
                        self._finish(StopReason.CAPACITY, capacity=True)
                        return self._result()
                    self._make_room(1)
                try:
                    logits = self._evaluate(self.handle, [self._pending])
                except _EVALUATION_FAULTS as exc:
                    return self._fail(exc)
                self._logits = logits[-1]
                self._pending = None

            token = int(self.config.sampler.sample(self._logits, self._history, self._rng))
            self._history.append(token)
            self._generated.append(token)
            self._pending = token
            self._state = SessionState.GENERATING
            self.stats.predict_tokens += 1
        finally:
            self.stats.predict_seconds += time.perf_counter() - t0

        is_eos = token == self.tokenizer.eos_id and not self.config.ignore_eos
        kind = ResponseKind.END_OF_TEXT if is_eos else ResponseKind.INFERRED_TOKEN
        halted = self._emit(callback, kind, token)

        if is_eos:
            self._finish(StopReason.END_OF_SEQUENCE)
        elif self._token_limit is not None and len(self._generated) >= self._token_limit:
            self._finish(StopReason.LENGTH)
        elif cache.is_full and not self.config.sliding_window:
            self._finish(StopReason.CAPACITY, capacity=True)
        elif halted or self._cancel.is_set():
            self._finish(StopReason.CANCELLED)
        return self._result((token,))

    def generate(self, max_tokens: int | None = None, callback: TokenCallback | None = None) -> StepResult:
        """Call :meth:`next_token` until the session finishes or fails.

        ``max_tokens`` bounds the tokens produced by this call; without it
        ``SessionConfig.max_tokens`` bounds the whole session.
        """
        if not self._check_open(
            "generate", (SessionState.READY_TO_GENERATE, SessionState.GENERATING),
        ):
            return self._result()
        if max_tokens is not None:
            if max_tokens < 0:
                raise ValueError("max_tokens must be >= 0")
            self._token_limit = len(self._generated) + max_tokens
        produced: list[int] = []
        while True:
            step = self.next_token(callback)
            produced.extend(step.tokens)
            if step.state in (SessionState.FINISHED, SessionState.ERROR):
                break
        return self._result(produced)

    def infer(
        self,
        prompt: str | Sequence[int],
        max_tokens: int | None = None,
        callback: TokenCallback | None = None,
    ) -> StepResult:
        """Feed ``prompt`` and generate from it; returns the generated tokens."""
        fed = self.feed_prompt(prompt, callback)
        if fed.state is not SessionState.READY_TO_GENERATE:
            return StepResult(fed.state, fed.n_past, (), fed.stop_reason, fed.error)
        return self.generate(max_tokens, callback)

    def cancel(self) -> None:
        """Stop at the next step boundary; safe to call from any thread."""
        self._cancel.set()

    # -- scoring ------------------------------------------------------------

    def perplexity(
        self,
        prompt: str | Sequence[int],
        chunk_callback: Callable[[int, float], None] | None = None,
    ) -> float:
        """Perplexity of ``prompt`` under the model, computed while feeding it.

        Only allowed on a fresh session.  Raises :class:`EvaluationError` when
        feeding fails and :class:`ValueError` for fewer than two tokens.
        """
        if not self._check_open("perplexity", (SessionState.EMPTY,)):
            raise self._error  # type: ignore[misc]
        tokens = self._tokens_of(prompt)
        if len(tokens) < 2:
            raise ValueError("perplexity needs at least two tokens")

        nll = 0.0
        count = 0
        chunk = 0

        def _score(start: int, logits: Any) -> None:
            nonlocal nll, count, chunk
            for row in range(logits.shape[0]):
                target = start + row + 1
                if target >= len(tokens):
                    break
                probs = softmax(logits[row])
                nll -= math.log(max(float(probs[tokens[target]]), 1e-30))
                count += 1
            chunk += 1
            if chunk_callback is not None and count:
                chunk_callback(chunk, math.exp(nll / count))

        result = self._feed(tokens, None, on_logits=_score)
        if result.error is not None:
            raise result.error
        if count == 0:
            raise ValueError("no tokens were scored")
        return math.exp(nll / count)

    # -- teardown -----------------------------------------------------------

    def close(self) -> None:
        """Free the cache and any fallback weights; model weights are left untouched."""
        if self._closed:
            return
        self._closed = True
        self._cache.release()
        if self._fallback is not None:
            self._fallback.release()
            self._fallback = None
        if self._owns_handle:
            self.handle.release()


def start_session(
    model: Model,
    backend: BackendHandle | BackendPreference | str = BackendPreference.CPU,
    config: SessionConfig | None = None,
    tokenizer: Tokenizer | None = None,
    *,
    device_id: int = 0,
) -> InferenceSession:
    """Select a backend, materialize ``model`` on it and open a session.

    Backend failures (:class:`DeviceUnavailable`, :class:`OutOfDeviceMemory`)
    are raised here, before any evaluation.
    """
    if isinstance(backend, BackendHandle):
        handle, owns = backend, False
    else:
        handle, owns = select_backend(backend, device_id), True
    try:
        materialize(model, handle)
    except BackendError:
        if owns:
            handle.release()
        raise
    if handle.downgraded:
        log.warning("session on %s: requested GPU backend was unavailable", handle.device)
    return InferenceSession(model, handle, config, tokenizer, owns_handle=owns)
