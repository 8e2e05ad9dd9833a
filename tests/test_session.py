from __future__ import annotations

import math
import threading
import time
from typing import Any, Sequence
from unittest import mock

import numpy as np
import pytest

from conftest import DeviceCopyBackend
from infer_runtime.backends import (
    BackendHandle,
    BackendPreference,
    CPUBackend,
    CUDABackend,
    MPSBackend,
    materialize,
)
from infer_runtime.errors import DeviceUnavailable, EvaluationError, SessionStateError
from infer_runtime.executor import TransformerExecutor
from infer_runtime.sampler import GreedySampler
from infer_runtime.session import (
    Feedback,
    InferenceSession,
    ResponseKind,
    SessionConfig,
    SessionState,
    StopReason,
    start_session,
)
from infer_runtime.types import ElementType

PROMPT = [1, 5, 9, 12, 3]


class ScriptedSampler:
    """Returns a fixed sequence of token ids, then repeats the last one."""

    def __init__(self, tokens: Sequence[int]) -> None:
        self.tokens = list(tokens)
        self.calls = 0

    def sample(self, logits: Any, previous_tokens: Sequence[int], rng: np.random.Generator) -> int:
        token = self.tokens[min(self.calls, len(self.tokens) - 1)]
        self.calls += 1
        return token


def _config(**overrides: Any) -> SessionConfig:
    fields: dict[str, Any] = dict(memory_type=ElementType.F32, sampler=GreedySampler(), ignore_eos=True)
    fields.update(overrides)
    return SessionConfig(**fields)


class TestSessionConfig:
    def test_defaults(self) -> None:
        config = SessionConfig()
        assert config.n_batch == 8
        assert config.memory_type is ElementType.F16
        assert config.cpu_fallback

    @pytest.mark.parametrize(
        "overrides",
        [{"n_batch": 0}, {"max_tokens": -1}, {"memory_type": ElementType.Q8_0}],
    )
    def test_rejects(self, overrides: dict[str, Any]) -> None:
        with pytest.raises(ValueError):
            SessionConfig(**overrides)


class TestPromptFeeding:
    def test_feed_moves_to_ready(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            assert session.state is SessionState.EMPTY
            assert session.distribution is None
            result = session.feed_prompt(PROMPT)
            assert result.ok
            assert result.state is SessionState.READY_TO_GENERATE
            assert result.tokens == tuple(PROMPT)
            assert result.n_past == len(PROMPT)
            assert session.history == tuple(PROMPT)
            assert session.distribution.sum() == pytest.approx(1.0)

    def test_batch_size_does_not_change_distribution(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config(n_batch=8)) as whole, \
             start_session(tiny_model, config=_config(n_batch=2)) as split:
            whole.feed_prompt(PROMPT)
            split.feed_prompt(PROMPT)
            assert whole.n_past == split.n_past == len(PROMPT)
            np.testing.assert_allclose(whole.distribution, split.distribution, rtol=1e-4, atol=1e-6)

    def test_prompt_in_two_calls_matches_one(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as once, \
             start_session(tiny_model, config=_config()) as twice:
            once.feed_prompt(PROMPT)
            twice.feed_prompt(PROMPT[:2])
            twice.feed_prompt(PROMPT[2:])
            np.testing.assert_allclose(once.distribution, twice.distribution, rtol=1e-4, atol=1e-6)

    def test_batch_status_events(self, tiny_model) -> None:
        events = []
        with start_session(tiny_model, config=_config(n_batch=2, status_callback=events.append)) as session:
            session.feed_prompt(PROMPT)
        batches = [e for e in events if e.kind == "batch"]
        assert [e.tokens for e in batches] == [2, 2, 1]
        assert [e.n_past for e in batches] == [2, 4, 5]
        assert all(e.backend == "cpu:0" for e in batches)

    def test_text_prompt_adds_bos_once(self, tiny_model) -> None:
        responses = []
        with start_session(tiny_model, config=_config()) as session:
            session.feed_prompt("the", responses.append)
            session.feed_prompt(" a")
            assert session.history == (1, 30, 7, 29, 3)
        assert [r.kind for r in responses] == [ResponseKind.PROMPT_TOKEN] * 3
        assert "".join(r.text for r in responses) == "<s>the"

    def test_empty_prompt(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            with pytest.raises(ValueError):
                session.feed_prompt([])

    def test_token_out_of_vocabulary(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            with pytest.raises(ValueError):
                session.feed_prompt([1, tiny_model.hparams.n_vocab])
            assert session.state is SessionState.EMPTY

    def test_prompt_longer_than_context(self, open_tiny) -> None:
        model = open_tiny(context_size=4)
        with start_session(model, config=_config()) as session:
            result = session.feed_prompt(PROMPT)
            assert result.state is SessionState.FINISHED
            assert result.stop_reason is StopReason.CAPACITY
            assert result.n_past == 0
            assert session.capacity_exceeded

    def test_prompt_longer_than_context_with_sliding_window(self, open_tiny) -> None:
        model = open_tiny(context_size=4)
        with start_session(model, config=_config(sliding_window=True)) as session:
            result = session.feed_prompt(PROMPT + PROMPT)
            assert result.state is SessionState.READY_TO_GENERATE
            assert session.n_past == 4
            assert session.n_evicted == 6


class TestCPUFallback:
    def test_unbatched_backend_matches_batched(self, tiny_model) -> None:
        events = []
        primary = BackendHandle(DeviceCopyBackend())
        with start_session(tiny_model, config=_config()) as reference, \
             start_session(tiny_model, primary, _config(status_callback=events.append)) as session:
            reference.feed_prompt(PROMPT)
            session.feed_prompt(PROMPT)
            np.testing.assert_allclose(session.distribution, reference.distribution, rtol=1e-4, atol=1e-6)

            assert session.stats.fallback_tokens == len(PROMPT)
            assert session.fallback_handle is not None
            assert session.fallback_handle.device == "cpu:0"
            fallback = [e for e in events if e.kind == "fallback"]
            assert len(fallback) == 1
            assert fallback[0].tokens == len(PROMPT)

            reference.generate(4)
            session.generate(4)
            assert session.generated_tokens == reference.generated_tokens
            # generation stays on the primary backend
            assert session.stats.fallback_tokens == len(PROMPT)

    def test_fallback_handle_is_reused_and_released(self, tiny_model) -> None:
        with start_session(tiny_model, BackendHandle(DeviceCopyBackend()), _config()) as session:
            session.feed_prompt(PROMPT[:3])
            fallback = session.fallback_handle
            session.feed_prompt(PROMPT[3:])
            assert session.fallback_handle is fallback
        assert fallback.backend.used_bytes == 0
        assert session.fallback_handle is None

    def test_single_token_prompt_stays_on_primary(self, tiny_model) -> None:
        with start_session(tiny_model, BackendHandle(DeviceCopyBackend()), _config()) as session:
            session.feed_prompt([1])
            assert session.fallback_handle is None
            assert session.stats.fallback_tokens == 0

    def test_fallback_disabled_feeds_token_by_token(self, tiny_model) -> None:
        events = []
        config = _config(cpu_fallback=False, status_callback=events.append)
        with start_session(tiny_model, config=_config()) as reference, \
             start_session(tiny_model, BackendHandle(DeviceCopyBackend()), config) as session:
            reference.feed_prompt(PROMPT)
            session.feed_prompt(PROMPT)
            assert session.fallback_handle is None
            assert [e.tokens for e in events if e.kind == "batch"] == [1] * len(PROMPT)
            np.testing.assert_allclose(session.distribution, reference.distribution, rtol=1e-4, atol=1e-6)


class TestGeneration:
    def test_context_of_four(self, open_tiny) -> None:
        model = open_tiny(context_size=4)
        with start_session(model, config=_config()) as session:
            session.feed_prompt([1, 5])
            result = session.generate()
            assert result.state is SessionState.FINISHED
            assert result.stop_reason is StopReason.CAPACITY
            assert len(result.tokens) == 3
            assert session.n_past == 4
            assert session.capacity_exceeded
            with pytest.raises(SessionStateError):
                session.next_token()

    def test_n_past_is_monotonic_and_bounded(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            seen = [session.feed_prompt(PROMPT).n_past]
            while session.state is not SessionState.FINISHED:
                seen.append(session.next_token().n_past)
            assert seen == sorted(seen)
            assert max(seen) <= session.context_size
            assert session.stop_reason is StopReason.CAPACITY

    def test_sliding_window_keeps_generating(self, open_tiny) -> None:
        model = open_tiny(context_size=4)
        events = []
        config = _config(sliding_window=True, max_tokens=10, status_callback=events.append)
        with start_session(model, config=config) as session:
            session.feed_prompt([1, 5])
            seen = []
            while session.state is not SessionState.FINISHED:
                seen.append(session.next_token().n_past)
            assert len(session.generated_tokens) == 10
            assert session.stop_reason is StopReason.LENGTH
            assert max(seen) == 4
            assert session.n_evicted > 0
            assert not session.capacity_exceeded
        assert any(e.kind == "evicted" for e in events)

    def test_max_tokens(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config(max_tokens=3)) as session:
            result = session.infer(PROMPT)
            assert result.stop_reason is StopReason.LENGTH
            assert len(result.tokens) == 3
            assert session.generated_tokens == result.tokens

    def test_generate_limit_is_per_call(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            session.feed_prompt(PROMPT)
            for _ in range(2):
                session.next_token()
            result = session.generate(2)
            assert len(result.tokens) == 2
            assert len(session.generated_tokens) == 4

    def test_end_of_sequence(self, tiny_model) -> None:
        responses = []
        config = _config(sampler=ScriptedSampler([5, 6, 2, 7]), ignore_eos=False)
        with start_session(tiny_model, config=config) as session:
            result = session.infer(PROMPT, callback=responses.append)
            assert result.stop_reason is StopReason.END_OF_SEQUENCE
            assert result.tokens == (5, 6, 2)
        inferred = [r for r in responses if r.kind is not ResponseKind.PROMPT_TOKEN]
        assert [r.kind for r in inferred] == [
            ResponseKind.INFERRED_TOKEN, ResponseKind.INFERRED_TOKEN, ResponseKind.END_OF_TEXT,
        ]
        assert [r.text for r in inferred[:2]] == ["c", "d"]

    def test_ignore_eos(self, tiny_model) -> None:
        config = _config(sampler=ScriptedSampler([2]), max_tokens=3)
        with start_session(tiny_model, config=config) as session:
            result = session.infer(PROMPT)
            assert result.tokens == (2, 2, 2)
            assert result.stop_reason is StopReason.LENGTH

    def test_seeded_sampling_is_reproducible(self, tiny_model) -> None:
        def _run() -> tuple[int, ...]:
            config = SessionConfig(seed=1234, max_tokens=6, ignore_eos=True)
            with start_session(tiny_model, config=config) as session:
                return session.infer(PROMPT).tokens

        assert _run() == _run()

    def test_stats(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config(max_tokens=2)) as session:
            session.infer(PROMPT)
            stats = session.stats
        assert stats.prompt_tokens == len(PROMPT)
        assert stats.predict_tokens == 2
        assert stats.feed_prompt_seconds > 0
        assert stats.predict_ms_per_token >= 0
        assert "prompt_tokens: 5" in str(stats)
        assert "fallback_tokens" not in str(stats)


class TestCancellation:
    def test_halt_from_callback_keeps_tokens(self, tiny_model) -> None:
        def _halt_after_two(response: Any) -> Feedback:
            if response.kind is ResponseKind.PROMPT_TOKEN:
                return Feedback.CONTINUE
            return Feedback.HALT if len(session.generated_tokens) >= 2 else Feedback.CONTINUE

        with start_session(tiny_model, config=_config()) as session:
            result = session.infer(PROMPT, callback=_halt_after_two)
            assert result.stop_reason is StopReason.CANCELLED
            assert len(result.tokens) == 2
            assert session.generated_tokens == result.tokens

    def test_cancel_between_steps(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            session.feed_prompt(PROMPT)
            produced = [session.next_token().tokens[0] for _ in range(3)]
            n_past = session.n_past
            session.cancel()
            result = session.next_token()
            assert result.state is SessionState.FINISHED
            assert result.stop_reason is StopReason.CANCELLED
            assert result.tokens == ()
            assert session.generated_tokens == tuple(produced)
            assert session.n_past == n_past

    def test_halt_during_prompt(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config(n_batch=2)) as session:
            result = session.feed_prompt(PROMPT, lambda r: Feedback.HALT)
            assert result.stop_reason is StopReason.CANCELLED
            assert result.tokens == tuple(PROMPT[:2])
            assert session.n_past == 2

    def test_cancel_before_prompt(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            session.cancel()
            result = session.feed_prompt(PROMPT)
            assert result.stop_reason is StopReason.CANCELLED
            assert session.n_past == 0


class TestErrorState:
    def test_fault_is_recorded_and_repeated(self, tiny_model) -> None:
        statuses = []
        with start_session(tiny_model, config=_config(status_callback=statuses.append)) as session:
            session.feed_prompt(PROMPT)
            session.next_token()
            n_past = session.n_past
            with mock.patch.object(TransformerExecutor, "evaluate", side_effect=RuntimeError("boom")):
                failed = session.next_token()
            assert not failed.ok
            assert failed.state is SessionState.ERROR
            assert isinstance(failed.error, EvaluationError)
            assert isinstance(failed.error.__cause__, RuntimeError)
            assert failed.n_past == n_past

            assert session.next_token().error is failed.error
            assert session.feed_prompt(PROMPT).error is failed.error
            assert session.generate().error is failed.error
            assert session.error is failed.error
        assert statuses[-1].kind == "error"

    def test_fault_during_prompt_rolls_back_batch(self, tiny_model) -> None:
        real = TransformerExecutor.evaluate
        calls = []

        def _fail_second(self: Any, *args: Any) -> Any:
            calls.append(1)
            if len(calls) == 2:
                raise EvaluationError("device lost")
            return real(self, *args)

        with start_session(tiny_model, config=_config(n_batch=2)) as session:
            with mock.patch.object(TransformerExecutor, "evaluate", _fail_second):
                result = session.feed_prompt(PROMPT)
            assert result.state is SessionState.ERROR
            assert str(result.error) == "device lost"
            assert session.n_past == 2

    def test_callback_exception_propagates(self, tiny_model) -> None:
        def _explode(response: Any) -> Feedback:
            raise ValueError("bad callback")

        with start_session(tiny_model, config=_config()) as session:
            session.feed_prompt(PROMPT)
            with pytest.raises(ValueError, match="bad callback"):
                session.next_token(_explode)
            assert session.error is None
            assert session.state is SessionState.GENERATING
            assert session.next_token().ok

    def test_sampler_exception_propagates(self, tiny_model) -> None:
        sampler = mock.Mock()
        sampler.sample.side_effect = RuntimeError("sampler broke")
        with start_session(tiny_model, config=_config(sampler=sampler)) as session:
            session.feed_prompt(PROMPT)
            with pytest.raises(RuntimeError, match="sampler broke"):
                session.next_token()
            assert session.error is None
            assert session.state is SessionState.READY_TO_GENERATE

    def test_status_callback_exception_propagates(self, tiny_model) -> None:
        def _reject_batches(event: Any) -> None:
            if event.kind == "batch":
                raise ValueError("status sink closed")

        with start_session(tiny_model, config=_config(status_callback=_reject_batches)) as session:
            with pytest.raises(ValueError, match="status sink closed"):
                session.feed_prompt(PROMPT)
            assert session.error is None



class TestSessionState:
    def test_generate_before_prompt(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            with pytest.raises(SessionStateError):
                session.next_token()
            with pytest.raises(SessionStateError):
                session.generate()

    def test_feed_after_generation_started(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            session.feed_prompt(PROMPT)
            session.next_token()
            assert session.state is SessionState.GENERATING
            with pytest.raises(SessionStateError):
                session.feed_prompt([3])

    def test_closed_session(self, tiny_model) -> None:
        session = start_session(tiny_model, config=_config())
        session.close()
        session.close()
        with pytest.raises(SessionStateError):
            session.feed_prompt(PROMPT)


class TestPerplexity:
    def test_matches_token_by_token_probabilities(self, tiny_model) -> None:
        chunks = []
        with start_session(tiny_model, config=_config(n_batch=2)) as session:
            value = session.perplexity(PROMPT, lambda i, p: chunks.append(i))
            assert session.state is SessionState.READY_TO_GENERATE

        nll = 0.0
        with start_session(tiny_model, config=_config()) as stepper:
            for current, target in zip(PROMPT, PROMPT[1:]):
                stepper.feed_prompt([current])
                nll -= math.log(stepper.distribution[target])
        assert value == pytest.approx(math.exp(nll / (len(PROMPT) - 1)), rel=1e-4)
        assert chunks == [1, 2, 3]

    def test_needs_two_tokens(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            with pytest.raises(ValueError):
                session.perplexity([1])

    def test_only_on_fresh_session(self, tiny_model) -> None:
        with start_session(tiny_model, config=_config()) as session:
            session.feed_prompt(PROMPT)
            with pytest.raises(SessionStateError):
                session.perplexity(PROMPT)


class TestStartSession:
    def test_require_gpu_fails_before_materializing(self, tiny_model) -> None:
        with mock.patch.object(CUDABackend, "is_compiled", return_value=False), \
             mock.patch.object(MPSBackend, "is_compiled", return_value=False), \
             mock.patch("infer_runtime.session.materialize") as materialize_mock:
            with pytest.raises(DeviceUnavailable):
                start_session(tiny_model, BackendPreference.REQUIRE_GPU)
        materialize_mock.assert_not_called()

    def test_prefer_gpu_downgrades(self, tiny_model, caplog: pytest.LogCaptureFixture) -> None:
        with mock.patch.object(CUDABackend, "is_compiled", return_value=False), \
             mock.patch.object(MPSBackend, "is_compiled", return_value=False):
            session = start_session(tiny_model, BackendPreference.PREFER_GPU, _config())
        with session:
            assert session.handle.downgraded
            assert session.handle.name == "cpu"
        assert "requested GPU backend was unavailable" in caplog.text

    def test_owned_handle_is_released_on_close(self, tiny_model) -> None:
        session = start_session(tiny_model, "cpu", _config())
        backend = session.handle.backend
        assert backend.used_bytes == tiny_model.nbytes
        session.close()
        assert backend.used_bytes == 0

    def test_shared_handle_outlives_session(self, tiny_model) -> None:
        handle = BackendHandle(DeviceCopyBackend())
        materialize(tiny_model, handle)
        with start_session(tiny_model, handle, _config()) as first:
            first.infer(PROMPT, max_tokens=1)
        with start_session(tiny_model, handle, _config()) as second:
            assert second.handle.is_materialized(tiny_model)
            assert second.infer(PROMPT, max_tokens=1).ok

    def test_direct_construction(self, tiny_model) -> None:
        handle = BackendHandle(DeviceCopyBackend())
        materialize(tiny_model, handle)
        session = InferenceSession(tiny_model, handle, _config())
        assert session.context_size == tiny_model.hparams.n_ctx
        session.close()
        assert handle.is_materialized(tiny_model)


class TestConcurrentSessions:
    @staticmethod
    def _greedy_run(model: Any, handle: Any = "cpu") -> tuple[int, ...]:
        with start_session(model, handle, _config(n_batch=2)) as session:
            return session.infer(PROMPT, max_tokens=6).tokens

    def test_threads_sharing_a_handle_match_sequential_runs(self, tiny_model) -> None:
        expected = self._greedy_run(tiny_model)
        handle = BackendHandle(CPUBackend())
        materialize(tiny_model, handle)

        real = TransformerExecutor.evaluate
        guard = threading.Lock()
        active = [0]
        peak = [0]

        def _tracked(self: Any, *args: Any) -> Any:
            with guard:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            try:
                time.sleep(0.002)
                return real(self, *args)
            finally:
                with guard:
                    active[0] -= 1

        results: dict[int, tuple[int, ...]] = {}
        failures: list[BaseException] = []

        def _worker(index: int) -> None:
            try:
                results[index] = self._greedy_run(tiny_model, handle)
            except BaseException as exc:
                failures.append(exc)

        with mock.patch.object(TransformerExecutor, "evaluate", _tracked):
            threads = [threading.Thread(target=_worker, args=(i,)) for i in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=60)
        handle.release()

        assert failures == []
        assert results == {0: expected, 1: expected}
        assert peak[0] == 1

    def test_separate_handles_on_one_device_share_the_lock(self, tiny_model) -> None:
        with start_session(tiny_model, "cpu", _config()) as first, \
             start_session(tiny_model, "cpu", _config()) as second:
            assert first.handle is not second.handle
            assert first.handle.lock is second.handle.lock
