from __future__ import annotations

import threading
from unittest import mock

import numpy as np
import pytest

from conftest import DeviceCopyBackend
from infer_runtime.backends import (
    BACKENDS,
    BackendCapabilities,
    BackendHandle,
    BackendPreference,
    CPUBackend,
    CUDABackend,
    MPSBackend,
    compiled_backends,
    device_lock,
    materialize,
    select_backend,
)
from infer_runtime.errors import BackendError, DeviceUnavailable, EvaluationError, OutOfDeviceMemory
from infer_runtime.executor import OUTPUT, TOKEN_EMBEDDINGS, TransformerExecutor
from infer_runtime.kv_cache import KVCache
from infer_runtime.quantize import dequantize_bytes
from infer_runtime.types import DeviceBuffer, ElementType, HostBuffer


class TestCapabilities:
    def test_batched_when_unbounded(self) -> None:
        caps = BackendCapabilities(None, False, True)
        assert caps.supports_batched_eval
        assert caps.batch_limit(8) == 8

    def test_single_token_backend(self) -> None:
        caps = BackendCapabilities(1, True, False)
        assert not caps.supports_batched_eval
        assert caps.batch_limit(8) == 1

    def test_cpu_capabilities(self) -> None:
        caps = CPUBackend().capabilities
        assert caps.max_tokens_per_eval is None
        assert caps.consumes_quantized
        assert not caps.requires_device_weights


class TestCPUBackend:
    def setup_method(self) -> None:
        self.backend = CPUBackend()

    def test_device_identity(self) -> None:
        assert CPUBackend(3).device == "cpu:3"

    def test_alloc_copy_roundtrip(self) -> None:
        dst = self.backend.alloc_device(16)
        assert isinstance(dst, DeviceBuffer)
        stream = self.backend.create_stream("xfer")
        self.backend.copy_h2d_async(dst, HostBuffer(view=memoryview(b"hello world!1234")), stream)
        out = bytearray(16)
        self.backend.copy_d2h_async(HostBuffer(view=memoryview(out)), dst, stream)
        self.backend.synchronize_stream(stream)
        assert bytes(out) == b"hello world!1234"
        self.backend.free_device(dst)
        self.backend.free_device(dst)  # idempotent
        assert self.backend.used_bytes == 0

    def test_memory_limit(self) -> None:
        backend = CPUBackend(memory_limit=100)
        backend.alloc_device(60)
        with pytest.raises(OutOfDeviceMemory) as info:
            backend.alloc_device(60)
        assert info.value.nbytes == 60
        assert backend.used_bytes == 60

    def test_host_allocation_failure(self) -> None:
        with mock.patch("infer_runtime.backends.cpu_backend.bytearray", side_effect=MemoryError, create=True):
            with pytest.raises(OutOfDeviceMemory):
                self.backend.alloc_device(8)
        assert self.backend.used_bytes == 0

    def test_pinned_host(self) -> None:
        buf = self.backend.alloc_pinned_host(32)
        assert buf.pinned and buf.nbytes == 32


class TestSelectBackend:
    def test_cpu(self) -> None:
        handle = select_backend(BackendPreference.CPU)
        assert handle.device == "cpu:0"
        assert not handle.downgraded

    def test_by_name(self) -> None:
        assert select_backend("cpu", device_id=1).device == "cpu:1"

    def test_unknown_name(self) -> None:
        with pytest.raises(ValueError):
            select_backend("tpu")

    def test_compiled_always_includes_cpu(self) -> None:
        assert "cpu" in compiled_backends()

    def test_require_gpu_without_gpu_backends(self) -> None:
        with mock.patch.object(CUDABackend, "is_compiled", return_value=False), \
             mock.patch.object(MPSBackend, "is_compiled", return_value=False):
            assert compiled_backends() == ["cpu"]
            with pytest.raises(DeviceUnavailable):
                select_backend(BackendPreference.REQUIRE_GPU)
            with pytest.raises(DeviceUnavailable):
                select_backend("cuda")

    def test_prefer_gpu_downgrades_with_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        with mock.patch.object(CUDABackend, "is_compiled", return_value=False), \
             mock.patch.object(MPSBackend, "is_compiled", return_value=False):
            handle = select_backend(BackendPreference.PREFER_GPU)
        assert handle.name == "cpu"
        assert handle.downgraded
        assert "no GPU backend available" in caplog.text

    def test_prefer_gpu_takes_first_working_gpu(self) -> None:
        with mock.patch.dict(BACKENDS, {"cuda": DeviceCopyBackend}), \
             mock.patch.object(MPSBackend, "is_compiled", return_value=False):
            handle = select_backend(BackendPreference.PREFER_GPU)
        assert handle.name == "fakegpu"
        assert not handle.downgraded

    def test_gpu_init_failure_is_device_unavailable(self) -> None:
        class Broken(CPUBackend):
            name = "broken"

            def __init__(self, device_id: int = 0) -> None:
                raise RuntimeError("no device")

        with mock.patch.dict(BACKENDS, {"cuda": Broken}), \
             mock.patch.object(MPSBackend, "is_compiled", return_value=False):
            with pytest.raises(DeviceUnavailable, match="no device"):
                select_backend(BackendPreference.REQUIRE_GPU)

    @pytest.mark.skipif(not CUDABackend.is_compiled(), reason="cuda-python not installed")
    def test_cuda_capabilities(self) -> None:  # pragma: no cover - hardware specific
        try:
            handle = select_backend("cuda")
        except DeviceUnavailable:
            pytest.skip("no CUDA device")
        assert handle.capabilities.requires_device_weights


class TestMaterialize:
    def test_cpu_references_quantized_storage(self, open_tiny) -> None:
        model = open_tiny(ElementType.Q8_0)
        handle = select_backend("cpu")
        weights = materialize(model, handle)
        assert weights.element_type(TOKEN_EMBEDDINGS) is ElementType.Q8_0
        assert weights.nbytes == model.nbytes
        tensor = model.tensors[OUTPUT]
        expected = dequantize_bytes(model.tensor_data(OUTPUT).view, tensor.element_type, tensor.shape)
        np.testing.assert_array_equal(weights.tensor(OUTPUT), expected)

    def test_idempotent(self, tiny_model) -> None:
        handle = select_backend("cpu")
        first = materialize(tiny_model, handle)
        second = materialize(tiny_model, handle)
        assert first is second
        assert handle.backend.used_bytes == tiny_model.nbytes

    def test_device_copies_are_dequantized(self, open_tiny) -> None:
        model = open_tiny(ElementType.Q4_0)
        handle = BackendHandle(DeviceCopyBackend())
        weights = materialize(model, handle)
        assert weights.element_type(OUTPUT) is ElementType.F32
        tensor = model.tensors[OUTPUT]
        expected = dequantize_bytes(model.tensor_data(OUTPUT).view, tensor.element_type, tensor.shape)
        np.testing.assert_array_equal(weights.tensor(OUTPUT), expected)
        assert handle.backend.used_bytes == sum(t.n_elements * 4 for t in model.tensors.values())

    def test_out_of_device_memory_frees_partial_buffers(self, tiny_model) -> None:
        backend = DeviceCopyBackend(memory_limit=tiny_model.nbytes // 2)
        handle = BackendHandle(backend)
        with pytest.raises(OutOfDeviceMemory):
            materialize(tiny_model, handle)
        assert backend.used_bytes == 0
        assert not handle.is_materialized(tiny_model)

    def test_cpu_memory_limit(self, tiny_model) -> None:
        handle = BackendHandle(CPUBackend(memory_limit=16))
        with pytest.raises(OutOfDeviceMemory):
            materialize(tiny_model, handle)

    def test_release(self, tiny_model) -> None:
        handle = BackendHandle(DeviceCopyBackend())
        materialize(tiny_model, handle)
        handle.release(tiny_model)
        assert handle.backend.used_bytes == 0
        with pytest.raises(BackendError):
            handle.weights(tiny_model)
        handle.release()
        with pytest.raises(BackendError):
            materialize(tiny_model, handle)

    def test_missing_tensor_is_evaluation_error(self, tiny_model) -> None:
        weights = materialize(tiny_model, select_backend("cpu"))
        with pytest.raises(EvaluationError):
            weights.tensor("nope.weight")

    def test_evaluate_respects_token_limit(self, tiny_model) -> None:
        hp = tiny_model.hparams
        handle = BackendHandle(DeviceCopyBackend())
        materialize(tiny_model, handle)
        cache = KVCache(hp.n_layer, hp.n_head_kv, hp.head_dim, hp.n_ctx)
        with pytest.raises(EvaluationError):
            handle.evaluate(tiny_model, TransformerExecutor(hp), cache, [1, 2])


class TestDeviceLock:
    def test_shared_per_device(self) -> None:
        assert device_lock("cpu:0") is device_lock("cpu:0")
        assert device_lock("cpu:0") is not device_lock("cpu:1")
        assert BackendHandle(CPUBackend()).lock is BackendHandle(CPUBackend()).lock

    def test_lock_type(self) -> None:
        assert isinstance(device_lock("x:0"), type(threading.Lock()))

    def test_evaluate_runs_under_the_device_lock(self, tiny_model) -> None:
        handle = BackendHandle(CPUBackend())
        materialize(tiny_model, handle)
        seen = []

        class _LockCheckingExecutor:
            def evaluate(self, weights, cache, tokens):
                seen.append(handle.lock.locked())
                return np.zeros((len(tokens), tiny_model.hparams.n_vocab), dtype=np.float32)

        hp = tiny_model.hparams
        cache = KVCache(hp.n_layer, hp.n_head_kv, hp.head_dim, hp.n_ctx)
        handle.evaluate(tiny_model, _LockCheckingExecutor(), cache, [1])
        assert seen == [True]
        assert not handle.lock.locked()
        handle.release()

    def test_executor_errors_become_evaluation_errors(self, tiny_model) -> None:
        handle = BackendHandle(CPUBackend())
        materialize(tiny_model, handle)

        class _BrokenExecutor:
            def evaluate(self, weights, cache, tokens):
                raise ValueError("shape mismatch")

        hp = tiny_model.hparams
        cache = KVCache(hp.n_layer, hp.n_head_kv, hp.head_dim, hp.n_ctx)
        with pytest.raises(EvaluationError, match="shape mismatch") as excinfo:
            handle.evaluate(tiny_model, _BrokenExecutor(), cache, [1])
        assert isinstance(excinfo.value.__cause__, ValueError)
        assert not handle.lock.locked()
        handle.release()
