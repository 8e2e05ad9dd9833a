from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import numpy as np
import pytest

from infer_runtime.backends import BackendCapabilities, CPUBackend
from infer_runtime.executor import expected_tensor_shapes
from infer_runtime.loader import ContainerWriter, LoadParameters, WeightStore
from infer_runtime.loader.container import CURRENT_VERSION
from infer_runtime.quantize import quantize
from infer_runtime.types import ElementType, Hyperparameters, Vocabulary

TINY_TOKENS = (
    [b"<unk>", b"<s>", b"</s>"]
    + [bytes([c]) for c in range(ord("a"), ord("z") + 1)]
    + [b" ", b"th", b"he"]
)


class DeviceCopyBackend(CPUBackend):
    """CPU-hosted stand-in for an accelerator that needs its own dequantized copy."""

    name = "fakegpu"

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            max_tokens_per_eval=1,
            requires_device_weights=True,
            consumes_quantized=False,
            requires_contiguous_memory=True,
        )


def tiny_hparams(**overrides: Any) -> Hyperparameters:
    fields: dict[str, Any] = dict(
        n_vocab=len(TINY_TOKENS), n_embd=32, n_head=4, n_head_kv=2,
        n_layer=2, n_ff=64, n_ctx=16,
    )
    fields.update(overrides)
    return Hyperparameters(**fields)


def tiny_weights(hparams: Hyperparameters, seed: int = 0) -> dict[str, Any]:
    rng = np.random.default_rng(seed)
    weights: dict[str, Any] = {}
    for name, shape in expected_tensor_shapes(hparams).items():
        if len(shape) == 1:
            weights[name] = np.ones(shape, dtype=np.float32)
        else:
            weights[name] = (rng.standard_normal(shape) * 0.2).astype(np.float32)
    return weights


def write_container(
    path: Path,
    hparams: Hyperparameters,
    weights: dict[str, Any],
    element_type: ElementType = ElementType.F32,
    *,
    version: int = CURRENT_VERSION,
) -> Path:
    vocab = Vocabulary(tokens=tuple(TINY_TOKENS[: hparams.n_vocab]))
    writer = ContainerWriter(hparams, vocab, version=version)
    for name, values in weights.items():
        encoding = element_type if values.ndim == 2 else ElementType.F32
        writer.add_tensor(name, values.shape, encoding, quantize(values, encoding))
    return writer.write(path)


@pytest.fixture
def make_container(tmp_path: Path) -> Callable[..., Path]:
    counter = iter(range(1_000_000))

    def _make(
        element_type: ElementType = ElementType.F32,
        *,
        seed: int = 0,
        version: int = CURRENT_VERSION,
        **overrides: Any,
    ) -> Path:
        hparams = tiny_hparams(file_type=element_type, **overrides)
        path = tmp_path / f"model-{next(counter)}.bin"
        return write_container(path, hparams, tiny_weights(hparams, seed), element_type, version=version)

    return _make


@pytest.fixture
def open_tiny(make_container: Callable[..., Path]):
    opened = []

    def _open(
        element_type: ElementType = ElementType.F32,
        *,
        prefer_mmap: bool = True,
        context_size: int | None = None,
        **overrides: Any,
    ):
        path = make_container(element_type, **overrides)
        model = WeightStore.open(path, LoadParameters(prefer_mmap=prefer_mmap, context_size=context_size))
        opened.append(model)
        return model

    yield _open
    for model in opened:
        model.close()


@pytest.fixture
def tiny_model(open_tiny):
    return open_tiny()
