"""Build containers from HuggingFace LLaMA checkpoints, or re-quantize existing ones."""
from __future__ import annotations

import dataclasses
import json
import logging
import struct
from pathlib import Path
from typing import Any, Callable

import numpy as np

from infer_runtime.executor import OUTPUT, OUTPUT_NORM, TOKEN_EMBEDDINGS, layer_tensor
from infer_runtime.loader.container import ContainerWriter
from infer_runtime.loader.weight_store import LoadParameters, WeightStore
from infer_runtime.quantize import QK, dequantize_bytes, quantize
from infer_runtime.types import ElementType, Hyperparameters, Vocabulary

try:
    from safetensors import safe_open
except (ImportError, ModuleNotFoundError):  # pragma: no cover
    safe_open = None

try:
    from tokenizers import Tokenizer
except (ImportError, ModuleNotFoundError):  # pragma: no cover
    Tokenizer = None

log = logging.getLogger(__name__)

_HF_LAYER_NAMES: dict[str, str] = {
    "input_layernorm.weight": "attention_norm.weight",
    "self_attn.q_proj.weight": "attention.wq.weight",
    "self_attn.k_proj.weight": "attention.wk.weight",
    "self_attn.v_proj.weight": "attention.wv.weight",
    "self_attn.o_proj.weight": "attention.wo.weight",
    "post_attention_layernorm.weight": "ffn_norm.weight",
    "mlp.gate_proj.weight": "feed_forward.w1.weight",
    "mlp.down_proj.weight": "feed_forward.w2.weight",
    "mlp.up_proj.weight": "feed_forward.w3.weight",
}


def _read_bf16_as_float32(path: Path, tensor_name: str) -> Any:
    """Read a bfloat16 tensor from a safetensors file and return as float32."""
    with open(path, "rb") as f:
        header_size = struct.unpack("<Q", f.read(8))[0]
        header = json.loads(f.read(header_size))
        meta = header[tensor_name]
        start, end = meta["data_offsets"]
        f.seek(8 + header_size + start)
        raw = f.read(end - start)
    bf16 = np.frombuffer(raw, dtype=np.uint16)
    f32 = bf16.astype(np.uint32) << 16
    return f32.view(np.float32).reshape(meta["shape"])


def target_encoding(shape: tuple[int, ...], target: ElementType) -> ElementType:
    """Matrices whose rows split into whole blocks get ``target``; the rest stay F32."""
    if len(shape) == 2 and (not target.is_quantized or shape[-1] % QK == 0):
        return target
    return ElementType.F32


def _hparams_from_config(config: dict[str, Any], target: ElementType) -> Hyperparameters:
    n_head = int(config["num_attention_heads"])
    return Hyperparameters(
        n_vocab=int(config["vocab_size"]),
        n_embd=int(config["hidden_size"]),
        n_head=n_head,
        n_head_kv=int(config.get("num_key_value_heads", n_head)),
        n_layer=int(config["num_hidden_layers"]),
        n_ff=int(config["intermediate_size"]),
        n_ctx=int(config.get("max_position_embeddings", 2048)),
        file_type=target,
        rms_norm_eps=float(config.get("rms_norm_eps", 1e-6)),
        rope_theta=float(config.get("rope_theta", 10000.0)),
    )


def _vocabulary(model_dir: Path, n_vocab: int, config: dict[str, Any]) -> Vocabulary:
    tokenizer_path = model_dir / "tokenizer.json"
    if Tokenizer is not None and tokenizer_path.exists():
        tok = Tokenizer.from_file(str(tokenizer_path))
        tokens = []
        for i in range(n_vocab):
            piece = tok.id_to_token(i) or ""
            tokens.append(piece.replace("▁", " ").encode("utf-8"))
    else:
        log.warning("no tokenizer.json in %s; writing placeholder vocabulary", model_dir)
        tokens = [f"<{i}>".encode() for i in range(n_vocab)]
    return Vocabulary(
        tokens=tuple(tokens),
        bos_id=_special_token_id(config.get("bos_token_id"), 1),
        eos_id=_special_token_id(config.get("eos_token_id"), 2),
    )


def _special_token_id(value: Any, default: int) -> int:
    # instruct checkpoints list several end-of-sequence ids; the first is the primary one
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return default if value is None else int(value)


def convert_safetensors(
    model_dir: str | Path,
    destination: str | Path,
    target: ElementType = ElementType.Q8_0,
    *,
    progress: Callable[[str, ElementType], None] | None = None,
) -> Path:
    """Convert a HuggingFace LLaMA directory (config.json + *.safetensors)."""
    if safe_open is None:
        raise RuntimeError("safetensors is not installed")
    model_dir = Path(model_dir)
    config = json.loads((model_dir / "config.json").read_text(encoding="utf-8"))
    hparams = _hparams_from_config(config, target)

    tensor_to_file: dict[str, Path] = {}
    for st_file in sorted(model_dir.glob("*.safetensors")):
        with safe_open(str(st_file), framework="numpy") as handle:
            for name in handle.keys():
                tensor_to_file[name] = st_file
    if not tensor_to_file:
        raise FileNotFoundError(f"no .safetensors files in {model_dir}")

    def _load(name: str) -> Any:
        path = tensor_to_file[name]
        with safe_open(str(path), framework="numpy") as handle:
            try:
                arr = handle.get_tensor(name)
            except TypeError:
                # numpy has no bfloat16
                arr = _read_bf16_as_float32(path, name)
        return np.asarray(arr, dtype=np.float32)

    renames: dict[str, str] = {
        TOKEN_EMBEDDINGS: "model.embed_tokens.weight",
        OUTPUT_NORM: "model.norm.weight",
        OUTPUT: "lm_head.weight" if "lm_head.weight" in tensor_to_file else "model.embed_tokens.weight",
    }
    for i in range(hparams.n_layer):
        for hf_suffix, suffix in _HF_LAYER_NAMES.items():
            renames[layer_tensor(i, suffix)] = f"model.layers.{i}.{hf_suffix}"

    writer = ContainerWriter(hparams, _vocabulary(model_dir, hparams.n_vocab, config))
    for name, hf_name in renames.items():
        arr = _load(hf_name)
        encoding = target_encoding(arr.shape, target)
        writer.add_tensor(name, arr.shape, encoding, quantize(arr, encoding))
        if progress is not None:
            progress(name, encoding)
    out = writer.write(destination)
    log.info("converted %s -> %s (%s)", model_dir, out, target.name)
    return out


def quantize_container(
    source: str | Path,
    destination: str | Path,
    target: ElementType,
) -> Path:
    """Re-encode every matrix of an existing container to ``target``."""
    model = WeightStore.open(source, LoadParameters(prefer_mmap=False))
    try:
        hparams = dataclasses.replace(model.hparams, file_type=target)
        writer = ContainerWriter(hparams, model.vocabulary)
        original = reduced = 0
        for name, tensor in model.tensors.items():
            values = dequantize_bytes(model.tensor_data(name).view, tensor.element_type, tensor.shape)
            encoding = target_encoding(tensor.shape, target)
            data = quantize(values, encoding)
            writer.add_tensor(name, tensor.shape, encoding, data)
            original += tensor.nbytes
            reduced += len(data)
        out = writer.write(destination)
    finally:
        model.close()
    log.info("quantized %s -> %s: %d -> %d bytes", source, destination, original, reduced)
    return out
