"""Demo: Text generation from a quantized model container.

Opens (or first converts) a model, materializes it on the requested backend
and streams generated text to stdout.

Usage:
    python examples/generate.py --model llama-q8.bin --prompt "Once upon a time" --max-tokens 64
    python examples/generate.py --from-hf meta-llama/Llama-3.2-1B --model llama-q4.bin --quantize q4_0
    python examples/generate.py --model llama-q8.bin --backend prefer_gpu --perplexity --prompt "The quick brown fox"
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

try:
    from huggingface_hub import snapshot_download
except ImportError:
    snapshot_download = None

from infer_runtime import (
    BackendError,
    ElementType,
    Feedback,
    HuggingFaceTokenizer,
    InferenceResponse,
    LoadError,
    LoadParameters,
    ResponseKind,
    SessionConfig,
    StatusEvent,
    TopPTopKSampler,
    WeightStore,
    convert_safetensors,
    start_session,
)

log = logging.getLogger("generate")

_QUANTIZE_CHOICES = {
    "f32": ElementType.F32,
    "f16": ElementType.F16,
    "q4_0": ElementType.Q4_0,
    "q4_1": ElementType.Q4_1,
    "q8_0": ElementType.Q8_0,
}


def _convert(source: str, destination: Path, target: ElementType) -> None:
    model_dir = Path(source)
    if not model_dir.is_dir():
        if snapshot_download is None:
            sys.exit("huggingface-hub is required to download models")
        model_dir = Path(snapshot_download(source, allow_patterns=["*.json", "*.safetensors"]))
    print(f"Converting {model_dir} -> {destination} ({target.name})")
    convert_safetensors(model_dir, destination, target)


def _on_status(event: StatusEvent) -> None:
    if event.kind == "fallback":
        log.info("prompt routed to %s: %s", event.backend, event.message)
    elif event.kind == "evicted":
        log.info("context full, dropped %d oldest tokens", event.tokens)


def _print_token(response: InferenceResponse) -> Feedback:
    if response.kind is not ResponseKind.PROMPT_TOKEN:
        sys.stdout.write(response.text)
        sys.stdout.flush()
    return Feedback.CONTINUE


def main() -> None:
    parser = argparse.ArgumentParser(description="Quantized transformer text generation demo")
    parser.add_argument("--model", required=True, help="Path to the model container")
    parser.add_argument("--from-hf", default=None,
                        help="Convert this HuggingFace directory or repo ID into --model first")
    parser.add_argument("--quantize", default="q8_0", choices=sorted(_QUANTIZE_CHOICES),
                        help="Matrix encoding used with --from-hf")
    parser.add_argument("--tokenizer", default=None, help="tokenizer.json to use instead of the container vocabulary")
    parser.add_argument("--prompt", default="Hello, I am", help="Input prompt text")
    parser.add_argument("--max-tokens", type=int, default=64, help="Max tokens to generate")
    parser.add_argument("--backend", default="cpu",
                        choices=["cpu", "prefer_gpu", "require_gpu", "cuda", "mps"],
                        help="Compute backend (default: cpu)")
    parser.add_argument("--device-id", type=int, default=0, help="GPU device ID")
    parser.add_argument("--context-size", type=int, default=None, help="Override the model context length")
    parser.add_argument("--n-batch", type=int, default=8, help="Prompt tokens per evaluation")
    parser.add_argument("--no-mmap", action="store_true", help="Read weights into memory instead of mapping")
    parser.add_argument("--sliding-window", action="store_true", help="Evict old tokens instead of stopping")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--temperature", type=float, default=0.8)
    parser.add_argument("--top-k", type=int, default=40)
    parser.add_argument("--top-p", type=float, default=0.95)
    parser.add_argument("--repeat-penalty", type=float, default=1.3)
    parser.add_argument("--perplexity", action="store_true", help="Score the prompt instead of generating")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    model_path = Path(args.model)
    if args.from_hf:
        _convert(args.from_hf, model_path, _QUANTIZE_CHOICES[args.quantize])

    # --- Load model ---
    print(f"Loading model: {model_path}")
    try:
        model = WeightStore.open(
            model_path,
            LoadParameters(prefer_mmap=not args.no_mmap, context_size=args.context_size),
        )
    except (LoadError, OSError) as exc:
        sys.exit(f"Failed to load {model_path}: {exc}")
    hp = model.hparams
    print(f"  Layers: {hp.n_layer}, embedding: {hp.n_embd}, context: {hp.n_ctx}")
    print(f"  Encoding: {hp.file_type.name}, {model.nbytes / 1e6:.1f} MB")

    tokenizer = HuggingFaceTokenizer.from_file(args.tokenizer, eos_id=model.eos_id) if args.tokenizer else None
    config = SessionConfig(
        n_batch=args.n_batch,
        max_tokens=args.max_tokens,
        sliding_window=args.sliding_window,
        seed=args.seed,
        sampler=TopPTopKSampler(
            top_k=args.top_k,
            top_p=args.top_p,
            temperature=args.temperature,
            repeat_penalty=args.repeat_penalty,
        ),
        status_callback=_on_status,
    )

    # --- Select backend ---
    with model:
        try:
            session = start_session(model, args.backend, config, tokenizer, device_id=args.device_id)
        except BackendError as exc:
            sys.exit(f"Backend '{args.backend}' is not available: {exc}")
        print(f"  Backend: {session.handle.device}")
        print()

        with session:
            if args.perplexity:
                value = session.perplexity(
                    args.prompt, lambda chunk, ppl: print(f"  [{chunk}] {ppl:.4f}"),
                )
                print(f"Perplexity: {value:.4f}")
                return

            sys.stdout.write(args.prompt)
            result = session.infer(args.prompt, callback=_print_token)
            print()
            print("=" * 60)
            if result.error is not None:
                print(f"Generation failed: {result.error}")
            else:
                print(f"Stopped: {result.stop_reason.value if result.stop_reason else 'unknown'}")
            print(session.stats)


if __name__ == "__main__":
    main()
