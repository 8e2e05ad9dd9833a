"""Tokenizers: the container's embedded vocabulary and HuggingFace ``tokenizer.json``."""
from __future__ import annotations

import codecs
import json
import re
from pathlib import Path
from typing import Any, Iterable, Protocol

from infer_runtime.types import Vocabulary

try:
    from tokenizers import Tokenizer as _HFTokenizer
except Exception:  # pragma: no cover
    _HFTokenizer = None

try:
    from huggingface_hub import hf_hub_download
except Exception:  # pragma: no cover
    hf_hub_download = None

_BYTE_TOKEN = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")
_SENTENCEPIECE_SPACE = "▁"
_EOS_CANDIDATES = ("</s>", "<|endoftext|>", "<eos>", "<|end_of_text|>")


def _byte_level_decoder() -> dict[str, int]:
    """Inverse of the GPT-2 byte-to-unicode table used by byte-level BPE."""
    printable = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    codepoints = printable[:]
    n = 0
    for b in range(256):
        if b not in printable:
            printable.append(b)
            codepoints.append(256 + n)
            n += 1
    return {chr(c): b for b, c in zip(printable, codepoints)}


class Tokenizer(Protocol):
    @property
    def eos_id(self) -> int:
        ...

    def encode(self, text: str, add_bos: bool = False) -> list[int]:
        ...

    def decode(self, tokens: Iterable[int]) -> str:
        ...

    def token_bytes(self, token_id: int) -> bytes:
        ...


class Utf8Buffer:
    """Collects token bytes and releases text only for complete UTF-8 sequences.

    A multi-byte character split across tokens is held back until its last
    byte arrives; invalid sequences come out as U+FFFD.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def push(self, data: bytes) -> str:
        return self._decoder.decode(data)

    def flush(self) -> str:
        text = self._decoder.decode(b"", final=True)
        self._decoder.reset()
        return text


class VocabularyTokenizer:
    """Greedy longest-match tokenizer over the container vocabulary.

    Bytes with no matching token fall back to ``<0xNN>`` byte tokens when the
    vocabulary has them.
    """

    def __init__(self, vocabulary: Vocabulary) -> None:
        self.vocabulary = vocabulary
        self._ids: dict[bytes, int] = {}
        self._byte_ids: dict[int, int] = {}
        self._bytes: list[bytes] = []
        for token_id, token in enumerate(vocabulary.tokens):
            match = _BYTE_TOKEN.match(token.decode("latin-1"))
            if match:
                value = int(match.group(1), 16)
                self._byte_ids.setdefault(value, token_id)
                self._bytes.append(bytes([value]))
                continue
            self._bytes.append(token)
            if token:
                # first occurrence wins
                self._ids.setdefault(token, token_id)
        self._max_len = max((len(t) for t in self._ids), default=1)

    def __len__(self) -> int:
        return len(self.vocabulary)

    @property
    def eos_id(self) -> int:
        return self.vocabulary.eos_id

    @property
    def bos_id(self) -> int:
        return self.vocabulary.bos_id

    def encode(self, text: str, add_bos: bool = False) -> list[int]:
        data = text.encode("utf-8")
        out: list[int] = [self.vocabulary.bos_id] if add_bos else []
        pos = 0
        while pos < len(data):
            for length in range(min(self._max_len, len(data) - pos), 0, -1):
                token_id = self._ids.get(data[pos : pos + length])
                if token_id is not None:
                    out.append(token_id)
                    pos += length
                    break
            else:
                token_id = self._byte_ids.get(data[pos])
                if token_id is None:
                    raise ValueError(f"no token covers byte 0x{data[pos]:02x} at offset {pos}")
                out.append(token_id)
                pos += 1
        return out

    def token_bytes(self, token_id: int) -> bytes:
        return self._bytes[token_id]

    def decode(self, tokens: Iterable[int]) -> str:
        return b"".join(self._bytes[t] for t in tokens).decode("utf-8", errors="replace")


class HuggingFaceTokenizer:
    """Adapter over a ``tokenizers.Tokenizer`` loaded from ``tokenizer.json``."""

    def __init__(self, tokenizer: Any, eos_id: int | None = None) -> None:
        self._tokenizer = tokenizer
        if eos_id is None:
            for candidate in _EOS_CANDIDATES:
                eos_id = tokenizer.token_to_id(candidate)
                if eos_id is not None:
                    break
        if eos_id is None:
            raise ValueError("tokenizer has no recognisable end-of-sequence token; pass eos_id")
        self._eos_id = int(eos_id)
        decoder = json.loads(tokenizer.to_str()).get("decoder") or {}
        self._byte_level = "ByteLevel" in json.dumps(decoder)
        self._byte_decoder = _byte_level_decoder() if self._byte_level else {}

    @classmethod
    def from_file(cls, path: str | Path, eos_id: int | None = None) -> "HuggingFaceTokenizer":
        if _HFTokenizer is None:
            raise RuntimeError("tokenizers is not installed")
        return cls(_HFTokenizer.from_file(str(path)), eos_id)

    @classmethod
    def from_pretrained(
        cls,
        repo_id: str,
        *,
        revision: str | None = None,
        cache_dir: str | None = None,
        eos_id: int | None = None,
    ) -> "HuggingFaceTokenizer":
        """Fetch ``tokenizer.json`` from the HuggingFace Hub."""
        if hf_hub_download is None:
            raise RuntimeError("huggingface-hub is not installed")
        path = hf_hub_download(repo_id, "tokenizer.json", revision=revision, cache_dir=cache_dir)
        return cls.from_file(path, eos_id)

    def __len__(self) -> int:
        return int(self._tokenizer.get_vocab_size())

    @property
    def eos_id(self) -> int:
        return self._eos_id

    def encode(self, text: str, add_bos: bool = False) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=add_bos).ids)

    def decode(self, tokens: Iterable[int]) -> str:
        return self._tokenizer.decode(list(tokens))

    def token_bytes(self, token_id: int) -> bytes:
        piece = self._tokenizer.id_to_token(token_id)
        if piece is None:
            raise ValueError(f"unknown token id {token_id}")
        match = _BYTE_TOKEN.match(piece)
        if match:
            return bytes([int(match.group(1), 16)])
        if self._byte_level:
            return bytes(self._byte_decoder.get(ch, 0x3F) for ch in piece)
        return piece.replace(_SENTENCEPIECE_SPACE, " ").encode("utf-8")
