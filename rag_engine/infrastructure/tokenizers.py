"""
Name: Token counters per generation model

Responsibilities:
  - Count tokens with the tokenizer of the target model when it is known
    (tiktoken encodings for OpenAI-like models)
  - Fall back to a conservative over-estimate otherwise

Collaborators:
  - tiktoken
  - application/context_assembler (consumer)

Notes:
  - Encodings load lazily and are cached per model; a failed load (no
    network to fetch the BPE file, unknown model) selects the estimator.
"""

from __future__ import annotations

import math
from functools import lru_cache

import tiktoken

from ..crosscutting.logger import logger
from ..domain.entities import ProviderKind, ProviderProfile

# Chars per token is ~4 for English BPE; 3 over-estimates on purpose.
CONSERVATIVE_CHARS_PER_TOKEN = 3


class ConservativeTokenCounter:
    """Upper-bound estimate for models without a known tokenizer."""

    def __init__(self, chars_per_token: int = CONSERVATIVE_CHARS_PER_TOKEN) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self._chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)


class TiktokenCounter:
    def __init__(self, encoding: "tiktoken.Encoding") -> None:
        self._encoding = encoding

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))


@lru_cache(maxsize=32)
def _encoding_for_model(model_id: str) -> "tiktoken.Encoding | None":
    try:
        return tiktoken.encoding_for_model(model_id)
    except KeyError:
        return None
    except Exception as exc:  # BPE download or cache failures
        logger.warning(
            "tiktoken encoding unavailable, using conservative estimate",
            extra={"model_id": model_id, "error": str(exc)},
        )
        return None


def token_counter_for(profile: ProviderProfile | None):
    """R: Tokenizer matching `profile`, else the conservative estimator."""
    if profile is not None and profile.kind == ProviderKind.OPENAI:
        encoding = _encoding_for_model(profile.model_id)
        if encoding is not None:
            return TiktokenCounter(encoding)
    return ConservativeTokenCounter()
