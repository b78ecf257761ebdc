"""Tokenizer adapter over a pretrained Hugging Face fast tokenizer.

The adapter converts text to token-id sequences and is shared by the
backends (for model-ready tensors) and by callers that need token counts to
chunk documents to the model's limit.

Two configurations are used:
- evaluation: special tokens added, truncated to ``max_length``
- chunking: no truncation, no padding, so counts reflect the full text
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import structlog
from transformers import PreTrainedTokenizerFast

from .errors import ModelLoadError, TokenizationError

logger = structlog.get_logger("embedder.tokenizer")


@dataclass
class Encoding:
    """Token ids plus the parallel attention mask and token type ids."""
    ids: List[int]
    attention_mask: List[int]
    type_ids: List[int]

    def __len__(self) -> int:
        return len(self.ids)


def validate_text(text: str) -> None:
    """Reject input that cannot be tokenized.

    Empty and whitespace-only text is refused rather than embedded as a
    special-token-only sequence.
    """
    if not isinstance(text, str):
        raise TokenizationError(f"expected str, got {type(text).__name__}")
    if not text.strip():
        raise TokenizationError("cannot embed empty text")
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise TokenizationError(f"text is not valid UTF-8: {e}") from e


class TokenizerAdapter:
    """Wraps a ``PreTrainedTokenizerFast`` with fixed truncation settings.

    Parameters
    - tokenizer: A loaded fast tokenizer
    - truncate: Truncate to ``max_length`` tokens when encoding
    - max_length: Token limit applied when ``truncate`` is set
    """

    def __init__(
        self,
        tokenizer: PreTrainedTokenizerFast,
        truncate: bool = True,
        max_length: Optional[int] = 512,
    ):
        self._tokenizer = tokenizer
        self.truncate = truncate
        self.max_length = max_length if truncate else None

    @classmethod
    def from_file(
        cls,
        path: Path,
        truncate: bool = True,
        max_length: Optional[int] = 512,
    ) -> "TokenizerAdapter":
        """Load a tokenizer from a ``tokenizer.json`` style file."""
        path = Path(path)
        if not path.is_file():
            raise ModelLoadError(f"tokenizer file not found: {path}")

        try:
            tokenizer = PreTrainedTokenizerFast(tokenizer_file=str(path))
        except Exception as e:
            logger.error("Failed to load tokenizer", path=str(path), error=str(e))
            raise ModelLoadError(f"cannot load tokenizer {path}: {e}") from e

        logger.info(
            "Loaded tokenizer",
            path=str(path),
            vocab_size=len(tokenizer),
            truncate=truncate,
        )
        return cls(tokenizer, truncate=truncate, max_length=max_length)

    @property
    def vocab_size(self) -> int:
        return len(self._tokenizer)

    def encode(self, text: str, add_special_tokens: bool = True) -> Encoding:
        """Tokenize one text.

        Raises ``TokenizationError`` for invalid text or when the tokenizer
        yields no tokens at all.
        """
        validate_text(text)
        try:
            output = self._tokenizer(
                text,
                add_special_tokens=add_special_tokens,
                truncation=self.truncate,
                max_length=self.max_length,
                padding=False,
                return_attention_mask=True,
                return_token_type_ids=True,
            )
        except Exception as e:
            raise TokenizationError(f"tokenizer failed: {e}") from e

        ids = list(output["input_ids"])
        if not ids:
            raise TokenizationError("text produced no tokens")

        return Encoding(
            ids=ids,
            attention_mask=list(output["attention_mask"]),
            type_ids=list(output["token_type_ids"]),
        )

    def encode_batch(self, texts: Sequence[str]) -> List[Encoding]:
        """Tokenize each text independently; no padding across the batch."""
        return [self.encode(text) for text in texts]

    def count_tokens(self, text: str) -> int:
        """Number of tokens in ``text`` without special tokens."""
        if not text:
            return 0
        output = self._tokenizer(
            text,
            add_special_tokens=False,
            truncation=False,
            padding=False,
        )
        return len(output["input_ids"])

    def split_text(self, text: str, max_tokens: int) -> List[str]:
        """Split ``text`` into pieces of at most ``max_tokens`` tokens.

        Boundaries follow the tokenizer's character offsets, so each piece is
        a verbatim slice of the input.
        """
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if not text:
            return []

        output = self._tokenizer(
            text,
            add_special_tokens=False,
            truncation=False,
            padding=False,
            return_offsets_mapping=True,
        )
        offsets = output["offset_mapping"]

        pieces = []
        for start in range(0, len(offsets), max_tokens):
            window = offsets[start:start + max_tokens]
            pieces.append(text[window[0][0]:window[-1][1]])
        return pieces
