"""
llama-session :: Tokenizer

Text ↔ token ids over the vocabulary stored in the model file.
Wraps HuggingFace tokenizers:

  - the embedded vocabulary becomes a Unigram model (piece, score)
    with SentencePiece whitespace ("▁") and <0xNN> byte fallback;
    a literal "▁" in the input is encoded as its bytes
  - a tokenizer.json next to the model file takes precedence, as long
    as its vocabulary size matches the model

INL - 2025
"""

import os
from typing import List, Optional

from tokenizers import Tokenizer, decoders, models, normalizers

from llama_session.core.loader import Vocabulary, TOKEN_TYPE_BYTE
from llama_session.core.logging import get_logger

logger = get_logger("llama_session.tokenizer")

SPIECE_UNDERLINE = "▁"


def _byte_piece(b: int) -> str:
    return f"<0x{b:02X}>"


class LlamaTokenizer:
    """
    Tokenizer wrapper.

    Input:  text (str)
    Output: token IDs (List[int])

    encode() never fails: characters missing from the vocabulary fall
    back to byte tokens when the vocabulary has them, else to unk.
    """

    def __init__(self, tokenizer: Tokenizer, vocab: Vocabulary, escape_underline: bool = False):
        self.tokenizer = tokenizer
        self.vocab = vocab

        # Byte tokens spelling a literal "▁" in the input, which the
        # whitespace marker would otherwise turn into a space on decode
        self._underline_ids: Optional[List[int]] = None
        if escape_underline:
            ids = [tokenizer.token_to_id(_byte_piece(b)) for b in SPIECE_UNDERLINE.encode("utf-8")]
            if None not in ids:
                self._underline_ids = ids

    @classmethod
    def from_vocab(cls, vocab: Vocabulary) -> "LlamaTokenizer":
        has_bytes = TOKEN_TYPE_BYTE in vocab.token_types
        model = models.Unigram(
            list(zip(vocab.tokens, vocab.scores)),
            unk_id=vocab.unk_token_id,
            byte_fallback=has_bytes,
        )
        tok = Tokenizer(model)
        tok.normalizer = normalizers.Replace(" ", SPIECE_UNDERLINE)
        steps = [decoders.Replace(SPIECE_UNDERLINE, " ")]
        if has_bytes:
            steps.append(decoders.ByteFallback())
        steps.append(decoders.Fuse())
        tok.decoder = decoders.Sequence(steps)
        return cls(tok, vocab, escape_underline=has_bytes)

    @classmethod
    def from_file(cls, tokenizer_path: str, vocab: Vocabulary) -> "LlamaTokenizer":
        return cls(Tokenizer.from_file(tokenizer_path), vocab)

    def encode(self, text: str) -> List[int]:
        """Text → token IDs (no BOS)."""
        if not text:
            return []
        if self._underline_ids is None or SPIECE_UNDERLINE not in text:
            return self.tokenizer.encode(text, add_special_tokens=False).ids

        ids: List[int] = []
        for i, part in enumerate(text.split(SPIECE_UNDERLINE)):
            if i:
                ids.extend(self._underline_ids)
            if part:
                ids.extend(self.tokenizer.encode(part, add_special_tokens=False).ids)
        return ids

    def decode(self, token_ids: List[int]) -> str:
        """Token IDs → text."""
        if not token_ids:
            return ""
        return self.tokenizer.decode(list(token_ids), skip_special_tokens=False)

    def token_to_piece(self, token_id: int) -> str:
        piece = self.tokenizer.id_to_token(token_id)
        if piece is None:
            raise IndexError(f"token id {token_id} outside vocabulary of {self.vocab_size}")
        return piece

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()

    @property
    def bos_token_id(self) -> int:
        return self.vocab.bos_token_id

    @property
    def eos_token_id(self) -> int:
        return self.vocab.eos_token_id

    @property
    def unk_token_id(self) -> int:
        return self.vocab.unk_token_id

    @property
    def newline_token_id(self) -> Optional[int]:
        for piece in (_byte_piece(0x0A), "\n"):
            tid = self.tokenizer.token_to_id(piece)
            if tid is not None:
                return tid
        return None


def load_tokenizer(model_path: str, vocab: Vocabulary) -> LlamaTokenizer:
    """
    Tokenizer for a model file.

    Looks for tokenizer.json next to the model file, otherwise builds
    one from the embedded vocabulary.
    """
    candidate = os.path.join(os.path.dirname(os.path.abspath(model_path)), "tokenizer.json")
    if os.path.exists(candidate):
        tok = LlamaTokenizer.from_file(candidate, vocab)
        if tok.vocab_size == len(vocab):
            logger.debug(f"tokenizer: {candidate}")
            return tok
        logger.warning(
            f"ignoring {candidate}: {tok.vocab_size} tokens, model has {len(vocab)}",
        )
    return LlamaTokenizer.from_vocab(vocab)
