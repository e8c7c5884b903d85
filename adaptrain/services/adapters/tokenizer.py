"""Closed-vocabulary tokenizer for Persian legal text."""

import torch

from adaptrain.core.exceptions import ConfigurationError

SPECIAL_TOKENS = ["[PAD]", "[UNK]", "[CLS]", "[SEP]", "[MASK]"]

PERSIAN_CHARACTERS = "آابپتثجچحخدذرزژسشصضطظعغفقکگلمنوهی۰۱۲۳۴۵۶۷۸۹"

COMMON_WORDS = [
    "که", "در", "از", "با", "به", "را", "این", "آن", "و", "است",
    "برای", "تا", "یا", "اگر", "بر", "هر", "کل", "همه", "بعد", "قبل",
    "روز", "سال", "قانون", "ماده", "بند", "قرارداد", "دادگاه", "حکم", "رای", "طرف",
]

# Arabic code points that have a distinct Persian form.
_NORMALIZATION = str.maketrans({"ي": "ی", "ك": "ک"})


class SequenceTokenizer:
    """Maps text to ids: special tokens, then characters, then whole words.

    Known words map to a single id; any other word falls back to one id per
    character, and characters outside the alphabet become ``[UNK]``.
    """

    def __init__(
        self,
        characters: str = PERSIAN_CHARACTERS,
        words: list[str] | None = None,
    ):
        self.special_tokens = list(SPECIAL_TOKENS)
        self._token_to_id: dict[str, int] = {}
        self._id_to_token: list[str] = []

        for token in self.special_tokens:
            self._add(token)
        for ch in characters:
            self._add(ch)
        for word in (COMMON_WORDS if words is None else words):
            self._add(word)

        self.pad_id = self._token_to_id["[PAD]"]
        self.unk_id = self._token_to_id["[UNK]"]
        self.cls_id = self._token_to_id["[CLS]"]
        self.sep_id = self._token_to_id["[SEP]"]
        self.mask_id = self._token_to_id["[MASK]"]

    def _add(self, token: str) -> None:
        if token in self._token_to_id:
            return
        self._token_to_id[token] = len(self._id_to_token)
        self._id_to_token.append(token)

    @property
    def vocab_size(self) -> int:
        return len(self._id_to_token)

    @staticmethod
    def normalize(text: str) -> str:
        return text.translate(_NORMALIZATION).lower().strip()

    def tokenize(self, text: str) -> list[int]:
        ids: list[int] = []
        for word in self.normalize(text).split():
            word_id = self._token_to_id.get(word)
            if word_id is not None:
                ids.append(word_id)
                continue
            ids.extend(self._token_to_id.get(ch, self.unk_id) for ch in word)
        return ids

    def encode(self, text: str, max_length: int) -> list[int]:
        """``[CLS] tokens [SEP]`` right-padded to exactly ``max_length`` ids."""
        if max_length < 2:
            raise ConfigurationError(f"max_length must be at least 2, got {max_length}.")
        tokens = self.tokenize(text)[: max_length - 2]
        ids = [self.cls_id, *tokens, self.sep_id]
        ids.extend([self.pad_id] * (max_length - len(ids)))
        return ids

    def encode_batch(self, texts: list[str], max_length: int) -> torch.Tensor:
        return torch.tensor([self.encode(t, max_length) for t in texts], dtype=torch.long)

    def decode(self, ids: list[int]) -> str:
        """Space-joined tokens with special tokens dropped."""
        special = set(range(len(self.special_tokens)))
        tokens = []
        for i in ids:
            i = int(i)
            if i in special:
                continue
            tokens.append(self._id_to_token[i] if 0 <= i < self.vocab_size else "[UNK]")
        return " ".join(tokens)
