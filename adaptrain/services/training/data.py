"""Training data sources: pre-tokenized, pre-split tensors."""

import json
import math
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog
import torch

from adaptrain.config import settings
from adaptrain.core.exceptions import ConfigurationError
from adaptrain.schemas.training import ModelType, SequenceClassifierConfig, TrainingSession
from adaptrain.services.adapters.tokenizer import SequenceTokenizer

logger = structlog.get_logger()


@dataclass
class Batch:
    inputs: torch.Tensor
    labels: torch.Tensor

    def __len__(self) -> int:
        return int(self.labels.shape[0])

    def minibatches(self, batch_size: int) -> Iterator["Batch"]:
        """Yield consecutive slices in order; the last one may be short."""
        for start in range(0, len(self), batch_size):
            yield Batch(self.inputs[start:start + batch_size], self.labels[start:start + batch_size])

    def num_batches(self, batch_size: int) -> int:
        return math.ceil(len(self) / batch_size)


@dataclass
class DataSplit:
    train: Batch
    validation: Batch | None = None

    def validation_batches(self, batch_size: int) -> list[Batch]:
        if self.validation is None or len(self.validation) == 0:
            return []
        return list(self.validation.minibatches(batch_size))


class DataSource(Protocol):
    def load(self, session: TrainingSession) -> DataSplit:
        ...


def split_by_fraction(inputs: torch.Tensor, labels: torch.Tensor, validation_split: float) -> DataSplit:
    """Hold out the trailing ``validation_split`` fraction as validation data."""
    total = int(labels.shape[0])
    n_val = int(total * validation_split)
    if total - n_val < 1:
        raise ConfigurationError("Dataset leaves no training samples after the validation split.")
    cut = total - n_val
    validation = Batch(inputs[cut:], labels[cut:]) if n_val else None
    return DataSplit(train=Batch(inputs[:cut], labels[:cut]), validation=validation)


def session_seed(session_id: str) -> int:
    return zlib.crc32(session_id.encode("utf-8"))


class TensorDataSource:
    """Serves the same in-memory split to every session."""

    def __init__(self, split: DataSplit):
        self._split = split

    def load(self, session: TrainingSession) -> DataSplit:
        return self._split


class SyntheticDataSource:
    """Seeded random data that a small model can actually fit.

    Dense features are labelled by a fixed random projection; token sequences
    are labelled by their first content token.
    """

    def __init__(
        self,
        samples: int | None = None,
        input_dim: int | None = None,
        num_classes: int | None = None,
    ):
        self.samples = samples or settings.adaptrain_train_samples
        self.input_dim = input_dim or settings.adaptrain_input_dim
        self.num_classes = num_classes or settings.adaptrain_num_classes

    def load(self, session: TrainingSession) -> DataSplit:
        generator = torch.Generator().manual_seed(session_seed(session.id))
        if session.model_type == ModelType.PERSIAN_BERT:
            bert = session.configuration.bert_config or SequenceClassifierConfig()
            inputs, labels = self._token_sequences(bert, generator)
        else:
            inputs, labels = self._dense_features(generator)
        logger.debug("synthetic_data_generated", session_id=session.id, samples=self.samples)
        return split_by_fraction(inputs, labels, session.configuration.validation_split)

    def _dense_features(self, generator: torch.Generator) -> tuple[torch.Tensor, torch.Tensor]:
        inputs = torch.randn(self.samples, self.input_dim, generator=generator)
        projection = torch.randn(self.input_dim, self.num_classes, generator=generator)
        labels = torch.argmax(inputs @ projection, dim=1)
        return inputs, labels

    def _token_sequences(
        self, bert: SequenceClassifierConfig, generator: torch.Generator
    ) -> tuple[torch.Tensor, torch.Tensor]:
        tokenizer = SequenceTokenizer()
        first_content = len(tokenizer.special_tokens)
        length = bert.max_sequence_length
        body = torch.randint(
            first_content, tokenizer.vocab_size, (self.samples, max(0, length - 2)), generator=generator
        )
        cls = torch.full((self.samples, 1), tokenizer.cls_id)
        sep = torch.full((self.samples, 1), tokenizer.sep_id)
        inputs = torch.cat([cls, body, sep], dim=1)[:, :length]
        num_classes = len(bert.categories)
        if body.shape[1]:
            labels = body[:, 0] % num_classes
        else:
            labels = torch.zeros(self.samples, dtype=torch.long)
        return inputs, labels


class JsonlDataSource:
    """Pre-tokenized JSONL rows of ``{"inputs": [...], "label": int}``."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self, session: TrainingSession) -> DataSplit:
        if not self.path.exists():
            raise ConfigurationError(f"Dataset file not found: {self.path}")

        rows = []
        with self.path.open(encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                    rows.append((record["inputs"], int(record["label"])))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    raise ConfigurationError(
                        f"Malformed dataset row at line {line_no}.",
                        details={"path": str(self.path), "reason": str(e)},
                    ) from e

        if not rows:
            raise ConfigurationError(f"Dataset file is empty: {self.path}")

        dtype = torch.long if session.model_type == ModelType.PERSIAN_BERT else torch.float32
        try:
            inputs = torch.tensor([r[0] for r in rows], dtype=dtype)
        except (ValueError, TypeError) as e:
            raise ConfigurationError("Dataset rows must share one input shape.", details={"reason": str(e)}) from e
        labels = torch.tensor([r[1] for r in rows], dtype=torch.long)
        logger.info("dataset_loaded", path=str(self.path), samples=len(rows))
        return split_by_fraction(inputs, labels, session.configuration.validation_split)


def default_data_source() -> DataSource:
    if settings.adaptrain_dataset_path:
        return JsonlDataSource(settings.adaptrain_dataset_path)
    return SyntheticDataSource()
