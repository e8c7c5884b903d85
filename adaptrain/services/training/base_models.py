"""Seeded base models that adapters are attached to."""

from collections import OrderedDict

import torch
from torch import nn

from adaptrain.config import settings
from adaptrain.schemas.training import ModelConfiguration, ModelType, SequenceClassifierConfig
from adaptrain.services.adapters.classifier import SequenceClassifier


def build_dense_model(input_dim: int, num_classes: int, dropout: float = 0.0) -> nn.Module:
    return nn.Sequential(
        OrderedDict(
            [
                ("dense_1", nn.Linear(input_dim, 128)),
                ("relu_1", nn.ReLU()),
                ("dropout_1", nn.Dropout(dropout)),
                ("dense_2", nn.Linear(128, 64)),
                ("relu_2", nn.ReLU()),
                ("dense_out", nn.Linear(64, num_classes)),
            ]
        )
    )


def build_base_model(
    model_type: ModelType | str,
    configuration: ModelConfiguration,
    input_dim: int | None = None,
    num_classes: int | None = None,
    seed: int | None = None,
) -> nn.Module:
    """Same seed, same weights: resumed runs and checkpoints line up with W0."""
    model_type = ModelType(model_type)
    seed = settings.adaptrain_base_model_seed if seed is None else seed

    with torch.random.fork_rng():
        torch.manual_seed(seed)
        if model_type == ModelType.PERSIAN_BERT:
            bert = configuration.bert_config or SequenceClassifierConfig()
            return SequenceClassifier(bert, dropout=configuration.dropout)
        return build_dense_model(
            input_dim or settings.adaptrain_input_dim,
            num_classes or settings.adaptrain_num_classes,
            dropout=configuration.dropout,
        )
