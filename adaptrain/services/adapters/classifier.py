"""Transformer-encoder sequence classifier and its (fully trainable) adapter."""

import structlog
import torch
from torch import nn

from adaptrain.core.exceptions import ConfigurationError
from adaptrain.schemas.training import ClassificationResult, ModelType, SequenceClassifierConfig
from adaptrain.services.adapters.base import ModelAdapter, payload_to_tensor, tensor_to_payload
from adaptrain.services.adapters.tokenizer import SequenceTokenizer

logger = structlog.get_logger()


class EncoderBlock(nn.Module):
    """Self-attention, add & norm, GELU feed-forward, add & norm."""

    def __init__(self, hidden_size: int, num_heads: int, intermediate_size: int, dropout: float):
        super().__init__()
        self.attention = nn.MultiheadAttention(hidden_size, num_heads, dropout=dropout, batch_first=True)
        self.attention_norm = nn.LayerNorm(hidden_size)
        self.feed_forward = nn.Sequential(
            nn.Linear(hidden_size, intermediate_size),
            nn.GELU(),
            nn.Linear(intermediate_size, hidden_size),
        )
        self.output_norm = nn.LayerNorm(hidden_size)
        self.dropout = nn.Dropout(dropout)

    def forward(self, x: torch.Tensor, padding_mask: torch.Tensor | None = None) -> torch.Tensor:
        attended, _ = self.attention(x, x, x, key_padding_mask=padding_mask, need_weights=False)
        x = self.attention_norm(x + self.dropout(attended))
        return self.output_norm(x + self.dropout(self.feed_forward(x)))


class SequenceClassifier(nn.Module):
    def __init__(self, config: SequenceClassifierConfig, dropout: float = 0.1, pad_id: int = 0):
        super().__init__()
        self.pad_id = pad_id
        self.max_sequence_length = config.max_sequence_length
        self.token_embedding = nn.Embedding(config.vocab_size, config.hidden_size, padding_idx=pad_id)
        self.position_embedding = nn.Embedding(config.max_sequence_length, config.hidden_size)
        self.blocks = nn.ModuleList(
            EncoderBlock(config.hidden_size, config.num_attention_heads, config.intermediate_size, dropout)
            for _ in range(config.num_layers)
        )
        self.dropout = nn.Dropout(dropout)
        self.classifier = nn.Linear(config.hidden_size, len(config.categories))

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        input_ids = input_ids.long()
        seq_len = input_ids.shape[1]
        if seq_len > self.max_sequence_length:
            raise ValueError(f"sequence length {seq_len} exceeds {self.max_sequence_length}")

        positions = torch.arange(seq_len, device=input_ids.device)
        x = self.token_embedding(input_ids) + self.position_embedding(positions)
        padding = input_ids == self.pad_id
        for block in self.blocks:
            x = block(x, padding)

        # mean over non-padding positions
        keep = (~padding).unsqueeze(-1).to(x.dtype)
        pooled = (x * keep).sum(dim=1) / keep.sum(dim=1).clamp_min(1.0)
        return self.classifier(self.dropout(pooled))


class SequenceClassifierAdapter(ModelAdapter):
    model_type = ModelType.PERSIAN_BERT

    def __init__(self, *args, tokenizer: SequenceTokenizer | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.tokenizer = tokenizer or SequenceTokenizer()

    @property
    def categories(self) -> list[str]:
        return list(self.adapter_config.categories)

    def _setup(self, base_model: nn.Module | None) -> None:
        cfg = self.adapter_config
        if self.tokenizer.vocab_size > cfg.vocab_size:
            raise ConfigurationError(
                f"vocab_size {cfg.vocab_size} is smaller than the tokenizer vocabulary ({self.tokenizer.vocab_size}).",
            )
        if base_model is None:
            with torch.random.fork_rng():
                torch.manual_seed(int(self._generator.initial_seed()))
                base_model = SequenceClassifier(cfg, dropout=self.configuration.dropout, pad_id=self.tokenizer.pad_id)
        self.model = base_model

        # the whole network trains; register its parameters by reference
        for name, param in base_model.named_parameters():
            param.requires_grad_(True)
            self.buffers.allocate(name, param, trainable=True, copy=False)

    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        self._require_ready()
        return self.model(inputs)

    # ── Inference ───────────────────────────────────────────────────────────

    def predict_proba(self, texts: list[str]) -> torch.Tensor:
        self._require_ready()
        if not texts:
            return torch.empty(0, len(self.categories))
        input_ids = self.tokenizer.encode_batch(texts, self.adapter_config.max_sequence_length)
        self.model.eval()
        with torch.no_grad():
            probabilities = torch.softmax(self.model(input_ids), dim=-1)
        self.model.train()
        return probabilities

    def classify(self, text: str) -> ClassificationResult:
        probabilities = self.predict_proba([text])[0]
        index = int(torch.argmax(probabilities))
        return ClassificationResult(
            category=self.categories[index],
            confidence=float(probabilities[index]),
            probabilities={c: float(p) for c, p in zip(self.categories, probabilities.tolist())},
        )

    # ── Checkpoints ─────────────────────────────────────────────────────────

    def _state(self) -> dict:
        return {"parameters": {name: tensor_to_payload(p) for name, p in self.model.named_parameters()}}

    def _load_state(self, state: dict) -> None:
        params = dict(self.model.named_parameters())
        with torch.no_grad():
            for name, payload in state.get("parameters", {}).items():
                param = params.get(name)
                if param is None:
                    logger.warning("classifier_checkpoint_key_unknown", key=name)
                    continue
                value = payload_to_tensor(payload)
                if value.shape != param.shape:
                    raise ConfigurationError(
                        f"Checkpoint tensor '{name}' has shape {list(value.shape)}, expected {list(param.shape)}."
                    )
                param.copy_(value)
