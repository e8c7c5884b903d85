from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from adaptrain.core.exceptions import ConfigurationError


class ModelType(str, Enum):
    DORA = "dora"
    QR_ADAPTOR = "qr-adaptor"
    PERSIAN_BERT = "persian-bert"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


# Contract, Court, Law, Regulation, Judgment, Bill, Resolution, Circular
DEFAULT_CATEGORIES = [
    "قرارداد",
    "دادگاه",
    "قانون",
    "آیین‌نامه",
    "حکم",
    "لایحه",
    "مصوبه",
    "بخشنامه",
]

_PRECISION_BITS = {"nf4": 4, "int8": 8, "fp16": 16}


# ── Adapter blocks ──────────────────────────────────────────────────────────


def _check_target_modules(value: list[str]) -> list[str]:
    # matching is by substring, so a blank entry would match every module
    if any(not t.strip() for t in value):
        raise ValueError("target_modules entries must be non-blank")
    return value


class DoRAConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    rank: int = Field(default=8, ge=1)
    target_modules: list[str] = Field(default_factory=lambda: ["dense"], min_length=1)
    adaptive_rank: bool = True

    @field_validator("target_modules")
    @classmethod
    def _non_blank_targets(cls, value: list[str]) -> list[str]:
        return _check_target_modules(value)


class QRAdaptorConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    quantization_bits: Literal[4, 8, 16] = 4
    precision_mode: Literal["nf4", "int8", "fp16"] = "nf4"
    compression_ratio: float = Field(default=0.5, gt=0.0, le=1.0)
    rank_optimization: bool = True
    dynamic_rank: bool = True
    target_modules: list[str] = Field(default_factory=lambda: ["dense", "conv"], min_length=1)

    @field_validator("target_modules")
    @classmethod
    def _non_blank_targets(cls, value: list[str]) -> list[str]:
        return _check_target_modules(value)

    @model_validator(mode="after")
    def _bits_match_precision(self) -> "QRAdaptorConfig":
        if _PRECISION_BITS[self.precision_mode] != self.quantization_bits:
            raise ValueError(
                f"precision_mode '{self.precision_mode}' requires "
                f"quantization_bits={_PRECISION_BITS[self.precision_mode]}"
            )
        return self


class SequenceClassifierConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    vocab_size: int = Field(default=256, ge=8)
    max_sequence_length: int = Field(default=64, ge=2)
    hidden_size: int = Field(default=64, ge=1)
    num_attention_heads: int = Field(default=4, ge=1)
    num_layers: int = Field(default=2, ge=1)
    intermediate_size: int = Field(default=128, ge=1)
    categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES), min_length=2)

    @model_validator(mode="after")
    def _heads_divide_hidden(self) -> "SequenceClassifierConfig":
        if self.hidden_size % self.num_attention_heads != 0:
            raise ValueError("hidden_size must be divisible by num_attention_heads")
        return self


_BLOCK_FOR_TYPE = {
    ModelType.DORA: "dora_config",
    ModelType.QR_ADAPTOR: "qr_config",
    ModelType.PERSIAN_BERT: "bert_config",
}


class ModelConfiguration(BaseModel):
    """Immutable hyper-parameters of a session plus exactly one adapter block."""

    model_config = ConfigDict(frozen=True)

    learning_rate: float = Field(default=1e-3, gt=0.0)
    batch_size: int = Field(default=32, ge=1)
    epochs: int = Field(default=3, ge=1)
    optimizer: Literal["adam", "adamw", "sgd"] = "adam"
    scheduler: Literal["cosine", "linear", "exponential"] = "cosine"
    warmup_steps: int = Field(default=0, ge=0)
    weight_decay: float = Field(default=0.0, ge=0.0)
    dropout: float = Field(default=0.1, ge=0.0, lt=1.0)
    validation_split: float = Field(default=0.2, ge=0.0, lt=1.0)

    dora_config: DoRAConfig | None = None
    qr_config: QRAdaptorConfig | None = None
    bert_config: SequenceClassifierConfig | None = None

    def adapter_config(self, model_type: ModelType):
        """Return the adapter block for ``model_type``.

        Raises ConfigurationError unless exactly one block is set and it is
        the one ``model_type`` needs.
        """
        model_type = ModelType(model_type)
        present = [name for name in _BLOCK_FOR_TYPE.values() if getattr(self, name) is not None]
        expected = _BLOCK_FOR_TYPE[model_type]
        if present != [expected]:
            raise ConfigurationError(
                f"Model type '{model_type.value}' requires exactly one adapter block '{expected}'.",
                details={"present": present},
            )
        return getattr(self, expected)


# ── Progress, metrics, checkpoints ──────────────────────────────────────────


class TrainingProgress(BaseModel):
    current_epoch: int = 0
    total_epochs: int = 0
    current_step: int = 0
    total_steps: int = 0
    training_loss: list[float] = []
    validation_loss: list[float] = []
    validation_accuracy: list[float] = []
    learning_rate: list[float] = []
    estimated_time_remaining: float = 0.0  # seconds
    completion_percentage: float = 0.0


class TrainingMetrics(BaseModel):
    training_speed: float = 0.0  # steps per second
    memory_usage: float = 0.0  # MB
    cpu_usage: float = 0.0
    gpu_usage: float = 0.0
    batch_size: int = 0
    throughput: float = 0.0  # samples per second
    convergence_rate: float = 0.0
    efficiency: float = 0.0


class CheckpointInfo(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    session_id: str
    epoch: int
    step: int
    loss: float | None = None
    accuracy: float | None = None
    size: int
    description: str | None = None
    created_at: str


class ModelCheckpoint(CheckpointInfo):
    model_state: dict


class CheckpointCreate(BaseModel):
    description: str | None = None


class ClassificationRequest(BaseModel):
    text: str


class ClassificationResult(BaseModel):
    category: str
    confidence: float
    probabilities: dict[str, float] = {}


# ── Sessions ────────────────────────────────────────────────────────────────


class TrainingSessionCreate(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    name: str = Field(min_length=1, max_length=255)
    model_type: ModelType
    configuration: ModelConfiguration = ModelConfiguration()


class TrainingSession(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    name: str
    model_type: ModelType
    status: SessionStatus
    configuration: ModelConfiguration
    progress: TrainingProgress
    metrics: TrainingMetrics
    checkpoints: list[CheckpointInfo] = []
    error: str | None = None
    created_at: str
    updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class TrainingSessionList(BaseModel):
    sessions: list[TrainingSession]
    total: int


class CheckpointList(BaseModel):
    checkpoints: list[CheckpointInfo]
    total: int
