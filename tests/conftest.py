import pytest
import pytest_asyncio
import torch
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from adaptrain.core.database import Base
from adaptrain.schemas.training import DoRAConfig, ModelConfiguration, QRAdaptorConfig, SequenceClassifierConfig
from adaptrain.services.training.data import Batch, DataSplit, TensorDataSource
from adaptrain.services.training.driver import TrainingLoopDriver
from adaptrain.services.training.orchestrator import TrainingOrchestrator
from adaptrain.services.training.store import SessionStore

INPUT_DIM = 16
NUM_CLASSES = 4


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine for tests."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def store(session_factory):
    return SessionStore(session_factory=session_factory)


def make_split(train: int = 96, validation: int = 32, input_dim: int = INPUT_DIM, seed: int = 0) -> DataSplit:
    generator = torch.Generator().manual_seed(seed)
    inputs = torch.randn(train + validation, input_dim, generator=generator)
    labels = torch.randint(0, NUM_CLASSES, (train + validation,), generator=generator)
    return DataSplit(
        train=Batch(inputs[:train], labels[:train]),
        validation=Batch(inputs[train:], labels[train:]) if validation else None,
    )


def small_dense_factory(model_type, configuration):
    from adaptrain.services.training.base_models import build_base_model

    return build_base_model(model_type, configuration, input_dim=INPUT_DIM, num_classes=NUM_CLASSES, seed=7)


@pytest.fixture
def dense_split():
    return make_split()


@pytest.fixture
def dora_configuration():
    return ModelConfiguration(
        learning_rate=0.01,
        batch_size=32,
        epochs=3,
        optimizer="adam",
        dropout=0.0,
        dora_config=DoRAConfig(rank=8),
    )


@pytest.fixture
def qr_configuration():
    return ModelConfiguration(
        learning_rate=0.01,
        batch_size=32,
        epochs=2,
        dropout=0.0,
        qr_config=QRAdaptorConfig(quantization_bits=8, precision_mode="int8", compression_ratio=0.5),
    )


@pytest.fixture
def bert_configuration():
    return ModelConfiguration(
        learning_rate=0.005,
        batch_size=8,
        epochs=1,
        dropout=0.0,
        bert_config=SequenceClassifierConfig(
            max_sequence_length=16,
            hidden_size=32,
            num_attention_heads=4,
            num_layers=1,
            intermediate_size=64,
        ),
    )


@pytest_asyncio.fixture
async def orchestrator(store, dense_split):
    """Orchestrator on the in-memory store with small in-memory data.

    Only epoch-boundary progress events fire (the step interval is huge).
    """
    orch = TrainingOrchestrator(
        store=store,
        data_source=TensorDataSource(dense_split),
        driver=TrainingLoopDriver(progress_interval=10_000, structure_interval=5),
        base_model_factory=small_dense_factory,
        persist_every_steps=2,
    )
    yield orch
    await orch.shutdown()


@pytest_asyncio.fixture
async def app_with_db(session_factory, orchestrator):
    """FastAPI app wired to the in-memory database and test orchestrator."""
    import adaptrain.core.database as db_module

    original_session = db_module.async_session
    db_module.async_session = session_factory

    from adaptrain.main import app

    app.state.orchestrator = orchestrator
    yield app

    app.state.orchestrator = None
    db_module.async_session = original_session


@pytest_asyncio.fixture
async def client(app_with_db):
    transport = ASGITransport(app=app_with_db)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
