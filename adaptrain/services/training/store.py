import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from adaptrain.core.database import ModelCheckpointRow, TrainingSessionRow, async_session as default_session_factory
from adaptrain.core.exceptions import NotFoundError
from adaptrain.schemas.training import (
    CheckpointInfo,
    ModelCheckpoint,
    ModelConfiguration,
    ModelType,
    SessionStatus,
    TrainingMetrics,
    TrainingProgress,
    TrainingSession,
)

_UNSET = object()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value else None


def _checkpoint_info(row: ModelCheckpointRow) -> CheckpointInfo:
    return CheckpointInfo(
        id=row.id,
        session_id=row.session_id,
        epoch=row.epoch,
        step=row.step,
        loss=row.loss,
        accuracy=row.accuracy,
        size=row.size,
        description=row.description,
        created_at=_iso(row.created_at) or "",
    )


def _row_to_checkpoint(row: ModelCheckpointRow) -> ModelCheckpoint:
    info = _checkpoint_info(row)
    return ModelCheckpoint(**info.model_dump(), model_state=json.loads(row.state_json))


def _row_to_session(row: TrainingSessionRow, checkpoints: list[ModelCheckpointRow]) -> TrainingSession:
    """Convert a TrainingSessionRow plus its checkpoint rows to a TrainingSession schema."""
    progress = TrainingProgress(**json.loads(row.progress_json)) if row.progress_json else TrainingProgress()
    metrics = TrainingMetrics(**json.loads(row.metrics_json)) if row.metrics_json else TrainingMetrics()

    return TrainingSession(
        id=row.id,
        name=row.name,
        model_type=ModelType(row.model_type),
        status=SessionStatus(row.status),
        configuration=ModelConfiguration.model_validate_json(row.config_json),
        progress=progress,
        metrics=metrics,
        checkpoints=[_checkpoint_info(c) for c in checkpoints],
        error=row.error,
        created_at=_iso(row.created_at) or "",
        updated_at=_iso(row.updated_at),
        started_at=_iso(row.started_at),
        completed_at=_iso(row.completed_at),
    )


class SessionStore:
    """Persistence for sessions and their append-only checkpoints."""

    def __init__(self, session_factory: async_sessionmaker | None = None):
        self._session_factory = session_factory or default_session_factory

    async def _load_row(self, db, session_id: str) -> TrainingSessionRow:
        result = await db.execute(select(TrainingSessionRow).where(TrainingSessionRow.id == session_id))
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Training session '{session_id}' not found.")
        return row

    async def _checkpoint_rows(self, db, session_id: str) -> list[ModelCheckpointRow]:
        result = await db.execute(
            select(ModelCheckpointRow)
            .where(ModelCheckpointRow.session_id == session_id)
            .order_by(ModelCheckpointRow.seq)
        )
        return list(result.scalars().all())

    async def create_session(
        self, name: str, model_type: ModelType, configuration: ModelConfiguration
    ) -> TrainingSession:
        """Create a new session in pending status with zeroed progress."""
        row = TrainingSessionRow(
            id=str(uuid.uuid4()),
            name=name,
            model_type=ModelType(model_type).value,
            status=SessionStatus.PENDING.value,
            config_json=configuration.model_dump_json(),
            progress_json=TrainingProgress(total_epochs=configuration.epochs).model_dump_json(),
            metrics_json=TrainingMetrics(batch_size=configuration.batch_size).model_dump_json(),
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _row_to_session(row, [])

    async def get_session(self, session_id: str) -> TrainingSession:
        async with self._session_factory() as db:
            row = await self._load_row(db, session_id)
            return _row_to_session(row, await self._checkpoint_rows(db, session_id))

    async def list_sessions(self) -> list[TrainingSession]:
        """All sessions, newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(TrainingSessionRow).order_by(TrainingSessionRow.created_at.desc(), TrainingSessionRow.id)
            )
            rows = list(result.scalars().all())
            sessions = []
            for row in rows:
                sessions.append(_row_to_session(row, await self._checkpoint_rows(db, row.id)))
            return sessions

    async def update_session(
        self,
        session_id: str,
        *,
        status: SessionStatus | None = None,
        progress: TrainingProgress | None = None,
        metrics: TrainingMetrics | None = None,
        error=_UNSET,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> TrainingSession:
        """Write only the fields that are given."""
        async with self._session_factory() as db:
            row = await self._load_row(db, session_id)
            if status is not None:
                row.status = SessionStatus(status).value
            if progress is not None:
                row.progress_json = progress.model_dump_json()
            if metrics is not None:
                row.metrics_json = metrics.model_dump_json()
            if error is not _UNSET:
                row.error = error
            if started_at is not None:
                row.started_at = started_at
            if completed_at is not None:
                row.completed_at = completed_at
            row.updated_at = datetime.now(timezone.utc)

            await db.commit()
            await db.refresh(row)
            return _row_to_session(row, await self._checkpoint_rows(db, session_id))

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and all of its checkpoints."""
        async with self._session_factory() as db:
            row = await self._load_row(db, session_id)
            await db.execute(delete(ModelCheckpointRow).where(ModelCheckpointRow.session_id == session_id))
            await db.delete(row)
            await db.commit()

    # ── Checkpoints ─────────────────────────────────────────────────────────

    async def add_checkpoint(
        self,
        session_id: str,
        *,
        epoch: int,
        step: int,
        model_state: dict,
        loss: float | None = None,
        accuracy: float | None = None,
        description: str | None = None,
    ) -> ModelCheckpoint:
        state_json = json.dumps(model_state)
        async with self._session_factory() as db:
            await self._load_row(db, session_id)
            seq = await db.scalar(
                select(func.coalesce(func.max(ModelCheckpointRow.seq), 0)).where(
                    ModelCheckpointRow.session_id == session_id
                )
            )
            row = ModelCheckpointRow(
                id=str(uuid.uuid4()),
                seq=(seq or 0) + 1,
                session_id=session_id,
                epoch=epoch,
                step=step,
                loss=loss,
                accuracy=accuracy,
                state_json=state_json,
                size=len(state_json.encode("utf-8")),
                description=description,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _row_to_checkpoint(row)

    async def list_checkpoints(self, session_id: str) -> list[CheckpointInfo]:
        async with self._session_factory() as db:
            await self._load_row(db, session_id)
            return [_checkpoint_info(r) for r in await self._checkpoint_rows(db, session_id)]

    async def get_checkpoint(self, session_id: str, checkpoint_id: str) -> ModelCheckpoint:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ModelCheckpointRow).where(
                    ModelCheckpointRow.id == checkpoint_id,
                    ModelCheckpointRow.session_id == session_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Checkpoint '{checkpoint_id}' not found for session '{session_id}'.")
            return _row_to_checkpoint(row)

    async def latest_checkpoint(self, session_id: str) -> ModelCheckpoint | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ModelCheckpointRow)
                .where(ModelCheckpointRow.session_id == session_id)
                .order_by(ModelCheckpointRow.seq.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _row_to_checkpoint(row) if row else None
