# allocation_engine/ml/registry.py

"""
Versioned model registry.

Metadata rows live in an embedded SQLite database; weights are opaque blobs
on disk, one uniquely named file per saved version. Blobs are written to a
temporary file and renamed into place before the metadata row is committed,
so a reader that finds a row always finds a complete blob. Versions are
allocated from a per-model counter that survives deletion, so they never
repeat.
"""

import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Float, Integer, String, create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, sessionmaker
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import get_logger
from ..core.exceptions import ModelNotFoundError, PersistenceError

logger = get_logger("ml.registry")

Base = declarative_base()

PERSISTENCE_RETRY = dict(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, max=2),
    retry=retry_if_exception_type(PersistenceError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class ModelVersionRecord(Base):
    __tablename__ = "model_versions"

    model_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_type: Mapped[str] = mapped_column(String(64), nullable=False)
    trained_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    residual_std: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    training_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    normalization_params: Mapped[dict] = mapped_column(JSON, nullable=False)
    hyperparameters: Mapped[dict] = mapped_column(JSON, nullable=False)
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False)
    weights_blob_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )


class ModelVersionCounter(Base):
    __tablename__ = "model_version_counters"

    model_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    last_version: Mapped[int] = mapped_column(Integer, nullable=False)


@dataclass
class ModelMetadata:
    model_id: str
    model_type: str
    version: int = 0
    trained_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    accuracy: float = 0.0
    normalization_params: Dict[str, Any] = field(default_factory=dict)
    weights_blob_ref: str = ""
    hyperparameters: Dict[str, Any] = field(default_factory=dict)
    training_samples: int = 0
    residual_std: float = 0.0
    metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["trained_at"] = self.trained_at.isoformat()
        return data

    @classmethod
    def from_record(cls, record: ModelVersionRecord) -> "ModelMetadata":
        trained_at = record.trained_at
        if trained_at.tzinfo is None:
            trained_at = trained_at.replace(tzinfo=timezone.utc)
        return cls(
            model_id=record.model_id,
            model_type=record.model_type,
            version=record.version,
            trained_at=trained_at,
            accuracy=record.accuracy,
            normalization_params=dict(record.normalization_params),
            weights_blob_ref=record.weights_blob_ref,
            hyperparameters=dict(record.hyperparameters),
            training_samples=record.training_samples,
            residual_std=record.residual_std,
            metrics=dict(record.metrics),
        )


class ModelRegistry:
    """Append-only, versioned store of model weights and metadata"""

    def __init__(self, store_dir, db_url: Optional[str] = None):
        self.store_dir = Path(store_dir)
        self.blob_dir = self.store_dir / "blobs"
        try:
            self.blob_dir.mkdir(parents=True, exist_ok=True)
            url = db_url or f"sqlite:///{(self.store_dir / 'registry.db').as_posix()}"
            self.engine = create_engine(url, connect_args={"check_same_thread": False})
            Base.metadata.create_all(self.engine)
        except (OSError, SQLAlchemyError) as e:
            raise PersistenceError(
                f"Cannot open model store at {self.store_dir}", cause=e
            ) from e
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._write_lock = threading.Lock()
        logger.info(f"Model registry ready at {self.store_dir}")

    # Blob helpers ------------------------------------------------------------

    def _blob_path(self, model_id: str, version: int) -> Path:
        # Unique per write, so a writer that loses a version race on a shared
        # store only ever removes its own blob
        return self.blob_dir / model_id / f"v{version:06d}-{uuid4().hex[:12]}.bin"

    @staticmethod
    def _next_version(counter: Optional[ModelVersionCounter]) -> int:
        return (counter.last_version if counter else 0) + 1

    def _write_blob_atomic(self, path: Path, blob: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".bin")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(blob)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    # Public API ----------------------------------------------------------------

    @retry(**PERSISTENCE_RETRY)
    def save(self, model_id: str, blob: bytes, metadata: ModelMetadata) -> ModelMetadata:
        """Persist a new version; returns the metadata with version and blob ref set"""
        with self._write_lock:
            blob_path: Optional[Path] = None
            session = self._session_factory()
            try:
                counter = session.get(ModelVersionCounter, model_id)
                version = self._next_version(counter)

                blob_path = self._blob_path(model_id, version)
                self._write_blob_atomic(blob_path, blob)

                stored = ModelMetadata(
                    **{**asdict(metadata), "model_id": model_id, "version": version}
                )
                stored.weights_blob_ref = blob_path.relative_to(self.store_dir).as_posix()

                if counter is None:
                    session.add(ModelVersionCounter(model_id=model_id, last_version=version))
                else:
                    counter.last_version = version
                session.add(
                    ModelVersionRecord(
                        model_id=model_id,
                        version=version,
                        model_type=stored.model_type,
                        trained_at=stored.trained_at.astimezone(timezone.utc).replace(
                            tzinfo=None
                        ),
                        accuracy=stored.accuracy,
                        residual_std=stored.residual_std,
                        training_samples=stored.training_samples,
                        normalization_params=stored.normalization_params,
                        hyperparameters=stored.hyperparameters,
                        metrics=stored.metrics,
                        weights_blob_ref=stored.weights_blob_ref,
                    )
                )
                session.commit()
            except (OSError, SQLAlchemyError) as e:
                session.rollback()
                if blob_path is not None and blob_path.exists():
                    blob_path.unlink()
                logger.warning(f"Saving {model_id} failed: {e}")
                raise PersistenceError(
                    f"Failed to save model {model_id}", cause=e, context={"model_id": model_id}
                ) from e
            finally:
                session.close()

        logger.info(f"Saved model {model_id} version {version}")
        return stored

    @retry(**PERSISTENCE_RETRY)
    def get_metadata(self, model_id: str, version: Optional[int] = None) -> ModelMetadata:
        return self._read_metadata(model_id, version)

    def _read_metadata(self, model_id: str, version: Optional[int]) -> ModelMetadata:
        try:
            with self._session_factory() as session:
                record = self._find_record(session, model_id, version)
                if record is None:
                    raise ModelNotFoundError(model_id, version)
                return ModelMetadata.from_record(record)
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to read metadata for {model_id}", cause=e
            ) from e

    @retry(**PERSISTENCE_RETRY)
    def load(self, model_id: str, version: Optional[int] = None) -> Tuple[bytes, ModelMetadata]:
        """Return (weights blob, metadata) for the latest or a given version"""
        metadata = self._read_metadata(model_id, version)
        path = self.store_dir / metadata.weights_blob_ref
        try:
            blob = path.read_bytes()
        except OSError as e:
            raise PersistenceError(
                f"Weights for {model_id} v{metadata.version} unreadable",
                cause=e,
                context={"path": str(path)},
            ) from e
        return blob, metadata

    @retry(**PERSISTENCE_RETRY)
    def list(self, all_versions: bool = False) -> List[ModelMetadata]:
        try:
            with self._session_factory() as session:
                records = session.scalars(
                    select(ModelVersionRecord).order_by(
                        ModelVersionRecord.model_id, ModelVersionRecord.version
                    )
                ).all()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to list models", cause=e) from e

        if all_versions:
            return [ModelMetadata.from_record(r) for r in records]
        latest: Dict[str, ModelVersionRecord] = {}
        for record in records:
            latest[record.model_id] = record
        return [ModelMetadata.from_record(r) for r in latest.values()]

    def exists(self, model_id: str) -> bool:
        try:
            self._read_metadata(model_id, None)
        except ModelNotFoundError:
            return False
        return True

    @retry(**PERSISTENCE_RETRY)
    def delete(self, model_id: str) -> int:
        """Remove every version of a model; returns how many were removed"""
        with self._write_lock:
            try:
                with self._session_factory() as session:
                    records = session.scalars(
                        select(ModelVersionRecord).where(
                            ModelVersionRecord.model_id == model_id
                        )
                    ).all()
                    if not records:
                        raise ModelNotFoundError(model_id)
                    for record in records:
                        session.delete(record)
                    session.commit()
                shutil.rmtree(self.blob_dir / model_id, ignore_errors=True)
            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to delete model {model_id}", cause=e) from e

        logger.info(f"Deleted {len(records)} version(s) of model {model_id}")
        return len(records)

    def _find_record(self, session, model_id: str, version: Optional[int]):
        if version is not None:
            return session.get(ModelVersionRecord, (model_id, version))
        return session.scalars(
            select(ModelVersionRecord)
            .where(ModelVersionRecord.model_id == model_id)
            .order_by(ModelVersionRecord.version.desc())
            .limit(1)
        ).first()

    def close(self) -> None:
        self.engine.dispose()
