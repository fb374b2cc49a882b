# allocation_engine/engine.py
"""
Allocation Engine

Public entry point of the package. Wires the model registry, model manager,
optimization coordinator and forecast service together and exposes them as
an async API: blocking work (GA runs, training, forecast rollouts) runs on a
bounded thread pool so the caller's event loop stays responsive.

Key Components:
- Optimization requests resolved through a ProjectDataProvider
- In-process result store for recommendation/bottleneck lookups
- Background model training with one job per model id
- Cost, schedule and risk forecasting
"""

import asyncio
import functools
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from .config import EngineConfig, ForecastType, get_logger
from .core.data_provider import ProjectDataProvider
from .core.exceptions import EngineError, ResultNotFoundError
from .core.problem_model import OptimizationRequest, ProblemSnapshot
from .core.solution import BottleneckWarning, OptimizationResult, Recommendation
from .forecasting.forecast_service import ForecastConfig, ForecastResponse, ForecastService
from .hybrid.coordinator import OptimizationCoordinator
from .ml.manager import MLModelManager
from .ml.models import Model, TrainingDataset
from .ml.registry import ModelMetadata, ModelRegistry
from .settings import EngineSettings, get_settings
from .utils.concurrency import CancellationToken

logger = get_logger("engine")


def configure_logging(log_level: str = "INFO") -> None:
    """Set the package log level and quiet chatty dependencies"""
    loggers = {
        "allocation_engine": getattr(logging, log_level.upper()),
        "sqlalchemy.engine": logging.WARNING,
        "sqlalchemy.pool": logging.WARNING,
    }
    for name, level in loggers.items():
        logging.getLogger(name).setLevel(level)


class AllocationEngine:
    """Async facade over optimization, forecasting and model management"""

    def __init__(
        self,
        data_provider: ProjectDataProvider,
        settings: Optional[EngineSettings] = None,
        config: Optional[EngineConfig] = None,
        registry: Optional[ModelRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.config = config or EngineConfig()
        self.data_provider = data_provider
        configure_logging(self.settings.log_level)

        self._owns_registry = registry is None
        self.registry = registry or ModelRegistry(
            self.settings.model_store_dir, self.settings.registry_db_url
        )
        self.model_manager = MLModelManager(self.registry, self.config)
        self.coordinator = OptimizationCoordinator(
            self.model_manager,
            self.config,
            evaluation_workers=self.settings.evaluation_workers,
        )
        self.forecast_service = ForecastService(
            self.model_manager, data_provider, self.config
        )

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.request_workers,
            thread_name_prefix="allocation-engine",
        )
        self._results: "OrderedDict[str, OptimizationResult]" = OrderedDict()
        self._results_lock = threading.Lock()
        self._closed = False

        logger.info(
            f"Allocation engine ready: store={self.settings.model_store_dir}, "
            f"request_workers={self.settings.request_workers}"
        )

    async def _run(self, func, *args, **kwargs):
        if self._closed:
            raise RuntimeError("AllocationEngine is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args, **kwargs)
        )

    # Optimization ------------------------------------------------------------

    async def request_optimization(
        self,
        request: OptimizationRequest,
        token: Optional[CancellationToken] = None,
    ) -> OptimizationResult:
        """Optimize one allocation request and keep the result for lookups"""
        token = token or CancellationToken(request.timeout_seconds)
        try:
            result = await self._run(self._optimize, request, token)
        except EngineError as e:
            logger.error(f"Optimization {request.request_id} failed: {e}")
            raise
        except Exception as e:
            logger.error(
                f"Unexpected failure in optimization {request.request_id}: {e}",
                exc_info=True,
            )
            raise

        self._store_result(result)
        return result

    def _optimize(
        self, request: OptimizationRequest, token: CancellationToken
    ) -> OptimizationResult:
        snapshot = ProblemSnapshot(
            request=request,
            tasks=tuple(self.data_provider.get_tasks(request.task_ids)),
            resources=tuple(self.data_provider.get_resources(request.resource_ids)),
        )
        return self.coordinator.optimize(snapshot, token)

    def _store_result(self, result: OptimizationResult) -> None:
        with self._results_lock:
            self._results[result.result_id] = result
            self._results.move_to_end(result.result_id)
            while len(self._results) > self.settings.max_cached_results:
                evicted, _ = self._results.popitem(last=False)
                logger.debug(f"Evicted result {evicted} from the result store")

    def get_result(self, result_id: str) -> OptimizationResult:
        with self._results_lock:
            result = self._results.get(result_id)
            if result is not None:
                self._results.move_to_end(result_id)
        if result is None:
            raise ResultNotFoundError(result_id)
        return result

    def get_recommendations(self, result_id: str) -> List[Recommendation]:
        return list(self.get_result(result_id).recommendations)

    def get_bottlenecks(self, result_id: str) -> List[BottleneckWarning]:
        return list(self.get_result(result_id).bottlenecks)

    # Forecasting -------------------------------------------------------------

    async def generate_forecast(
        self,
        project_id: str,
        forecast_types: Sequence[ForecastType],
        config: Optional[ForecastConfig] = None,
    ) -> ForecastResponse:
        try:
            return await self._run(
                self.forecast_service.generate_forecast,
                project_id,
                list(forecast_types),
                config,
            )
        except EngineError as e:
            logger.error(f"Forecast for project {project_id} failed: {e}")
            raise

    # Models ------------------------------------------------------------------

    async def train_model(
        self,
        model_id: str,
        dataset: TrainingDataset,
        hyperparams: Optional[dict] = None,
    ) -> ModelMetadata:
        """Train on the worker pool; wrap in ``asyncio.create_task`` to detach"""
        try:
            return await self._run(
                self.model_manager.train_model, model_id, dataset, hyperparams
            )
        except EngineError as e:
            logger.error(f"Training {model_id} failed: {e}")
            raise

    def is_training(self, model_id: str) -> bool:
        return self.model_manager.is_training(model_id)

    def save_model(
        self, model_id: str, model: Model, metadata: Optional[ModelMetadata] = None
    ) -> ModelMetadata:
        return self.model_manager.save_model(model_id, model, metadata)

    def load_model(self, model_id: str, version: Optional[int] = None) -> Model:
        return self.model_manager.load_model(model_id, version)

    def list_models(self, all_versions: bool = False) -> List[ModelMetadata]:
        return self.model_manager.list_models(all_versions)

    def delete_model(self, model_id: str) -> int:
        return self.model_manager.delete_model(model_id)

    # Lifecycle ---------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        if self._owns_registry:
            self.registry.close()
        logger.info("Allocation engine closed")

    async def __aenter__(self) -> "AllocationEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
