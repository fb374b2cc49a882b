# allocation_engine/forecasting/__init__.py

"""Cost, schedule and risk forecasting."""

from .forecast_service import (
    ConfidenceInterval,
    Forecast,
    ForecastConfig,
    ForecastResponse,
    ForecastService,
    ForecastWarning,
    build_forecaster_dataset,
)

__all__ = [
    "ConfidenceInterval",
    "Forecast",
    "ForecastConfig",
    "ForecastResponse",
    "ForecastService",
    "ForecastWarning",
    "build_forecaster_dataset",
]
