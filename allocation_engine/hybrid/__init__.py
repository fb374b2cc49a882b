# allocation_engine/hybrid/__init__.py

"""Orchestration of GA search and ML estimates."""

from .coordinator import OptimizationCoordinator, OptimizationPhase

__all__ = ["OptimizationCoordinator", "OptimizationPhase"]
