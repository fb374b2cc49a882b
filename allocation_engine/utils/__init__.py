# allocation_engine/utils/__init__.py

"""
Utilities package for the allocation engine.
Provides cancellation and locking, performance monitoring, and validation.
"""

from .concurrency import CancellationToken, KeyedLock, default_worker_count
from .performance import PerformanceMonitor, current_memory
from .validation import validate_request_shape, validate_snapshots

__all__ = [
    "CancellationToken",
    "KeyedLock",
    "PerformanceMonitor",
    "current_memory",
    "default_worker_count",
    "validate_request_shape",
    "validate_snapshots",
]
