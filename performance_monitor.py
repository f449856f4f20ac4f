"""
Performance monitoring utilities
Latency tracking for outbound registrar, payment provider and database calls.
Each timed operation feeds a per-name aggregate that the health endpoint reports.
"""

import asyncio
import logging
import time
import functools
from dataclasses import dataclass
from typing import Dict, Any, Callable, Optional
from datetime import datetime, timezone

import psutil

logger = logging.getLogger(__name__)

# Calls slower than this are logged at WARNING
SLOW_OPERATION_MS = {
    'db_query': 500.0,
    'db_update': 500.0,
    'registrar': 5000.0,
    'stripe': 5000.0,
}
DEFAULT_SLOW_MS = 2000.0

@dataclass
class OperationStats:
    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def record(self, duration_ms: float, failed: bool):
        self.calls += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)
        if failed:
            self.failures += 1

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.calls if self.calls else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'calls': self.calls,
            'failures': self.failures,
            'avg_ms': round(self.avg_ms, 2),
            'max_ms': round(self.max_ms, 2),
        }

_operation_stats: Dict[str, OperationStats] = {}

def _slow_threshold(operation_name: str) -> float:
    for prefix, threshold in SLOW_OPERATION_MS.items():
        if operation_name.startswith(prefix):
            return threshold
    return DEFAULT_SLOW_MS

def record_operation(operation_name: str, duration_ms: float, failed: bool = False):
    stats = _operation_stats.setdefault(operation_name, OperationStats())
    stats.record(duration_ms, failed)

def get_operation_stats(operation_name: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    if operation_name is not None:
        stats = _operation_stats.get(operation_name)
        return {operation_name: stats.to_dict()} if stats else {}
    return {name: stats.to_dict() for name, stats in sorted(_operation_stats.items())}

def reset_operation_stats():
    _operation_stats.clear()

class OperationTimer:
    """Times one call; usable as a sync or async context manager"""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self._started: Optional[float] = None
        self._elapsed_ms: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._elapsed_ms = (time.perf_counter() - self._started) * 1000
        failed = exc_type is not None
        record_operation(self.operation_name, self._elapsed_ms, failed)

        if failed:
            logger.warning(f"⏱️ {self.operation_name} failed after {self._elapsed_ms:.2f}ms ({exc_type.__name__})")
        elif self._elapsed_ms > _slow_threshold(self.operation_name):
            logger.warning(f"🐢 Slow {self.operation_name}: {self._elapsed_ms:.2f}ms")
        else:
            logger.debug(f"⏱️ {self.operation_name}: {self._elapsed_ms:.2f}ms")
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)

    @property
    def duration_ms(self) -> float:
        return self._elapsed_ms or 0.0

def monitor_performance(operation_name: str):
    """
    Decorator that times every call of a sync or async function under operation_name
    """
    def decorator(func: Callable):
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def timed_coroutine(*args, **kwargs):
                with OperationTimer(operation_name):
                    return await func(*args, **kwargs)
            return timed_coroutine

        @functools.wraps(func)
        def timed_call(*args, **kwargs):
            with OperationTimer(operation_name):
                return func(*args, **kwargs)
        return timed_call

    return decorator

def get_performance_stats() -> Dict[str, Any]:
    """Process figures plus per-operation latency for the health endpoint"""
    stats: Dict[str, Any] = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'operations': get_operation_stats(),
    }
    try:
        process = psutil.Process()
        stats['memory_mb'] = round(process.memory_info().rss / (1024 * 1024), 1)
        stats['cpu_percent'] = process.cpu_percent()
        stats['process_id'] = process.pid
    except psutil.Error as e:
        logger.warning(f"⚠️ Process stats unavailable: {e}")
        stats['error'] = str(e)
    return stats
