"""
Operation latency tracking tests
"""

import pytest

from performance_monitor import (
    OperationTimer, get_operation_stats, get_performance_stats, monitor_performance, reset_operation_stats,
)


@pytest.fixture(autouse=True)
def clean_stats():
    reset_operation_stats()
    yield
    reset_operation_stats()


class TestOperationTimer:

    def test_successful_call_is_recorded(self):
        with OperationTimer("db_query") as timer:
            pass

        stats = get_operation_stats("db_query")["db_query"]
        assert stats["calls"] == 1
        assert stats["failures"] == 0
        assert timer.duration_ms >= 0.0

    def test_failure_is_counted_and_propagates(self):
        with pytest.raises(RuntimeError):
            with OperationTimer("db_update"):
                raise RuntimeError("connection reset")

        assert get_operation_stats("db_update")["db_update"]["failures"] == 1

    def test_unknown_operation_has_no_stats(self):
        assert get_operation_stats("never_called") == {}

    async def test_async_context_manager(self):
        async with OperationTimer("rate_sync_USD_GBP"):
            pass
        assert get_operation_stats()["rate_sync_USD_GBP"]["calls"] == 1


class TestMonitorDecorator:

    async def test_coroutine_is_timed(self):
        @monitor_performance("stripe_session_create")
        async def create_session():
            return "cs_test_1"

        assert await create_session() == "cs_test_1"
        assert await create_session() == "cs_test_1"
        assert get_operation_stats()["stripe_session_create"]["calls"] == 2

    def test_sync_function_is_timed(self):
        @monitor_performance("registrar_check")
        def check():
            raise ValueError("bad response")

        with pytest.raises(ValueError):
            check()
        stats = get_operation_stats()["registrar_check"]
        assert (stats["calls"], stats["failures"]) == (1, 1)

    def test_health_stats_include_operations(self):
        with OperationTimer("db_query"):
            pass

        stats = get_performance_stats()
        assert "db_query" in stats["operations"]
        assert "timestamp" in stats
        assert "memory_mb" in stats
