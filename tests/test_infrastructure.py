# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import asyncio
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest

from app.core.dispatch.errors import DependencyError
from app.infra.db_resilience_async import is_transient_error, retry_on_transient_error, safe_db_conn
from app.infra.metrics import DispatchMetrics, MetricsCollector, Timer, get_metrics_collector


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        assert is_transient_error(ConnectionError("connection reset by peer")) is True

    def test_is_transient_error_timeout(self):
        assert is_transient_error(asyncio.TimeoutError()) is True

    def test_is_transient_error_server_closed(self):
        assert is_transient_error(RuntimeError("server closed the connection unexpectedly")) is True

    def test_is_transient_error_deadlock(self):
        assert is_transient_error(asyncpg.DeadlockDetectedError("deadlock detected")) is True

    def test_constraint_violation_is_not_transient(self):
        exc = asyncpg.UniqueViolationError("duplicate key violates unique constraint")
        assert is_transient_error(exc) is False

    def test_is_transient_error_non_transient(self):
        assert is_transient_error(ValueError("some other error")) is False

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_on_first_try(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await successful_operation()
        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0)
        async def operation_with_transient_error():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionError("connection timeout")
            return "success"

        result = await operation_with_transient_error()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def operation_with_non_transient_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await operation_with_non_transient_error()

        assert call_count == 1  # Should not retry

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_dependency_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=2, initial_delay=0.1)
        async def always_down():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("connection refused")

        with patch("app.infra.db_resilience_async.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(DependencyError):
                await always_down()

        assert call_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_safe_db_conn_without_pool(self):
        with patch("app.infra.db_resilience_async.pool_ready", return_value=False):
            with pytest.raises(DependencyError):
                async with safe_db_conn():
                    pass


class TestMetrics:
    def test_metrics_counter_increment(self):
        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        metrics = collector.get_metrics()
        assert metrics["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        collector = MetricsCollector()
        collector.observe_histogram("test_histogram", 0.1)
        collector.observe_histogram("test_histogram", 0.2)
        collector.observe_histogram("test_histogram", 0.5)

        metrics = collector.get_metrics()
        stats = metrics["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_metrics_with_labels(self):
        collector = MetricsCollector()
        collector.inc_counter("requests", 1, {"endpoint": "/jobs"})
        collector.inc_counter("requests", 2, {"endpoint": "/bids"})

        metrics = collector.get_metrics()
        assert "requests{endpoint=/jobs}" in metrics["counters"]
        assert collector.counter_value("requests", endpoint="/bids") == 2

    def test_timer_records_histogram(self):
        collector = get_metrics_collector()
        collector.reset()

        with Timer("work_seconds", step="x"):
            pass

        assert collector.get_metrics()["histograms"]["work_seconds{step=x}"]["count"] == 1
        collector.reset()

    def test_dispatch_metrics_labels(self):
        collector = get_metrics_collector()
        collector.reset()

        DispatchMetrics.bid_selected("conflict")
        DispatchMetrics.job_completed(flagged=True)

        assert collector.counter_value("bid_selections_total", outcome="conflict") == 1
        assert collector.counter_value("jobs_completed_total", under_report="true") == 1
        collector.reset()
