"""Unit tests for execution statistics and history."""

from unittest.mock import patch

from engine.statistics import ExecutionStatistics


class TestExecutionStatistics:
    """Test counters and per-target history."""

    def test_counters(self, make_result):
        """Test per-probe totals, averages and status counts."""
        stats = ExecutionStatistics()
        stats.record("ssl_check", "a.example", make_result("ssl_check", "pass"), 1.0)
        stats.record("ssl_check", "b.example", make_result("ssl_check", "fail"), 3.0)

        snapshot = stats.get_statistics()["ssl_check"]
        assert snapshot["total_executions"] == 2
        assert snapshot["avg_execution_time"] == 2.0
        assert snapshot["status_counts"] == {"pass": 1, "fail": 1}

    def test_history_per_target(self, make_result):
        """Test history lookup for one target and for all targets."""
        stats = ExecutionStatistics()
        stats.record("ssl_check", "a.example", make_result("ssl_check", "pass", execution_time=0.5), 0.5)
        stats.record("ssl_check", "b.example", make_result("ssl_check", "error"), 0.1)

        assert [e["status"] for e in stats.history("ssl_check", "a.example")] == ["pass"]
        assert stats.history("ssl_check", "a.example")[0]["execution_time"] == 0.5
        assert len(stats.history("ssl_check")) == 2
        assert stats.history("unknown") == []

    def test_history_bounded(self, make_result):
        """Test that history keeps only the newest entries."""
        stats = ExecutionStatistics(history_size=3)
        for status in ["fail", "pass", "pass", "warning"]:
            stats.record("p", "t", make_result("p", status), 0.1)
        assert [e["status"] for e in stats.history("p", "t")] == ["pass", "pass", "warning"]

    def test_recovery_time_marked_on_failures(self, make_result):
        """Test that recovery time is stored on the failures preceding a success."""
        stats = ExecutionStatistics()
        results = [make_result("p", status) for status in ("error", "timeout", "pass")]
        with patch("engine.statistics.time.time", side_effect=[100.0, 103.0, 110.0]):
            for result in results:
                stats.record("p", "t", result, 0.1)

        failures = stats.failure_history("p", "t")
        assert [e["status"] for e in failures] == ["error", "timeout"]
        assert [e["recovery_time"] for e in failures] == [10.0, 10.0]
        assert stats.history("p", "t")[-1]["recovery_time"] is None

    def test_reset(self, make_result):
        """Test that reset clears counters and history."""
        stats = ExecutionStatistics()
        stats.record("p", "t", make_result("p", "pass"), 0.1)
        stats.reset()
        assert stats.get_statistics() == {}
        assert stats.history("p", "t") == []
