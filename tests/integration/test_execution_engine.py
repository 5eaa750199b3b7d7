"""Integration tests for sequential batch execution through ExecutionEngine."""

import time
from unittest.mock import patch

import pytest

from core.config import PoolConfig
from core.resource_pool import ResourcePool
from core.types import CyclicDependencyError, Job, ResultStatus, UnknownInversionRuleError
from probes.mock_probe import MockProbe


def job(job_id, probe=None, target="example.com", deps=(), **kwargs):
    return Job(id=job_id, probe_name=probe or job_id, target=target, dependencies=deps, **kwargs)


class TestDependencyOrdering:
    """Test that dependencies always run first."""

    def test_topological_execution_order(self, shared_probe, engine_factory):
        """Test that every job runs after all of its dependencies."""
        for name in ("a", "b", "c", "d"):
            shared_probe(name)
        order = []
        engine = engine_factory(progress_callback=lambda current, total, job_id: order.append(job_id))

        jobs = [
            job("d", deps=("b", "c"), priority=900),
            job("c", deps=("a",), priority=500),
            job("b", deps=("a",)),
            job("a", priority=1),
        ]
        batch = engine.execute_batch(jobs)

        assert batch.total == 4
        position = {job_id: i for i, job_id in enumerate(order)}
        for j in jobs:
            for dep in j.dependencies:
                assert position[dep] < position[j.id]
        # Results keyed in submission order
        assert list(batch.results) == ["d", "c", "b", "a"]

    def test_cycle_rejected_before_any_probe_runs(self, shared_probe, engine_factory):
        """Test that a cyclic batch raises without executing anything."""
        probe = shared_probe("p")
        jobs = [job("a", "p", deps=("b",)), job("b", "p", deps=("a",)), job("c", "p")]

        with pytest.raises(CyclicDependencyError):
            engine_factory().execute_batch(jobs)
        assert probe.call_count == 0

    def test_external_dependency_ignored(self, shared_probe, engine_factory):
        """Test that ids outside the batch never block."""
        shared_probe("a")
        batch = engine_factory().execute_batch([job("a", deps=("elsewhere",))])
        assert batch.results["a"].status == ResultStatus.PASS

    def test_duplicate_ids_rejected(self, engine_factory):
        """Test that duplicate job ids raise ValueError."""
        with pytest.raises(ValueError, match="Duplicate job ids in batch: x"):
            engine_factory().execute_batch([job("x", "mock"), job("x", "mock")])


class TestDependencySkips:
    """Test skip propagation for failed dependencies."""

    def test_failed_dependency_skips_dependents_transitively(self, shared_probe, engine_factory):
        """Test that B and C are skipped, and their probes never invoked, when A fails."""
        shared_probe("a", statuses=["fail"])
        b = shared_probe("b")
        c = shared_probe("c")
        independent = shared_probe("x")

        batch = engine_factory().execute_batch([job("a"), job("b", deps=("a",)), job("c", deps=("b",)), job("x")])

        assert batch.results["a"].status == ResultStatus.FAIL
        assert batch.results["b"].status == ResultStatus.SKIP
        assert batch.results["b"].message == "Skipped: dependencies not met"
        assert batch.results["b"].data == {"reason": "dependencies not met", "blocked_by": ["a"]}
        assert batch.results["c"].status == ResultStatus.SKIP
        assert batch.results["c"].data["blocked_by"] == ["b"]
        assert b.call_count == 0
        assert c.call_count == 0
        assert batch.results["x"].status == ResultStatus.PASS
        assert independent.call_count == 1

    def test_plain_skip_does_not_block(self, shared_probe, engine_factory):
        """Test that a skip from a disabled probe lets dependents run."""
        shared_probe("off", enabled=False)
        after = shared_probe("after")

        batch = engine_factory().execute_batch([job("off"), job("after", deps=("off",))])

        assert batch.results["off"].status == ResultStatus.SKIP
        assert batch.results["after"].status == ResultStatus.PASS
        assert after.call_count == 1


class TestRetriesAndTimeouts:
    """Test retry and timeout handling through the engine."""

    def test_retry_bound(self, shared_probe, engine_factory):
        """Test that a failing probe runs exactly max_retries + 1 times."""
        probe = shared_probe("flaky", statuses=["error"])
        batch = engine_factory().execute_batch([job("flaky", options={"max_retries": 2})])

        result = batch.results["flaky"]
        assert probe.call_count == 3
        assert result.status == ResultStatus.FAIL
        assert result.data["retries_exhausted"] is True
        assert result.data["retry_attempts"] == 3

    def test_retry_success(self, shared_probe, engine_factory):
        """Test success after transient errors."""
        probe = shared_probe("flaky", statuses=["error", "timeout", "pass"])
        result = engine_factory().execute_batch([job("flaky")]).results["flaky"]

        assert probe.call_count == 3
        assert result.status == ResultStatus.PASS
        assert result.message.endswith("(succeeded after 3 attempts)")

    def test_retries_disabled_per_job(self, shared_probe, engine_factory):
        """Test that retries=False gives a single attempt."""
        probe = shared_probe("flaky", statuses=["error"])
        result = engine_factory().execute_batch([job("flaky", options={"retries": False})]).results["flaky"]
        assert probe.call_count == 1
        assert result.status == ResultStatus.ERROR

    def test_timeout_returns_early(self, shared_probe, engine_factory):
        """Test that a slow probe yields a timeout result at the deadline."""
        shared_probe("slow", delay=2.0)
        engine = engine_factory()
        start = time.perf_counter()
        batch = engine.execute_batch([job("slow", options={"timeout": 0.1, "retries": False})])

        result = batch.results["slow"]
        assert time.perf_counter() - start < 1.5
        assert result.status == ResultStatus.TIMEOUT
        assert result.data["timeout_limit"] == 0.1
        assert result.data["actual_execution_time"] >= 0.1
        # The handle used by the abandoned call is not reused
        assert engine.get_pool_stats()["destroyed_total"] == 1
        assert engine.get_pool_stats()["in_use"] == 0

    @pytest.mark.slow
    def test_six_second_probe_five_second_timeout(self, shared_probe, engine_factory):
        """Test the 6s probe against a 5s budget."""
        shared_probe("slow", delay=6.0)
        start = time.perf_counter()
        result = engine_factory().execute_batch([job("slow", options={"timeout": 5, "retries": False})]).results["slow"]

        assert time.perf_counter() - start < 6.0
        assert result.status == ResultStatus.TIMEOUT
        assert result.data["timeout_limit"] == 5.0
        assert result.data["actual_execution_time"] >= 5.0

    def test_timeouts_disabled(self, shared_probe, engine_factory, fast_config):
        """Test that disabling timeouts runs the probe inline to completion."""
        shared_probe("slow", delay=0.2)
        engine = engine_factory(fast_config(enable_timeouts=False))
        result = engine.execute_batch([job("slow", options={"timeout": 0.05, "retries": False})]).results["slow"]
        assert result.status == ResultStatus.PASS

    def test_exception_without_retries_becomes_error(self, shared_probe, engine_factory):
        """Test that an escaping exception becomes an error result."""
        shared_probe("broken", raises=[ConnectionError("refused")])
        result = engine_factory().execute_batch([job("broken", options={"retries": False})]).results["broken"]

        assert result.status == ResultStatus.ERROR
        assert result.message == "Probe execution failed: refused"
        assert result.data["exception_class"] == "ConnectionError"

    def test_exception_with_retries_exhausts(self, shared_probe, engine_factory):
        """Test that repeated exceptions end in a retries-exhausted failure."""
        probe = shared_probe("broken", raises=[ConnectionError("refused")] * 2)
        result = engine_factory().execute_batch([job("broken", options={"max_retries": 1})]).results["broken"]

        assert probe.call_count == 2
        assert result.status == ResultStatus.FAIL
        assert result.data["retry_history"][0]["exception"] == "ConnectionError"

    def test_adaptive_timeout_uses_history(self, shared_probe, engine_factory, fast_config):
        """Test that adaptive timeouts are derived from earlier runs of the same target."""
        shared_probe("p")
        engine = engine_factory(fast_config(adaptive_timeouts=True))
        engine.execute_batch([job("p")])

        with patch.object(engine.timeout_controller, "adaptive_timeout", return_value=2.0) as adaptive:
            engine.execute_batch([job("p")])
        history = adaptive.call_args.args[0]
        assert [entry["status"] for entry in history] == ["pass"]

    def test_smart_retries_use_failure_history(self, shared_probe, engine_factory, fast_config):
        """Test that recent errors raise the retry count for the next run."""
        probe = shared_probe("flaky", statuses=["error"])
        engine = engine_factory(fast_config(smart_retries=True, retries={"default_max_retries": 1}))

        engine.execute_batch([job("flaky", options={"retries": False})])
        assert probe.call_count == 1

        engine.execute_batch([job("flaky")])
        # default 1 + 2 more retries once errors dominate
        assert probe.call_count == 1 + 4


class TestInversion:
    """Test inversion applied to final results."""

    def test_expect_failure(self, shared_probe, engine_factory):
        """Test that a passing probe is reported as failing."""
        shared_probe("vuln")
        result = engine_factory().execute_batch([job("vuln", options={"inversion_mode": "expect_failure"})]).results["vuln"]

        assert result.status == ResultStatus.FAIL
        assert result.data["original_status"] == "pass"
        assert result.data["inversion_applied"] == "expect_failure"

    def test_availability_inverted_timeout_passes(self, shared_probe, engine_factory):
        """Test that a timeout counts as passing under availability_inverted."""
        shared_probe("blocked_port", delay=1.0)
        options = {"timeout": 0.05, "retries": False, "inversion_mode": "availability_inverted"}
        result = engine_factory().execute_batch([job("blocked_port", options=options)]).results["blocked_port"]

        assert result.status == ResultStatus.PASS
        assert result.data["original_status"] == "timeout"

    def test_inversion_applies_after_retries(self, shared_probe, engine_factory):
        """Test that inversion sees the final post-retry result."""
        shared_probe("flaky", statuses=["error", "pass"])
        options = {"inversion_mode": "expect_failure"}
        result = engine_factory().execute_batch([job("flaky", options=options)]).results["flaky"]
        assert result.status == ResultStatus.FAIL
        assert result.data["original_status"] == "pass"

    def test_unknown_rule_aborts_batch_before_execution(self, shared_probe, engine_factory):
        """Test that an unknown inversion mode raises before any probe runs."""
        probe = shared_probe("p")
        jobs = [job("first", "p"), job("second", "p", options={"inversion_mode": "bogus"})]

        with pytest.raises(UnknownInversionRuleError, match="bogus"):
            engine_factory().execute_batch(jobs)
        assert probe.call_count == 0

    def test_inversion_disabled(self, shared_probe, engine_factory, fast_config):
        """Test that inversion modes are ignored when inversion is disabled."""
        shared_probe("vuln")
        engine = engine_factory(fast_config(enable_result_inversion=False))
        result = engine.execute_batch([job("vuln", options={"inversion_mode": "bogus"})]).results["vuln"]
        assert result.status == ResultStatus.PASS

    def test_job_dicts_accepted(self, engine_factory):
        """Test that plain dicts become jobs with extra keys as options."""
        batch = engine_factory().execute_batch(
            [{"id": "j1", "probe_name": "mock", "target": "example.com", "inversion_mode": "expect_failure"}]
        )
        assert batch.results["j1"].status == ResultStatus.FAIL


class TestFailuresAndResources:
    """Test error results, the pool and fail_fast."""

    def test_unknown_probe(self, engine_factory):
        """Test that an unregistered probe yields an error result."""
        result = engine_factory().execute_batch([job("g", "ghost")]).results["g"]
        assert result.status == ResultStatus.ERROR
        assert result.message == "Probe not found: ghost"

    def test_invalid_target_skipped(self, engine_factory):
        """Test that an invalid target is skipped without running the probe."""
        result = engine_factory().execute_batch([job("m", "mock", target="not a host")]).results["m"]
        assert result.status == ResultStatus.SKIP

    def test_pool_exhaustion_becomes_error(self, shared_probe, engine_factory, fast_config):
        """Test that a pool wait timeout becomes an error result."""
        shared_probe("p")
        pool = ResourcePool(PoolConfig(max_connections=1, acquire_timeout=0.05, poll_interval=0.01))
        engine = engine_factory(fast_config(), resource_pool=pool)

        with pool.lease():
            result = engine.execute_batch([job("p", options={"retries": False})]).results["p"]

        assert result.status == ResultStatus.ERROR
        assert "Timeout waiting for available resource" in result.message
        assert result.data["exception_class"] == "ResourceExhaustedError"
        assert pool.get_stats()["in_use"] == 0
        pool.close()

    def test_pool_exhaustion_is_retried(self, shared_probe, engine_factory, fast_config):
        """Test that a retry can succeed once a handle frees up."""
        probe = shared_probe("p")
        pool = ResourcePool(PoolConfig(max_connections=1, acquire_timeout=0.05, poll_interval=0.01))
        engine = engine_factory(fast_config(), resource_pool=pool)
        held = pool.acquire()

        def release_then_sleep(delay):
            pool.release(held)

        engine.retry_controller._sleep = release_then_sleep
        result = engine.execute_batch([job("p", options={"max_retries": 1})]).results["p"]

        assert result.status == ResultStatus.PASS
        assert probe.call_count == 1
        assert result.data["retry_history"][0]["exception"] == "ResourceExhaustedError"
        pool.close()

    def test_shared_pool_not_closed_by_engine(self, engine_factory):
        """Test that an engine only closes a pool it created."""
        pool = ResourcePool(PoolConfig())
        engine = engine_factory(resource_pool=pool)
        engine.close()
        pool.acquire()
        pool.close()

    def test_fail_fast_stops_batch(self, shared_probe, engine_factory, fast_config):
        """Test that the first problematic result leaves later jobs unrecorded."""
        shared_probe("a")
        shared_probe("b", statuses=["fail"])
        c = shared_probe("c")

        engine = engine_factory(fast_config(fail_fast=True))
        batch = engine.execute_batch([job("a", priority=300), job("b", priority=200), job("c", priority=100)])

        assert list(batch.results) == ["a", "b"]
        assert c.call_count == 0

    def test_progress_callback(self, shared_probe, engine_factory):
        """Test one callback per recorded job with running counts."""
        for name in ("a", "b", "c"):
            shared_probe(name)
        calls = []
        engine = engine_factory(progress_callback=lambda *args: calls.append(args))
        engine.execute_batch([job("a"), job("b"), job("c")])

        assert [(current, total) for current, total, _ in calls] == [(1, 3), (2, 3), (3, 3)]
        assert sorted(job_id for _, _, job_id in calls) == ["a", "b", "c"]

    def test_failing_progress_callback_ignored(self, engine_factory):
        """Test that a raising callback does not break the batch."""
        def callback(current, total, job_id):
            raise RuntimeError("ui gone")

        batch = engine_factory(progress_callback=callback).execute_batch([job("m", "mock")])
        assert batch.results["m"].status == ResultStatus.PASS


class TestDeadlines:
    """Test batch deadlines."""

    def test_jobs_not_fitting_deadline_dropped(self, shared_probe, engine_factory):
        """Test that jobs beyond the deadline estimate get timeout results without running."""
        shared_probe("quick")
        big = shared_probe("big")

        batch = engine_factory().execute_batch(
            [job("quick", estimated_duration=1.0), job("big", estimated_duration=100.0)],
            deadline=5.0,
        )

        assert batch.results["quick"].status == ResultStatus.PASS
        dropped = batch.results["big"]
        assert dropped.status == ResultStatus.TIMEOUT
        assert dropped.data["reason"] == "dropped: does not fit batch deadline"
        assert dropped.data["timeout_strategy"] == "deadline"
        assert big.call_count == 0

    def test_jobs_after_execution_timeout_not_started(self, shared_probe, engine_factory, fast_config):
        """Test that jobs reached after the batch budget get timeout results."""
        shared_probe("slow", delay=0.3)
        late = shared_probe("late")

        engine = engine_factory(fast_config(execution_timeout=0.1))
        batch = engine.execute_batch([
            job("slow", priority=300, options={"retries": False}),
            job("late", priority=100),
        ])

        assert batch.results["slow"].status == ResultStatus.TIMEOUT
        assert batch.results["late"].status == ResultStatus.TIMEOUT
        assert batch.results["late"].data["reason"] == "batch deadline exceeded"
        assert late.call_count == 0

    def test_running_job_capped_by_execution_timeout(self, shared_probe, engine_factory, fast_config):
        """Test that a job started inside the budget stops at the budget, not its own timeout."""
        slow = shared_probe("slow", delay=3.0)

        engine = engine_factory(fast_config(execution_timeout=0.3))
        start = time.perf_counter()
        batch = engine.execute_batch([job("slow")])

        assert time.perf_counter() - start < 1.0
        result = batch.results["slow"]
        assert result.status == ResultStatus.TIMEOUT
        assert result.data["timeout_limit"] <= 0.3
        # No retry is started once the budget is spent
        assert slow.call_count == 1

    def test_deadline_caps_running_job(self, shared_probe, engine_factory):
        """Test that an explicit deadline shorter than execution_timeout caps the job."""
        shared_probe("slow", delay=3.0)

        start = time.perf_counter()
        batch = engine_factory().execute_batch([job("slow", estimated_duration=0.1)], deadline=0.3)

        assert time.perf_counter() - start < 1.0
        assert batch.results["slow"].status == ResultStatus.TIMEOUT

    def test_retry_backoff_not_started_past_budget(self, shared_probe, engine_factory, fast_config):
        """Test that a retry whose backoff ends after the budget is not attempted."""
        flaky = shared_probe("flaky", statuses=["error", "pass"])

        engine = engine_factory(fast_config(execution_timeout=0.3))
        start = time.perf_counter()
        batch = engine.execute_batch([job("flaky", options={"retry_delay": 1.0})])

        assert time.perf_counter() - start < 0.9
        assert batch.results["flaky"].status == ResultStatus.ERROR
        assert flaky.call_count == 1


class TestConvenienceAndStatistics:
    """Test probe-name batches and statistics."""

    def test_execute_probes(self, shared_probe, engine_factory):
        """Test running named probes against one target."""
        shared_probe("ssl_check")
        shared_probe("header_check", statuses=["warning"])
        batch = engine_factory().execute_probes(["ssl_check", "header_check"], "https://example.com")

        assert batch.target == "https://example.com"
        assert batch.name == "Probes on https://example.com"
        assert {k: r.status.value for k, r in batch.results.items()} == {"ssl_check": "pass", "header_check": "warning"}

    def test_execute_category_and_tag(self, registry, engine_factory):
        """Test selection by category and tag, skipping disabled probes."""
        registry.register("tls", MockProbe, category="security", tags=["tls"])
        registry.register("hsts", MockProbe, category="security", tags=["http"])
        registry.register("cert_expiry", MockProbe, category="security", tags=["tls"])
        registry.disable("cert_expiry")
        engine = engine_factory()

        assert set(engine.execute_category("security", "example.com").results) == {"tls", "hsts"}
        assert set(engine.execute_tag("tls", "example.com").results) == {"tls"}

    def test_batch_target_multiple(self, engine_factory):
        """Test the batch target for mixed targets."""
        batch = engine_factory().execute_batch([job("a", "mock", target="a.example"), job("b", "mock", target="b.example")])
        assert batch.target == "multiple"

    def test_statistics(self, shared_probe, engine_factory):
        """Test execution, retry, timeout, pool and graph statistics."""
        shared_probe("flaky", statuses=["error", "pass"])
        engine = engine_factory()
        engine.execute_batch([job("flaky"), job("m", "mock", deps=("flaky",))])

        assert engine.get_execution_statistics()["flaky"]["status_counts"] == {"pass": 1}
        assert engine.get_retry_statistics()["global"]["successful_retries"] == 1
        assert engine.get_timeout_statistics()["total_executions"] == 3
        assert engine.get_pool_stats()["in_use"] == 0
        assert engine.get_graph_stats()["total_edges"] == 1

        engine.reset_statistics()
        assert engine.get_execution_statistics() == {}
        assert engine.get_timeout_statistics()["total_executions"] == 0
