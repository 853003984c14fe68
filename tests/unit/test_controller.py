# tests/unit/test_controller.py
"""Unit tests for ClusterController.

Tests cover:
- Full runs against a healthy in-memory cluster
- Detection of a synthetic durability bug
- Fault action rules (no-kill, pause/resume no-ops)
- Replay determinism by seed
"""

from __future__ import annotations

import random

import pytest
from structlog.testing import capture_logs

from streamchaos.clients import ClientPool
from streamchaos.controller import ClusterController
from streamchaos.errors import DurabilityViolation
from streamchaos.identity import IdGenerator, encode_payload_id
from streamchaos.types import Action, ActionWeights, RemoteConfig, RunConfig
from tests.fixtures.broker import FakeBroker, FakeCluster, FakeServerManager, fake_addresses


def _make_pool(broker: FakeBroker, addresses: tuple[str, ...], clients: int = 3) -> ClientPool:
    return ClientPool.create(
        broker,
        addresses,
        stream="exercise_stream",
        clients=clients,
        replicas=1,
        id_source=IdGenerator().next_id,
    )


def _make_controller(
    cluster: FakeCluster,
    *,
    seed: int = 0,
    no_kill: bool = False,
    weights: ActionWeights | None = None,
    managed: bool = True,
    progress_interval: int = 1000,
) -> tuple[ClusterController, FakeServerManager]:
    servers = FakeServerManager(cluster, 3)
    pool = _make_pool(FakeBroker(cluster), servers.addresses)
    controller = ClusterController(
        pool,
        run=RunConfig(seed=seed, no_kill=no_kill, progress_interval=progress_interval),
        weights=weights if weights is not None else ActionWeights(),
        servers=servers if managed else None,  # type: ignore[arg-type]
    )
    return controller, servers


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    """Tests for controller setup."""

    def test_seed_required(self, fake_cluster: FakeCluster) -> None:
        pool = _make_pool(FakeBroker(fake_cluster), fake_addresses(3))
        with pytest.raises(ValueError, match="seed"):
            ClusterController(pool, run=RunConfig(), weights=ActionWeights())

    def test_external_cluster_excludes_lifecycle_actions(self, fake_cluster: FakeCluster) -> None:
        controller, _ = _make_controller(fake_cluster, managed=False)
        assert {s.action for s in controller.selector.table} == {Action.PUBLISH, Action.CONSUME}

    def test_managed_cluster_keeps_lifecycle_actions(self, fake_cluster: FakeCluster) -> None:
        controller, _ = _make_controller(fake_cluster)
        assert len(controller.selector.table) == 5


# =============================================================================
# Healthy runs
# =============================================================================


class TestHealthyRun:
    """A correct cluster never produces a violation."""

    def test_fixed_seed_pause_only_run(self, fake_cluster: FakeCluster) -> None:
        """Seed 0, no restarts, 1000 steps completes cleanly."""
        controller, servers = _make_controller(fake_cluster, seed=0, no_kill=True)
        stats = controller.run(1000)

        assert stats.steps == 1000
        assert stats.published > 0
        assert stats.consumed > 0
        assert stats.restarts == 0
        assert servers.restarted == []
        assert len(controller.model) > 0

    def test_validation_happens_every_step(self, fake_cluster: FakeCluster) -> None:
        """Nothing consumed is left unvalidated after a step returns."""
        controller, _ = _make_controller(fake_cluster, seed=3)
        for _ in range(300):
            controller.step()
            assert controller.unvalidated == frozenset()

    def test_zero_steps(self, fake_cluster: FakeCluster) -> None:
        controller, _ = _make_controller(fake_cluster)
        assert controller.run(0).steps == 0

    def test_model_matches_published_ids(self, fake_cluster: FakeCluster) -> None:
        """Every validated position maps to the id published at that position."""
        controller, _ = _make_controller(fake_cluster, seed=11, managed=False)
        controller.run(500)
        log = fake_cluster.streams["exercise_stream"]
        for position, payload_id in controller.model.snapshot().items():
            assert log[position - 1] == encode_payload_id(payload_id)

    def test_external_run_schedules_only_traffic(self, fake_cluster: FakeCluster) -> None:
        controller, servers = _make_controller(fake_cluster, managed=False, weights=RemoteConfig().weights)
        actions = {controller.step() for _ in range(200)}
        assert actions <= {Action.PUBLISH, Action.CONSUME}
        assert servers.calls == []

    def test_progress_logged_at_interval(self, fake_cluster: FakeCluster) -> None:
        controller, _ = _make_controller(fake_cluster, progress_interval=10)
        with capture_logs() as logs:
            controller.run(30)
        progress = [entry for entry in logs if entry["event"] == "progress"]
        assert [entry["step"] for entry in progress] == [10, 20, 30]


# =============================================================================
# Violation detection
# =============================================================================


class TestViolation:
    """A rebound position is reported on the step it is drained."""

    def test_divergent_read_detected(self, fake_cluster: FakeCluster) -> None:
        controller, servers = _make_controller(
            fake_cluster,
            seed=7,
            managed=False,
            weights=ActionWeights(restart=0, pause=0, resume=0, publish=3, consume=7),
        )
        # Reads of position 1 through server 1 return a different payload
        fake_cluster.diverge(1, encode_payload_id(999), servers.addresses[1])

        with pytest.raises(DurabilityViolation) as exc_info:
            controller.run(5000)

        report = exc_info.value.report
        assert report.position == 1
        assert {report.first_value, report.second_value} == {0, 999}
        assert report.seed == 7
        assert report.step == controller.stats.steps
        # The model keeps the first binding
        assert controller.model.get(1) == report.first_value

    def test_violation_logged_as_critical(self, fake_cluster: FakeCluster) -> None:
        controller, servers = _make_controller(fake_cluster, seed=7, managed=False)
        fake_cluster.diverge(1, encode_payload_id(999), servers.addresses[2])
        with capture_logs() as logs, pytest.raises(DurabilityViolation):
            controller.run(5000)
        critical = [entry for entry in logs if entry["log_level"] == "critical"]
        assert len(critical) == 1
        assert critical[0]["event"] == "durability_violation"
        assert critical[0]["stream_sequence"] == 1

    def test_burn_in_ends_only_on_violation(self, fake_cluster: FakeCluster) -> None:
        """run(None) keeps stepping until the divergent read is drained."""
        controller, servers = _make_controller(
            fake_cluster,
            seed=11,
            managed=False,
            weights=ActionWeights(restart=0, pause=0, resume=0, publish=3, consume=7),
        )
        fake_cluster.diverge(1, encode_payload_id(4242), servers.addresses[0])

        with pytest.raises(DurabilityViolation) as exc_info:
            controller.run(None)

        assert exc_info.value.report.position == 1
        assert 4242 in {exc_info.value.report.first_value, exc_info.value.report.second_value}
        assert controller.stats.steps > 0


# =============================================================================
# Fault actions
# =============================================================================


class TestFaultActions:
    """Tests for restart/pause/resume rules."""

    def test_no_kill_never_restarts(self, fake_cluster: FakeCluster) -> None:
        weights = ActionWeights(restart=40, pause=0, resume=0, publish=30, consume=30)
        controller, servers = _make_controller(fake_cluster, no_kill=True, weights=weights)
        controller.run(200)
        assert servers.restarted == []
        assert controller.stats.restarts == 0

    def test_restarts_when_enabled(self, fake_cluster: FakeCluster) -> None:
        weights = ActionWeights(restart=40, pause=0, resume=0, publish=30, consume=30)
        controller, servers = _make_controller(fake_cluster, weights=weights)
        controller.run(200)
        assert servers.restarted
        assert controller.stats.restarts == len(servers.restarted)
        assert set(servers.restarted) <= {0, 1, 2}

    def test_pause_is_noop_when_all_paused(self, fake_cluster: FakeCluster) -> None:
        controller, servers = _make_controller(fake_cluster)
        for index in range(3):
            servers.pause(index)
        servers.calls.clear()
        controller.pause_server()
        assert servers.calls == []
        assert controller.stats.pauses == 0

    def test_resume_is_noop_when_none_paused(self, fake_cluster: FakeCluster) -> None:
        controller, servers = _make_controller(fake_cluster)
        controller.resume_server()
        assert servers.calls == []

    def test_pause_picks_running_server(self, fake_cluster: FakeCluster) -> None:
        controller, servers = _make_controller(fake_cluster)
        servers.pause(0)
        servers.pause(1)
        controller.pause_server()
        assert servers.paused_indices == frozenset({0, 1, 2})
        assert controller.stats.pauses == 1

    def test_resume_picks_paused_server(self, fake_cluster: FakeCluster) -> None:
        controller, servers = _make_controller(fake_cluster)
        servers.pause(2)
        controller.resume_server()
        assert servers.paused_indices == frozenset()
        assert controller.stats.resumes == 1


# =============================================================================
# Replay
# =============================================================================


class TestReplay:
    """Same seed, same schedule."""

    def test_same_seed_same_schedule(self) -> None:
        first, first_servers = _make_controller(FakeCluster(), seed=1234)
        second, second_servers = _make_controller(FakeCluster(), seed=1234)

        assert [first.step() for _ in range(500)] == [second.step() for _ in range(500)]
        assert first_servers.calls == second_servers.calls

    def test_different_seed_different_schedule(self) -> None:
        first, _ = _make_controller(FakeCluster(), seed=1)
        second, _ = _make_controller(FakeCluster(), seed=2)
        assert [first.step() for _ in range(500)] != [second.step() for _ in range(500)]

    def test_explicit_rng_overrides_seed(self, fake_cluster: FakeCluster) -> None:
        pool = _make_pool(FakeBroker(fake_cluster), fake_addresses(3))
        rng = random.Random(5)
        controller = ClusterController(pool, run=RunConfig(seed=1), weights=ActionWeights(), rng=rng)
        assert controller.seed == 1
        controller.step()
        # The controller consumed draws from the injected rng
        assert rng.getstate() != random.Random(5).getstate()
