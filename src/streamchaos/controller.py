# src/streamchaos/controller.py
"""The fault scheduler and step loop.

Each step draws one action from the weighted policy table, applies it to
the server lifecycle manager or the client pool, then validates: every
client that read something since the previous step has its observations
merged into the durability model. Validation is synchronous and happens on
every step, never periodically.

All randomness (action draw, server choice, client choice) comes from one
random.Random seeded with the run seed, so a schedule replays from its seed.
Wall-clock effects (which reads time out while a server is frozen) are not
part of the seed, so replay reproduces the schedule, not every outcome.
"""

from __future__ import annotations

import itertools
import random as random_module
import time
from collections.abc import Callable
from dataclasses import dataclass

from streamchaos.clients import ClientPool
from streamchaos.core.logging import get_logger
from streamchaos.durability import DurabilityModel
from streamchaos.errors import ConflictingObservation, DurabilityViolation, ViolationReport
from streamchaos.lifecycle import ServerLifecycleManager
from streamchaos.scheduler import ActionSelector
from streamchaos.types import LIFECYCLE_ACTIONS, Action, ActionWeights, RunConfig

logger = get_logger(__name__)


@dataclass
class RunStats:
    """Counters for progress lines and the end-of-run summary."""

    steps: int = 0
    published: int = 0
    publish_failures: int = 0
    consumed: int = 0
    consume_misses: int = 0
    restarts: int = 0
    pauses: int = 0
    resumes: int = 0


class ClusterController:
    """Drives the step loop against one cluster.

    With a ServerLifecycleManager attached the controller injects restart,
    pause and resume faults itself. Without one (an externally managed
    cluster) only publish and consume are ever scheduled.
    """

    def __init__(
        self,
        pool: ClientPool,
        *,
        run: RunConfig,
        weights: ActionWeights,
        servers: ServerLifecycleManager | None = None,
        model: DurabilityModel | None = None,
        rng: random_module.Random | None = None,
        time_func: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            pool: Client pool with its stream and consumers already created.
            run: Schedule parameters; run.seed must be resolved.
            weights: Fault-injection policy.
            servers: Local lifecycle manager, or None for an external cluster.
            model: Durability model (default: a fresh one).
            rng: Random instance for testing (default: Random(run.seed)).
            time_func: Time function for testing (default: time.monotonic).

        Raises:
            ValueError: If run.seed is not set.
        """
        if run.seed is None:
            raise ValueError("run.seed must be resolved before the controller starts")
        self._pool = pool
        self._run = run
        self._seed = run.seed
        self._servers = servers
        self._model = model if model is not None else DurabilityModel()
        self._rng = rng if rng is not None else random_module.Random(self._seed)
        self._time_func = time_func if time_func is not None else time.monotonic
        self._selector = ActionSelector(
            weights.as_table(),
            rng=self._rng,
            exclude=LIFECYCLE_ACTIONS if servers is None else (),
        )
        self._unvalidated: set[int] = set()
        self._stats = RunStats()
        self._start_time = self._time_func()
        self._handlers: dict[Action, Callable[[], None]] = {
            Action.RESTART: self.restart_server,
            Action.PAUSE: self.pause_server,
            Action.RESUME: self.resume_server,
            Action.PUBLISH: self.publish,
            Action.CONSUME: self.consume,
        }

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def model(self) -> DurabilityModel:
        return self._model

    @property
    def stats(self) -> RunStats:
        return self._stats

    @property
    def selector(self) -> ActionSelector:
        return self._selector

    @property
    def unvalidated(self) -> frozenset[int]:
        """Clients with observations not yet merged into the model."""
        return frozenset(self._unvalidated)

    @property
    def elapsed_sec(self) -> float:
        return self._time_func() - self._start_time

    # -------------------------------------------------------------------------
    # Step loop
    # -------------------------------------------------------------------------

    def step(self) -> Action:
        """Take one action, then validate.

        Raises:
            DurabilityViolation: If validation finds a rebound position.
        """
        action = self._selector.select()
        self._handlers[action]()
        self.validate()
        self._stats.steps += 1
        if self._stats.steps % self._run.progress_interval == 0:
            self._log_progress()
        return action

    def run(self, steps: int | None = None) -> RunStats:
        """Run ``steps`` steps, or forever when ``steps`` is None.

        Returns:
            Counters for the completed run.

        Raises:
            DurabilityViolation: On the step where a conflict is drained.
        """
        logger.info(
            "workload_started",
            seed=self._seed,
            steps="unbounded" if steps is None else steps,
            clients=len(self._pool),
            servers=len(self._servers) if self._servers is not None else "external",
        )
        schedule = itertools.count() if steps is None else range(steps)
        for _ in schedule:
            self.step()
        return self._stats

    def _log_progress(self) -> None:
        stats = self._stats
        logger.info(
            "progress",
            step=stats.steps,
            elapsed_sec=round(self.elapsed_sec, 3),
            positions=len(self._model),
            published=stats.published,
            consumed=stats.consumed,
            paused=sorted(self._servers.paused_indices) if self._servers is not None else [],
        )

    # -------------------------------------------------------------------------
    # Fault actions
    # -------------------------------------------------------------------------

    def restart_server(self) -> None:
        """Kill a random server and bring it back with empty storage."""
        if self._servers is None or self._run.no_kill:
            return
        index = self._rng.randrange(len(self._servers))
        logger.info("restarting_server", index=index)
        self._servers.restart(index)
        self._stats.restarts += 1

    def pause_server(self) -> None:
        """Freeze a random running server. No-op when all are paused."""
        if self._servers is None or self._servers.all_paused:
            return
        index = self._rng.choice(sorted(self._servers.running_indices))
        logger.info("pausing_server", index=index)
        if self._servers.pause(index):
            self._stats.pauses += 1

    def resume_server(self) -> None:
        """Unfreeze a random paused server. No-op when none are paused."""
        if self._servers is None:
            return
        paused = self._servers.paused_indices
        if not paused:
            return
        index = self._rng.choice(sorted(paused))
        logger.info("resuming_server", index=index)
        if self._servers.resume(index):
            self._stats.resumes += 1

    # -------------------------------------------------------------------------
    # Traffic actions
    # -------------------------------------------------------------------------

    def publish(self) -> None:
        if self._pool.publish(self._rng, timeout=self._run.publish_timeout_sec) is None:
            self._stats.publish_failures += 1
        else:
            self._stats.published += 1

    def consume(self) -> None:
        index = self._pool.consume(self._rng, timeout=self._run.consume_timeout_sec)
        if index is None:
            self._stats.consume_misses += 1
            return
        self._stats.consumed += 1
        self._unvalidated.add(index)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """Drain every dirty client into the durability model.

        Raises:
            DurabilityViolation: If any drained observation rebinds a position.
        """
        dirty = sorted(self._unvalidated)
        self._unvalidated.clear()

        for index in dirty:
            observed = self._pool.drain(index)
            try:
                self._model.merge(observed)
            except ConflictingObservation as conflict:
                report = ViolationReport(
                    position=conflict.position,
                    first_value=conflict.first,
                    second_value=conflict.second,
                    seed=self._seed,
                    elapsed_sec=self.elapsed_sec,
                    step=self._stats.steps,
                )
                logger.critical(
                    "durability_violation",
                    client=index,
                    stream_sequence=report.position,
                    first_observed_value=report.first_value,
                    second_observed_value=report.second_value,
                    seed=report.seed,
                    elapsed_sec=round(report.elapsed_sec, 3),
                    step=report.step,
                )
                raise DurabilityViolation(report) from conflict
