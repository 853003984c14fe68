# src/streamchaos/types.py
"""Configuration models and shared value types.

Configuration models are frozen Pydantic models (immutable for the life of
a run). The scheduler's currency types (Action, ActionSpec) are plain
frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

# =============================================================================
# Scheduler Types
# =============================================================================


class Action(Enum):
    """Everything the controller can do in a single step."""

    RESTART = "restart"
    PAUSE = "pause"
    RESUME = "resume"
    PUBLISH = "publish"
    CONSUME = "consume"


LIFECYCLE_ACTIONS: frozenset[Action] = frozenset({Action.RESTART, Action.PAUSE, Action.RESUME})


@dataclass(frozen=True, slots=True)
class ActionSpec:
    """One row of the fault-injection policy table.

    Attributes:
        action: The action this row schedules.
        weight: Relative weight; the probability of the action is
            weight / sum(weights). Zero disables the action.
    """

    action: Action
    weight: float


class ServerState(Enum):
    """Lifecycle state of a managed broker process."""

    RUNNING = "running"
    PAUSED = "paused"


# =============================================================================
# Configuration Models
# =============================================================================


class ActionWeights(BaseModel):
    """Relative weights of the step actions.

    Defaults are buckets over 0..1000: restart 0-5,
    pause 6-40, resume 41-90, publish 91-200, consume 201-999.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    restart: float = Field(default=6, ge=0, description="Destructive restart weight")
    pause: float = Field(default=35, ge=0, description="SIGSTOP weight")
    resume: float = Field(default=50, ge=0, description="SIGCONT weight")
    publish: float = Field(default=110, ge=0, description="Publish weight")
    consume: float = Field(default=799, ge=0, description="Timed consume weight")

    @model_validator(mode="after")
    def validate_traffic_majority(self) -> ActionWeights:
        """Read/write traffic must dominate so the model gathers enough samples."""
        traffic = self.publish + self.consume
        total = traffic + self.restart + self.pause + self.resume
        if total <= 0:
            raise ValueError("at least one action weight must be positive")
        if traffic * 2 <= total:
            raise ValueError(f"publish + consume ({traffic:g}) must be a strict majority of the total weight ({total:g})")
        return self

    def as_table(self) -> tuple[ActionSpec, ...]:
        """The weights as an ordered policy table."""
        return (
            ActionSpec(Action.RESTART, self.restart),
            ActionSpec(Action.PAUSE, self.pause),
            ActionSpec(Action.RESUME, self.resume),
            ActionSpec(Action.PUBLISH, self.publish),
            ActionSpec(Action.CONSUME, self.consume),
        )


class BrokerConfig(BaseModel):
    """How broker processes are launched and where their files live."""

    model_config = {"frozen": True, "extra": "forbid"}

    path: str = Field(
        default="nats-server",
        description="Path to (or name on PATH of) the broker binary",
    )
    base_port: int = Field(
        default=44000,
        gt=0,
        le=65535,
        description="Client port of server 0; server i listens on base_port + i",
    )
    storage_root: Path = Field(
        default=Path("."),
        description="Directory under which jetstream_test_<i> storage dirs are created",
    )
    conf_dir: Path = Field(
        default=Path("confs"),
        description="Directory holding supercluster_<i>.conf per-node configs",
    )
    extra_args: tuple[str, ...] = Field(
        default=("-V", "-D"),
        description="Additional flags (verbosity) passed to every broker process",
    )
    startup_timeout_sec: float = Field(
        default=10.0,
        gt=0,
        description="Bounded wait for the cluster to accept connections at startup",
    )
    startup_settle_sec: float = Field(
        default=0.5,
        ge=0,
        description="Delay after every port accepts before checking that no broker has exited",
    )
    shutdown_timeout_sec: float = Field(
        default=5.0,
        gt=0,
        description="Wait after SIGTERM before falling back to SIGKILL",
    )


class ClusterConfig(BaseModel):
    """Cluster shape and the shared stream."""

    model_config = {"frozen": True, "extra": "forbid"}

    servers: int = Field(default=3, gt=0, le=64, description="Number of broker processes")
    clients: int = Field(default=3, gt=0, le=255, description="Number of simulated clients")
    replicas: int = Field(default=1, gt=0, le=5, description="Replica count of the test stream")
    stream: str = Field(
        default="exercise_stream",
        min_length=1,
        description="Name (and subject) of the shared durable stream",
    )

    @model_validator(mode="after")
    def validate_replicas(self) -> ClusterConfig:
        """A stream cannot have more replicas than there are servers."""
        if self.replicas > self.servers:
            raise ValueError(f"replicas ({self.replicas}) must be <= servers ({self.servers})")
        return self


class RunConfig(BaseModel):
    """Schedule parameters for one run."""

    model_config = {"frozen": True, "extra": "forbid"}

    seed: int | None = Field(
        default=None,
        ge=0,
        lt=2**64,
        description="Seed for replaying a fault schedule (random when unset)",
    )
    steps: int = Field(default=10000, ge=0, description="Number of steps to take")
    burn_in: bool = Field(default=False, description="Ignore steps and run until a violation")
    no_kill: bool = Field(default=False, description="Disable destructive restarts")
    consume_timeout_sec: float = Field(
        default=0.01,
        gt=0,
        description="Bounded wait of a single consume",
    )
    publish_timeout_sec: float = Field(
        default=0.5,
        gt=0,
        description="Bounded wait for a publish to be flushed to the socket",
    )
    progress_interval: int = Field(
        default=1000,
        gt=0,
        description="Log a progress line every N steps",
    )


def _default_remote_addresses() -> tuple[str, ...]:
    # 10.20.20.1 is usually the bridge itself, so servers start at .2
    return tuple(f"10.20.20.{n + 1}:4222" for n in range(1, 4))


class RemoteConfig(BaseModel):
    """Settings for validating an externally managed cluster."""

    model_config = {"frozen": True, "extra": "forbid"}

    addresses: tuple[str, ...] = Field(
        default_factory=_default_remote_addresses,
        min_length=1,
        description="host:port of every server in the external cluster",
    )
    warmup_sec: float = Field(
        default=3.0,
        ge=0,
        description="Pause between cluster readiness and workload start",
    )
    weights: ActionWeights = Field(
        default_factory=lambda: ActionWeights(restart=0, pause=0, resume=0, publish=3, consume=7),
        description="Workload mix (lifecycle weights are ignored remotely)",
    )


class ExerciseConfig(BaseModel):
    """Top-level harness configuration.

    Configuration precedence (highest to lowest):
    1. CLI flags
    2. YAML config file
    3. Preset defaults
    4. Built-in defaults
    """

    model_config = {"frozen": True, "extra": "forbid"}

    broker: BrokerConfig = Field(default_factory=BrokerConfig, description="Broker process settings")
    cluster: ClusterConfig = Field(default_factory=ClusterConfig, description="Cluster shape")
    run: RunConfig = Field(default_factory=RunConfig, description="Schedule parameters")
    weights: ActionWeights = Field(default_factory=ActionWeights, description="Fault-injection policy")
    remote: RemoteConfig = Field(default_factory=RemoteConfig, description="External cluster settings")
    preset_name: str | None = Field(
        default=None,
        description="Preset name used to build this config (if any)",
    )
