# src/streamchaos/errors.py
"""Exception hierarchy for the harness.

Transient broker conditions (consume timeouts, publishes to a frozen node)
are NOT exceptions here: they are ordinary control flow handled inside the
client pool. Only conditions that end a run are modelled as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass


class StreamChaosError(Exception):
    """Base class for all harness errors."""


class ClusterSetupError(StreamChaosError):
    """The cluster could not be brought up (binary missing, port never ready,
    stream or consumer creation failed).

    A run cannot proceed without a valid cluster, so this is always fatal.
    """


class ConflictingObservation(StreamChaosError):
    """Raised by the durability model when a position is rebound.

    Attributes:
        position: Stream sequence that was observed twice.
        first: Payload id recorded first for that position.
        second: Different payload id observed later.
    """

    def __init__(self, position: int, first: int, second: int) -> None:
        super().__init__(f"stream sequence {position} observed as {first} and later as {second}")
        self.position = position
        self.first = first
        self.second = second


@dataclass(frozen=True, slots=True)
class ViolationReport:
    """Everything needed to reproduce a durability violation.

    Attributes:
        position: Conflicting stream sequence.
        first_value: Payload id first bound to the position.
        second_value: Conflicting payload id.
        seed: Seed of the schedule that produced the violation.
        elapsed_sec: Wall time since the controller started.
        step: Zero-based step on which the conflict was drained.
    """

    position: int
    first_value: int
    second_value: int
    seed: int
    elapsed_sec: float
    step: int

    def render(self) -> str:
        """Human-readable multi-line report."""
        return (
            f"Correctness violation detected after running for {self.elapsed_sec:.3f}s (step {self.step}).\n"
            "Consumers received different values for the same stream sequence.\n"
            f"    stream sequence: {self.position}\n"
            f"    first observed value: {self.first_value}\n"
            f"    second observed value: {self.second_value}\n"
            f"    schedule replay seed: {self.seed}"
        )


class DurabilityViolation(StreamChaosError):
    """Two observations of the same stream position disagreed.

    This is the condition the harness exists to find. It is never retried or
    suppressed; the CLI turns it into exit status 1.
    """

    def __init__(self, report: ViolationReport) -> None:
        super().__init__(report.render())
        self.report = report


class BrokerError(StreamChaosError):
    """A broker operation failed at the transport or API level.

    The client pool decides whether this is transient (publish, consume) or
    fatal (stream and consumer bootstrap).
    """


class MalformedPayload(StreamChaosError):
    """A consumed message body is not an 8-byte payload id.

    Something other than the harness published on the stream subject, so
    the durability model cannot interpret the position. Fatal, but distinct
    from a durability violation; the CLI turns it into exit status 3.

    Attributes:
        client: Index of the consuming client.
        sequence: Stream sequence of the offending message.
        size: Length of the body in bytes.
    """

    def __init__(self, client: int, sequence: int, size: int) -> None:
        super().__init__(f"client {client} consumed stream sequence {sequence} with a {size}-byte body (expected 8)")
        self.client = client
        self.sequence = sequence
        self.size = size
