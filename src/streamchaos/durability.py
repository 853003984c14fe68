# src/streamchaos/durability.py
"""The durability model: first-observed payload per stream position.

We record every (sequence, payload id) pair any consumer reads and ensure
that consumers never observe different payload ids for the same sequence.
The first observation of a position wins; any later observation must
agree with it.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from streamchaos.errors import ConflictingObservation


class DurabilityModel:
    """Single source of truth for position -> payload bindings.

    Bindings are never replaced. A conflicting observation raises before
    the model is touched, so the model never holds two values for a
    position and never absorbs anything after the first conflict.
    """

    def __init__(self) -> None:
        self._observed: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._observed)

    def __contains__(self, position: object) -> bool:
        return position in self._observed

    def get(self, position: int) -> int | None:
        """Payload id bound to ``position``, if any."""
        return self._observed.get(position)

    def snapshot(self) -> dict[int, int]:
        """Copy of all bindings."""
        return dict(self._observed)

    def record(self, position: int, payload_id: int) -> bool:
        """Merge one observation.

        Returns:
            True if the position was newly bound, False if it matched an
            existing binding.

        Raises:
            ConflictingObservation: If ``position`` is bound to a different id.
        """
        existing = self._observed.get(position)
        if existing is None:
            self._observed[position] = payload_id
            return True
        if existing != payload_id:
            raise ConflictingObservation(position, existing, payload_id)
        return False

    def merge(self, observations: Mapping[int, int] | Iterable[tuple[int, int]]) -> int:
        """Merge many observations, stopping at the first conflict.

        Returns:
            Number of newly bound positions.
        """
        pairs = observations.items() if isinstance(observations, Mapping) else observations
        new = 0
        for position, payload_id in pairs:
            if self.record(position, payload_id):
                new += 1
        return new
