# src/streamchaos/scheduler.py
"""Weighted action selection for the fault schedule.

The policy is an explicit table of ActionSpec rows; each step makes exactly
one categorical draw against it. Keeping the table as data (instead of
nested range checks) makes the policy inspectable and testable on its own:

    selector = ActionSelector(ActionWeights().as_table(), rng=random.Random(0))
    action = selector.select()
"""

from __future__ import annotations

import random as random_module
from collections.abc import Iterable

from streamchaos.types import Action, ActionSpec


class ActionSelector:
    """Single categorical draw over a weighted action table.

    Rows with zero weight are dropped up front and can never be selected.
    The selector shares its Random with the rest of the controller, so a
    whole run replays from one seed.
    """

    def __init__(
        self,
        table: Iterable[ActionSpec],
        *,
        rng: random_module.Random | None = None,
        exclude: Iterable[Action] = (),
    ) -> None:
        """Initialize the selector.

        Args:
            table: Policy rows. Order only matters for replay determinism.
            rng: Random instance (default: creates new Random instance).
            exclude: Actions to drop regardless of weight (e.g. lifecycle
                actions when no servers are managed locally).

        Raises:
            ValueError: If no row with positive weight remains.
        """
        excluded = frozenset(exclude)
        self._table: tuple[ActionSpec, ...] = tuple(s for s in table if s.weight > 0 and s.action not in excluded)
        if not self._table:
            raise ValueError("action table has no action with positive weight")
        self._total_weight = sum(s.weight for s in self._table)
        self._rng = rng if rng is not None else random_module.Random()

    @property
    def table(self) -> tuple[ActionSpec, ...]:
        """The effective (positive-weight) policy table."""
        return self._table

    @property
    def total_weight(self) -> float:
        """Sum of all effective weights."""
        return self._total_weight

    def probability(self, action: Action) -> float:
        """Probability that a single draw returns ``action``."""
        weight = sum(s.weight for s in self._table if s.action is action)
        return weight / self._total_weight

    def select(self) -> Action:
        """Draw one action proportionally to its weight."""
        roll = self._rng.random() * self._total_weight

        threshold = 0.0
        for spec in self._table:
            threshold += spec.weight
            if roll < threshold:
                return spec.action

        # Float accumulation can leave threshold a hair below total_weight.
        return self._table[-1].action
