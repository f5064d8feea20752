"""Aggregation strategies: fold accepted reports into a single answer.

Each agreement names one strategy. A strategy is bound to the agreement's
oracle list and exposes two pure functions over the accepted-report sequence:

- ``admit(prior, new)`` decides whether a new report may join the sequence.
- ``finalize(reports)`` returns the current value and whether the request is
  complete.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from coordinator.errors import MalformedAgreement
from coordinator.models.agreement import AggregatorKind
from coordinator.models.types import UINT256_MAX


@dataclass(frozen=True)
class Report:
    node: str
    value: int
    received_order: int


@dataclass(frozen=True)
class Aggregate:
    value: int | None
    complete: bool


def running_mean(values: Sequence[int]) -> int:
    """Floor of the arithmetic mean of uint256 values without forming their sum.

    Each value contributes ``value // n`` to the running quotient and
    ``value % n`` to a remainder that is carried into the quotient whenever it
    reaches ``n``. The quotient never exceeds the true mean and the remainder
    stays below ``2 * n``, so no intermediate leaves the uint256 range.
    """
    n = len(values)
    if n == 0:
        raise ValueError("Cannot average an empty sequence")
    quotient = 0
    remainder = 0
    for value in values:
        if not 0 <= value <= UINT256_MAX:
            raise ValueError(f"Value out of uint256 range: {value}")
        quotient += value // n
        remainder += value % n
        quotient += remainder // n
        remainder %= n
    return quotient


class AggregationStrategy:
    kind: AggregatorKind

    def __init__(self, oracles: Sequence[str]) -> None:
        self.oracles = tuple(oracles)
        self.check_oracles()

    def check_oracles(self) -> None:
        if not self.oracles:
            raise MalformedAgreement("Agreement must list at least one oracle")

    def admit(self, prior: Sequence[Report], new: Report) -> bool:
        raise NotImplementedError

    def finalize(self, reports: Sequence[Report]) -> Aggregate:
        raise NotImplementedError


class PassThroughStrategy(AggregationStrategy):
    """Single-node agreements: the first accepted report is the answer."""

    kind = AggregatorKind.PASS_THROUGH

    def check_oracles(self) -> None:
        if len(self.oracles) != 1:
            raise MalformedAgreement(
                f"Pass-through aggregation requires exactly one oracle, got {len(self.oracles)}"
            )

    def admit(self, prior: Sequence[Report], new: Report) -> bool:
        return not prior

    def finalize(self, reports: Sequence[Report]) -> Aggregate:
        if len(reports) != 1:
            return Aggregate(value=None, complete=False)
        return Aggregate(value=reports[0].value, complete=True)


class MeanStrategy(AggregationStrategy):
    """Completes once every listed oracle has reported; answer is the floor mean."""

    kind = AggregatorKind.MEAN

    def admit(self, prior: Sequence[Report], new: Report) -> bool:
        return new.node in self.oracles and all(r.node != new.node for r in prior)

    def finalize(self, reports: Sequence[Report]) -> Aggregate:
        reported = {r.node for r in reports}
        if reported != set(self.oracles):
            return Aggregate(value=None, complete=False)
        return Aggregate(value=running_mean([r.value for r in reports]), complete=True)


STRATEGIES: dict[AggregatorKind, type[AggregationStrategy]] = {
    AggregatorKind.PASS_THROUGH: PassThroughStrategy,
    AggregatorKind.MEAN: MeanStrategy,
}


def build_strategy(kind: AggregatorKind, oracles: Sequence[str]) -> AggregationStrategy:
    """Instantiate the strategy for an agreement. Raises MalformedAgreement if unsuitable."""
    return STRATEGIES[kind](oracles)
