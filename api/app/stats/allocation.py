"""Typed traffic allocation: variant name -> percentage of traffic.

A ``TrafficAllocation`` can only be built through ``validate`` (or
``even_split``), so any instance in hand is known to sum to 100 within the
configured tolerance.  Call sites never add percentages up themselves.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping

from app.core.errors import InvalidAllocationError

DEFAULT_TOLERANCE = 0.01


class TrafficAllocation(Mapping[str, float]):
    """Immutable, validated mapping of variant name to traffic percentage.

    Iteration order is alphabetical by variant name, which is also the
    order ``pick`` walks when turning a uniform draw into a variant.
    """

    __slots__ = ("_shares",)

    def __init__(self, shares: dict[str, float]) -> None:
        # Use ``validate`` instead; the constructor trusts its input.
        self._shares = {name: float(shares[name]) for name in sorted(shares)}

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def validate(
        cls,
        shares: Mapping[str, float],
        variant_names: Iterable[str] | None = None,
        tolerance: float = DEFAULT_TOLERANCE,
    ) -> TrafficAllocation:
        """Build an allocation, enforcing the sum and key invariants.

        Parameters
        ----------
        shares : Mapping[str, float]
            Variant name to percentage.
        variant_names : Iterable[str] | None
            When given, the allocation keys must equal this set exactly.
        tolerance : float
            Allowed absolute deviation of the total from 100.

        Raises
        ------
        InvalidAllocationError
            If the mapping is empty, has a negative or non-finite share,
            does not sum to 100, or does not match ``variant_names``.
        """
        if not shares:
            raise InvalidAllocationError("Traffic allocation is empty: experiment has no variants")

        for name, pct in shares.items():
            if pct is None or not math.isfinite(float(pct)) or float(pct) < 0:
                raise InvalidAllocationError(f"Invalid percentage {pct!r} for variant {name!r}")

        total = math.fsum(float(p) for p in shares.values())
        if abs(total - 100.0) > tolerance:
            raise InvalidAllocationError(f"Traffic allocation must sum to 100, got {total:g}")

        if variant_names is not None:
            expected = set(variant_names)
            actual = set(shares)
            if expected != actual:
                missing = sorted(expected - actual)
                unknown = sorted(actual - expected)
                raise InvalidAllocationError(
                    f"Traffic allocation keys do not match variants (missing={missing}, unknown={unknown})"
                )

        return cls(dict(shares))

    @classmethod
    def even_split(cls, variant_names: Iterable[str]) -> TrafficAllocation:
        """Equal share for every variant, e.g. 50/50 or 33.33/33.33/33.33."""
        names = sorted(set(variant_names))
        if not names:
            raise InvalidAllocationError("Cannot split traffic across zero variants")
        share = 100.0 / len(names)
        return cls({name: share for name in names})

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def pick(self, draw: float) -> str:
        """Map a uniform draw in [0, 100) to a variant name.

        Walks variants alphabetically accumulating percentages and returns
        the first whose cumulative boundary exceeds ``draw``.
        """
        if not 0.0 <= draw < 100.0:
            raise ValueError("draw must be in [0, 100)")
        cumulative = 0.0
        for name, pct in self._shares.items():
            cumulative += pct
            if draw < cumulative:
                return name
        # Rounding can leave the last boundary a hair below 100
        return next(reversed(self._shares))

    # ------------------------------------------------------------------
    # Mapping protocol
    # ------------------------------------------------------------------

    def __getitem__(self, name: str) -> float:
        return self._shares[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._shares)

    def __len__(self) -> int:
        return len(self._shares)

    def to_dict(self) -> dict[str, float]:
        return dict(self._shares)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v:g}" for k, v in self._shares.items())
        return f"TrafficAllocation({inner})"
