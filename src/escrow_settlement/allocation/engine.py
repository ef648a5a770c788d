"""Integer splitting of a pot among weighted recipients.

All functions are pure and deterministic: identical inputs produce identical
output, in identical order. Totals always equal the pot exactly; a result
that does not is an :class:`InvariantViolation`, never a rounding fix-up.

Proportional shares are computed with exact rational arithmetic so that
large lamport pots do not drift through float rounding.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from fractions import Fraction

from escrow_settlement.errors import InvariantViolation, ValidationError

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class Share:
    """One recipient's integer share of a pot."""

    recipient: str
    amount: int
    weight: float


WeightTransform = Callable[[float], float]


def _check_pot(pot: int) -> None:
    if isinstance(pot, bool) or not isinstance(pot, int):
        raise ValidationError("Pot must be an integer number of units", pot=repr(pot))
    if pot < 0:
        raise ValidationError("Pot must be non-negative", pot=pot)


def _unique(recipients: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for r in recipients:
        if r not in seen:
            seen.add(r)
            out.append(r)
    return out


def _check_total(shares: Sequence[Share], pot: int) -> None:
    total = sum(s.amount for s in shares)
    if shares and total != pot:
        raise InvariantViolation("Allocation does not sum to pot", pot=pot, total=total)
    if any(s.amount < 0 for s in shares):
        raise InvariantViolation("Allocation produced a negative share", pot=pot)


def equal_split(pot: int, recipients: Sequence[str], *, dust_threshold: int = 0) -> list[Share]:
    """Split ``pot`` evenly, handing the remainder out one unit at a time from the front.

    Duplicate recipients are collapsed to their first occurrence. If the per-head
    share would fall below ``dust_threshold`` the trailing recipients are dropped
    until it does not (at least one recipient is always kept).
    """
    _check_pot(pot)
    people = _unique(recipients)
    if not people:
        return []

    n = len(people)
    while n > 1 and pot // n < dust_threshold:
        n -= 1
    people = people[:n]

    base, remainder = divmod(pot, n)
    shares = [Share(recipient=r, amount=base + (1 if i < remainder else 0), weight=1.0) for i, r in enumerate(people)]
    _check_total(shares, pot)
    return shares


def _valid_weight(w: float) -> bool:
    return isinstance(w, (int, float)) and math.isfinite(w) and w > 0


def _largest_remainder(pot: int, weights: dict[str, float]) -> dict[str, int]:
    exact = {r: Fraction(w) for r, w in weights.items()}
    total = sum(exact.values(), Fraction(0))
    floors: dict[str, int] = {}
    remainders: list[tuple[Fraction, str]] = []
    for r, w in exact.items():
        raw = w * pot / total
        whole = raw.numerator // raw.denominator
        floors[r] = whole
        remainders.append((raw - whole, r))

    leftover = pot - sum(floors.values())
    if leftover < 0 or leftover > len(floors):
        raise InvariantViolation("Largest-remainder leftover out of range", pot=pot, leftover=leftover)

    remainders.sort(key=lambda item: (-item[0], item[1]))
    for _, r in remainders[:leftover]:
        floors[r] += 1
    return floors


def weighted_split(
    pot: int,
    weights: Iterable[tuple[str, float]],
    *,
    transform: WeightTransform | None = None,
    dust_threshold: int = 0,
) -> list[Share]:
    """Split ``pot`` in proportion to weights using the largest-remainder method.

    Weights for a repeated recipient are summed. ``transform`` is applied to each
    summed weight (for example ``math.sqrt``). Recipients whose weight is not a
    positive finite number are excluded; if none remain the pot is split equally
    over every recipient that was offered.

    Shares below ``dust_threshold`` are dropped and the pot is re-split over
    the rest, so their units land with the remaining recipients. If every
    recipient would be dust, the single heaviest recipient takes the pot.

    Output is ordered by weight descending, then recipient ascending.
    """
    _check_pot(pot)

    merged: dict[str, float] = {}
    for recipient, w in weights:
        value = float(w) if isinstance(w, (int, float)) else math.nan
        merged[recipient] = merged.get(recipient, 0.0) + value

    if transform is not None:
        merged = {r: (transform(w) if _valid_weight(w) else math.nan) for r, w in merged.items()}

    valid = {r: w for r, w in merged.items() if _valid_weight(w)}
    if not valid:
        return equal_split(pot, list(merged), dust_threshold=dust_threshold)

    ordered = sorted(valid, key=lambda r: (-valid[r], r))
    live = dict(valid)
    amounts = _largest_remainder(pot, live)
    while dust_threshold > 0:
        dust = [r for r, amount in amounts.items() if amount < dust_threshold]
        if not dust:
            break
        if len(dust) == len(live):
            heaviest = next(r for r in ordered if r in live)
            live = {heaviest: valid[heaviest]}
            amounts = {heaviest: pot}
            break
        for r in dust:
            del live[r]
        amounts = _largest_remainder(pot, live)

    shares = [Share(recipient=r, amount=amounts[r], weight=valid[r]) for r in ordered if r in live]
    _check_total(shares, pot)
    return shares


def sqrt_weighted_split(
    pot: int,
    scores: Iterable[tuple[str, float]],
    *,
    dust_threshold: int = 0,
) -> list[Share]:
    """Largest-remainder split weighted by the square root of each score."""
    return weighted_split(pot, scores, transform=math.sqrt, dust_threshold=dust_threshold)


def split_bps(total_bps: int, amount: int) -> int:
    """``floor(amount * total_bps / 10000)``."""
    if total_bps < 0 or total_bps > BPS_DENOMINATOR:
        raise ValidationError("Basis points out of range", bps=total_bps)
    return amount * total_bps // BPS_DENOMINATOR


def merge_shares(shares: Iterable[Share]) -> list[Share]:
    """Combine shares for the same recipient, preserving first-seen order."""
    merged: dict[str, Share] = {}
    for s in shares:
        prior = merged.get(s.recipient)
        if prior is None:
            merged[s.recipient] = s
        else:
            merged[s.recipient] = Share(
                recipient=s.recipient,
                amount=prior.amount + s.amount,
                weight=prior.weight + s.weight,
            )
    return list(merged.values())
