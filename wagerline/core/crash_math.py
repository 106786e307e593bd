"""Crash-game mathematics: sampling and the multiplier curve.

All functions are **pure** apart from consuming randomness from the
``rng`` argument.  The round authority in
:mod:`wagerline.services.crash` is the only caller that decides outcomes.

Crash point sampling
--------------------
Inverse-distribution sampling with the house edge folded into the range
of the uniform draw::

    U  ~ Uniform[0, 1)
    cp = max(1.01, 1 / (1 - U * (1 - house_edge)))

Properties worth knowing:

* ``cp`` is bounded above by ``1 / house_edge`` (25x at a 4% edge), reached
  as ``U → 1``.
* ``1 / cp`` is uniform on ``(house_edge, 1]`` before the 1.01 floor, so its
  mean is ``(1 + house_edge) / 2``.
* ``P(cp >= x) = 1 - (1 - 1/x) / (1 - house_edge)`` for ``x`` above the floor.

Multiplier curve
----------------
Linear growth from 1.00x to the crash point over the flight duration::

    m(t) = 1 + (cp - 1) * min(t / duration, 1)

``m`` is strictly increasing until ``t = duration`` where it reaches ``cp``
and the round crashes.
"""

from __future__ import annotations

import random
import secrets
from decimal import Decimal
from typing import Optional

from wagerline.core.config import MIN_CRASH_POINT
from wagerline.core.errors import ValidationError
from wagerline.core.money import floor_multiplier

_system_rng = secrets.SystemRandom()


def generate_crash_point(house_edge: float, rng: Optional[random.Random] = None) -> Decimal:
    """Sample a crash point (quantized down to 0.01x, never below 1.01x).

    Args:
        house_edge: Fraction in ``[0, 1)``.
        rng: Source of uniform draws.  Defaults to the OS CSPRNG; tests pass
            a seeded :class:`random.Random`.
    """
    if not 0.0 <= house_edge < 1.0:
        raise ValidationError("house_edge must be in [0, 1)", house_edge=house_edge)
    u = (rng or _system_rng).random()
    raw = 1.0 / (1.0 - u * (1.0 - house_edge))
    return max(MIN_CRASH_POINT, floor_multiplier(raw))


def flight_duration(crash_point: Decimal, max_seconds: float, seconds_per_multiple: float) -> float:
    """Seconds the multiplier takes to climb from 1.00x to ``crash_point``."""
    return min(max_seconds, float(crash_point) * seconds_per_multiple)


def multiplier_at(elapsed: float, crash_point: Decimal, duration: float) -> Decimal:
    """Multiplier after ``elapsed`` seconds of flight, floored to 0.01x.

    The flooring keeps ``m(t) < cp`` for every ``t < duration``, so only the
    final instant of the flight can equal the crash point.
    """
    if elapsed <= 0:
        return Decimal("1.00")
    if duration <= 0 or elapsed >= duration:
        return crash_point
    progress = elapsed / duration
    value = 1 + (crash_point - 1) * Decimal(repr(progress))
    return min(floor_multiplier(value), crash_point)


def survival_probability(target: float, house_edge: float) -> float:
    """``P(cp >= target)`` under :func:`generate_crash_point`'s distribution."""
    if target <= float(MIN_CRASH_POINT):
        return 1.0
    p = 1.0 - (1.0 - 1.0 / target) / (1.0 - house_edge)
    return max(0.0, p)
