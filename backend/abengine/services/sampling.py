"""Random variate generation for Thompson Sampling.

Pure functions over an injected ``RandomSource``:

- ``standard_normal``: Box-Muller transform
- ``sample_gamma``: Marsaglia and Tsang (2000) rejection method, with the
  ``shape < 1`` boost ``Gamma(a) = Gamma(a + 1) * U ** (1 / a)``
- ``sample_beta``: ``X / (X + Y)`` for ``X ~ Gamma(alpha)``, ``Y ~ Gamma(beta)``

The optimizer takes the beta sampler as a parameter, so any function with the
``BetaSampler`` signature can replace this implementation.
"""
import math
from typing import Callable

from abengine.services.errors import StatisticalError
from abengine.services.randomness import RandomSource

BetaSampler = Callable[[float, float, RandomSource], float]


def standard_normal(rng: RandomSource) -> float:
    """Draw from N(0, 1)."""
    # 1 - U keeps u1 in (0, 1] so the log is finite
    u1 = 1.0 - rng.random()
    u2 = rng.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


def sample_gamma(shape: float, rng: RandomSource) -> float:
    """Draw from Gamma(shape, 1)."""
    if shape <= 0 or math.isnan(shape):
        raise StatisticalError(f"Gamma shape must be positive, got {shape}")

    if shape < 1:
        return sample_gamma(shape + 1.0, rng) * rng.random() ** (1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)

    while True:
        z = standard_normal(rng)
        v = (1.0 + c * z) ** 3
        if v <= 0:
            continue

        u = rng.random()
        # Squeeze test avoids the logarithms for most draws
        if u < 1.0 - 0.0331 * z ** 4:
            return d * v
        if u > 0 and math.log(u) < 0.5 * z * z + d * (1.0 - v + math.log(v)):
            return d * v


def sample_beta(alpha: float, beta: float, rng: RandomSource) -> float:
    """Draw from Beta(alpha, beta)."""
    x = sample_gamma(alpha, rng)
    y = sample_gamma(beta, rng)
    total = x + y
    if total == 0:
        # Both gammas underflowed (tiny shapes); fall back to the mean
        return alpha / (alpha + beta)
    return x / total
