"""Variant weight validation and normalization.

Shared by the lifecycle manager (at creation) and every allocation strategy
(before new weights are persisted). Weights are percentages and must sum to
100 within ``WEIGHT_TOLERANCE``.
"""
from typing import List, Optional, Sequence

from abengine.schemas.experiment import Variant
from abengine.services.errors import ValidationError

WEIGHT_TOLERANCE = 0.01


def validate_variants(variants: Sequence[Variant]) -> None:
    """
    Check a variant set before it is persisted.

    Raises:
        ValidationError: fewer than 2 variants, duplicate ids or names,
            a weight outside [0, 100], or weights not summing to 100
    """
    if len(variants) < 2:
        raise ValidationError("At least 2 variants are required")

    ids = set()
    names = set()
    for variant in variants:
        if variant.id in ids:
            raise ValidationError(f"Duplicate variant ID: {variant.id}")
        if variant.name in names:
            raise ValidationError(f"Duplicate variant name: {variant.name}")
        ids.add(variant.id)
        names.add(variant.name)

        if variant.weight < 0 or variant.weight > 100:
            raise ValidationError(
                f"Invalid weight for variant {variant.name}: {variant.weight}"
            )

    total_weight = sum(v.weight for v in variants)
    # Small epsilon so a sum of exactly 99.99 passes despite float error
    if abs(total_weight - 100) > WEIGHT_TOLERANCE + 1e-9:
        raise ValidationError(f"Variant weights must sum to 100, got {total_weight:g}")


def ensure_control(variants: Sequence[Variant]) -> List[Variant]:
    """
    Return a copy of ``variants`` with exactly one control.

    The first variant becomes the control when none is flagged.

    Raises:
        ValidationError: more than one variant is flagged as control
    """
    controls = [v for v in variants if v.is_control]
    if len(controls) > 1:
        raise ValidationError(
            f"Only one control variant is allowed, got {', '.join(v.id for v in controls)}"
        )

    result = [v.model_copy() for v in variants]
    if not controls and result:
        result[0] = result[0].model_copy(update={"is_control": True})
    return result


def normalize_weights(weights: Sequence[float], floor: float = 0.0) -> List[float]:
    """
    Scale weights to sum to exactly 100 with 2-decimal precision.

    All-zero input is split equally. The rounding remainder goes to the last
    weight, or to the largest one if the last would drop below ``floor``.
    """
    count = len(weights)
    if count == 0:
        return []

    total = sum(weights)
    if total <= 0:
        scaled = [100.0 / count] * count
    else:
        scaled = [w * 100.0 / total for w in weights]

    rounded = [round(w, 2) for w in scaled]
    remainder = 100.0 - sum(rounded)

    target = count - 1
    if round(rounded[target] + remainder, 2) < floor:
        target = max(range(count), key=lambda i: rounded[i])
    rounded[target] = round(rounded[target] + remainder, 2)
    return rounded


def apply_weight_floor(weights: Sequence[float], floor: float) -> List[float]:
    """
    Raise every weight to at least ``floor`` percent, keeping the sum at 100.

    Floored weights are pinned and the remaining budget is shared by the
    others in proportion to their current weight, repeating until no free
    weight drops below the floor.
    """
    count = len(weights)
    if count == 0:
        return []
    if floor * count >= 100:
        return [100.0 / count] * count

    total = sum(weights)
    if total <= 0:
        return [100.0 / count] * count
    base = [w * 100.0 / total for w in weights]

    pinned = set()
    while True:
        free = [i for i in range(count) if i not in pinned]
        budget = 100.0 - floor * len(pinned)
        free_total = sum(base[i] for i in free)

        result = []
        for i in range(count):
            if i in pinned:
                result.append(floor)
            elif free_total > 0:
                result.append(base[i] / free_total * budget)
            else:
                result.append(budget / len(free))

        below = [i for i in free if result[i] < floor]
        if not below:
            return result
        pinned.update(below)


def with_weights(variants: Sequence[Variant], weights: Sequence[float]) -> List[Variant]:
    """Copy ``variants`` replacing their weights positionally."""
    return [v.model_copy(update={"weight": w}) for v, w in zip(variants, weights)]


def initial_allocation(num_variants: int, expected_effect: Optional[float] = None) -> List[Variant]:
    """
    Recommended starting allocation for a new experiment.

    Two arms split 50/50; more arms give the control ``100 / n + 10`` percent
    and share the rest. ``expected_effect`` (clamped to +/-20) shifts weight
    toward the control.
    """
    if num_variants <= 1:
        return [Variant(id="control", name="Control", weight=100.0, is_control=True)]

    adjustment = max(-20.0, min(20.0, expected_effect)) if expected_effect is not None else 0.0

    if num_variants == 2:
        control_weight = max(0.0, min(100.0, 50.0 + adjustment))
        weights = [control_weight, 100.0 - control_weight]
    else:
        control_weight = max(0.0, min(100.0, 100.0 / num_variants + 10.0 + adjustment))
        share = max(0.0, 100.0 - control_weight) / (num_variants - 1)
        weights = [control_weight] + [share] * (num_variants - 1)

    variants = [Variant(id="control", name="Control", weight=0.0, is_control=True)]
    for i in range(1, num_variants):
        letter = chr(ord("a") + i - 1)
        variants.append(Variant(id=f"variant_{letter}", name=f"Variant {letter.upper()}", weight=0.0))

    return with_weights(variants, normalize_weights(weights))
