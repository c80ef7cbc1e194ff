"""Feature flag evaluation with targeting conditions and percentage rollouts."""
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import TypeAdapter

from abengine.schemas.feature_flag import FeatureFlag, FlagCondition, UserContext
from abengine.services.bucketing import is_in_rollout, select_variation

logger = structlog.get_logger()

_MISSING = object()

_FLAG_LIST = TypeAdapter(List[FeatureFlag])


def load_flags(path: Union[str, Path]) -> List[FeatureFlag]:
    """Read flag definitions from a JSON array file."""
    flags = _FLAG_LIST.validate_json(Path(path).read_bytes())
    logger.info("feature_flags_loaded", path=str(path), count=len(flags))
    return flags


class FeatureFlagEvaluator:
    """Evaluate flags for a user context.

    Evaluation order: unknown or disabled flag -> default, unmet condition ->
    default, outside rollout -> default, otherwise the hashed variation (or
    True when the flag has no variations).
    """

    def __init__(self, flags: Iterable[FeatureFlag] = (), default_value: Any = False):
        self.default_value = default_value
        self._flags: Dict[str, FeatureFlag] = {}
        self._lock = threading.Lock()
        for flag in flags:
            self.set_flag(flag)

    def set_flag(self, flag: FeatureFlag) -> None:
        with self._lock:
            self._flags[flag.id] = flag

    def remove_flag(self, flag_id: str) -> None:
        with self._lock:
            self._flags.pop(flag_id, None)

    def get_flag(self, flag_id: str) -> Optional[FeatureFlag]:
        with self._lock:
            return self._flags.get(flag_id)

    def list_flags(self) -> List[FeatureFlag]:
        with self._lock:
            return sorted(self._flags.values(), key=lambda f: f.id)

    def evaluate(self, flag_id: str, context: UserContext) -> Any:
        flag = self.get_flag(flag_id)
        if flag is None or not flag.enabled:
            return self.default_value

        if not all(self._matches(condition, context) for condition in flag.conditions):
            return self.default_value

        if not is_in_rollout(flag.id, context.unit_id, flag.rollout_percentage):
            return self.default_value

        if not flag.variations:
            return True

        key = select_variation(flag.id, context.unit_id, sorted(flag.variations))
        return flag.variations[key]

    def evaluate_all(self, context: UserContext) -> Dict[str, Any]:
        with self._lock:
            flag_ids = list(self._flags)
        return {flag_id: self.evaluate(flag_id, context) for flag_id in flag_ids}

    def experiment_flags(self, experiment_id: str, variant_id: str, context: UserContext) -> Dict[str, Any]:
        """
        Flags linked to an experiment, resolved for the user's variant.

        A flag variation keyed by ``variant_id`` overrides normal evaluation.
        """
        with self._lock:
            linked = [f for f in self._flags.values() if experiment_id in f.experiments]

        results = {}
        for flag in linked:
            if variant_id in flag.variations:
                results[flag.id] = flag.variations[variant_id]
            else:
                results[flag.id] = self.evaluate(flag.id, context)
        return results

    def _matches(self, condition: FlagCondition, context: UserContext) -> bool:
        value = self._resolve(context, condition.field)
        op = condition.operator
        expected = condition.value

        if op == "equals":
            return value == expected
        if op == "not_equals":
            return value != expected
        if value is _MISSING:
            return op == "not_in"
        if op == "contains":
            return str(expected) in str(value)
        if op in ("in", "not_in"):
            if not isinstance(expected, (list, tuple, set)):
                return False
            return (value in expected) == (op == "in")

        try:
            left, right = float(value), float(expected)
        except (TypeError, ValueError):
            logger.debug("flag_condition_not_numeric", field=condition.field, operator=op)
            return False

        if op == "gt":
            return left > right
        if op == "lt":
            return left < right
        if op == "gte":
            return left >= right
        return left <= right

    @staticmethod
    def _resolve(context: UserContext, path: str) -> Any:
        """Look up a dotted path such as ``attributes.plan`` or ``geo.country``."""
        current: Any = context.model_dump()
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return _MISSING
        return current
