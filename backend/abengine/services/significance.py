"""Significance testing, lift, winner selection and recommendations.

Decisions use fixed critical values at 95% (chi-square 3.841 with df=1,
z 1.96). ``confidence`` is a linear approximation kept for allocation
scoring; each result also carries the exact p-value from ``scipy.stats``.

Outcomes are enriched for reporting with a delta-method interval on the
lift, the power of the comparison and, for binary metrics, the Beta
posterior probability that the variant beats the control. None of these
change which variant wins.
"""
import math
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from scipy import integrate, stats

from abengine.schemas.experiment import Experiment, MetricName, VariantTracking
from abengine.schemas.results import ExperimentResult, MetricOutcome, SignificanceResult
from abengine.services.errors import InsufficientDataError, StatisticalError
from abengine.services.metrics import check_tracking, metric_value
from abengine.services.randomness import Clock, SystemClock

logger = structlog.get_logger()

CHI_SQUARE_CRITICAL = 3.841
Z_CRITICAL = 1.96
SIGNIFICANT_CONFIDENCE = 0.95
MIN_CONTINUOUS_SAMPLES = 30
STD_TO_MEAN_RATIO = 0.3
SHORT_RUN_DAYS = 7
TARGET_POWER = 0.8
LEADING_PROBABILITY = 0.8
BETA_PRIOR = 1.0
# Posterior tail mass left out of the integration range
POSTERIOR_TAIL = 1e-9

BINARY_METRICS = {
    MetricName.CONVERSION_RATE: "conversions",
    MetricName.CLICK_RATE: "clicks",
}

# Continuous metric -> counter used as the sample size of the mean
CONTINUOUS_METRICS = {
    MetricName.AVERAGE_ORDER_VALUE: "conversions",
    MetricName.REVENUE_PER_IMPRESSION: "impressions",
}


def calculate_lift(treatment_value: float, control_value: float) -> float:
    """Percentage lift of treatment over control, 0 when control is 0."""
    if control_value == 0:
        return 0.0
    return (treatment_value - control_value) / control_value * 100


def z_for_confidence(confidence_level: float) -> float:
    """Two-sided critical z, e.g. 1.96 for 0.95."""
    return float(stats.norm.ppf(1 - (1 - confidence_level) / 2))


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float = 0.1,
    power: float = TARGET_POWER,
    alpha: float = 0.05
) -> int:
    """
    Exposures per variant to detect a relative lift on a conversion rate.

    Two-sided two-proportion test: n = 2 p(1-p) (z_alpha/2 + z_beta)^2 / (p2 - p1)^2
    with p the mean of the two rates.

    Example:
        baseline 10%, 10% relative lift (10% -> 11%), 80% power, alpha 0.05
        -> 14752 per variant.

    Raises:
        StatisticalError: Rate outside (0, 1), non-positive effect, or power/alpha outside (0, 1)
    """
    if not 0 < baseline_rate < 1:
        raise StatisticalError(f"Baseline rate must be between 0 and 1, got {baseline_rate}")
    if minimum_detectable_effect <= 0:
        raise StatisticalError("Minimum detectable effect must be positive")
    if not 0 < power < 1 or not 0 < alpha < 1:
        raise StatisticalError("Power and alpha must be between 0 and 1")

    treatment_rate = baseline_rate * (1 + minimum_detectable_effect)
    if treatment_rate >= 1:
        raise StatisticalError(
            f"A {minimum_detectable_effect:.0%} lift on {baseline_rate} exceeds a rate of 1"
        )

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_beta = stats.norm.ppf(power)
    mean_rate = (baseline_rate + treatment_rate) / 2
    n = 2 * mean_rate * (1 - mean_rate) * (z_alpha + z_beta) ** 2 / (treatment_rate - baseline_rate) ** 2
    return int(math.ceil(n))


def statistical_power(
    control_rate: float,
    control_total: int,
    treatment_rate: float,
    treatment_total: int,
    alpha: float = 0.05
) -> Optional[float]:
    """Power of a two-sided pooled z-test to detect the observed difference."""
    if control_total == 0 or treatment_total == 0:
        return None

    pooled = (control_rate * control_total + treatment_rate * treatment_total) / (control_total + treatment_total)
    standard_error = math.sqrt(pooled * (1 - pooled) * (1 / control_total + 1 / treatment_total))
    if standard_error == 0:
        return None

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z = abs(treatment_rate - control_rate) / standard_error
    return float(stats.norm.cdf(z - z_alpha) + stats.norm.cdf(-z - z_alpha))


def lift_confidence_interval(
    control_value: float,
    control_variance: float,
    treatment_value: float,
    treatment_variance: float,
    z: float = Z_CRITICAL
) -> Optional[Tuple[float, float]]:
    """
    Delta-method interval for the percentage lift treatment/control - 1.

    Variances are those of the two estimates, not of single observations.
    None when the control value is 0.
    """
    if control_value == 0:
        return None

    variance = (
        treatment_variance / control_value ** 2
        + treatment_value ** 2 * control_variance / control_value ** 4
    )
    lift = treatment_value / control_value - 1
    margin = z * math.sqrt(variance)
    return (lift - margin) * 100, (lift + margin) * 100


def bayesian_comparison(
    control_successes: int,
    control_total: int,
    treatment_successes: int,
    treatment_total: int,
    prior: float = BETA_PRIOR
) -> Tuple[float, float]:
    """
    Compare Beta posteriors of two rates.

    Returns (P(treatment > control), E[max(0, control - treatment)]), both
    integrated numerically over the range holding the posterior mass.
    """
    control_a = prior + control_successes
    control_b = prior + control_total - control_successes
    treatment_a = prior + treatment_successes
    treatment_b = prior + treatment_total - treatment_successes

    control = stats.beta(control_a, control_b)
    treatment = stats.beta(treatment_a, treatment_b)
    # x * pdf(x; a, b) == mean * pdf(x; a + 1, b)
    control_shifted = stats.beta(control_a + 1, control_b)
    control_mean = control.mean()

    low = min(control.ppf(POSTERIOR_TAIL), treatment.ppf(POSTERIOR_TAIL))
    high = max(control.isf(POSTERIOR_TAIL), treatment.isf(POSTERIOR_TAIL))
    peaks = sorted({control_mean, treatment.mean()})

    probability, _ = integrate.quad(
        lambda x: treatment.pdf(x) * control.cdf(x),
        low, high, points=peaks, limit=200
    )
    # For a fixed treatment rate t: E[(C - t)+] = E[C] P(C' > t) - t P(C > t)
    loss, _ = integrate.quad(
        lambda t: treatment.pdf(t) * (control_mean * control_shifted.sf(t) - t * control.sf(t)),
        low, high, points=peaks, limit=200
    )
    return min(1.0, max(0.0, probability)), max(0.0, loss)


class SignificanceTester:
    """Compare variants against the control."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        minimum_detectable_effect: float = 0.1,
        min_run_hours: int = 24
    ):
        self.clock = clock or SystemClock()
        self.minimum_detectable_effect = minimum_detectable_effect
        self.min_run_hours = min_run_hours

    def test(self, control: VariantTracking, treatment: VariantTracking, metric: MetricName) -> SignificanceResult:
        """Run the test matching the metric type."""
        check_tracking(control)
        check_tracking(treatment)

        if metric in BINARY_METRICS:
            return self.chi_square_test(control, treatment, metric)
        if metric in CONTINUOUS_METRICS:
            return self.t_test(control, treatment, metric)
        raise StatisticalError(f"Unknown metric: {metric}")

    def chi_square_test(
        self,
        control: VariantTracking,
        treatment: VariantTracking,
        metric: MetricName = MetricName.CONVERSION_RATE
    ) -> SignificanceResult:
        """
        Two-proportion chi-square test, df=1.

        Example:
            100/1000 vs 150/1000 conversions: pooled 0.125, expected 125 per
            arm, chi-square 10.0 -> significant, confidence 0.95.
        """
        counter = BINARY_METRICS.get(metric)
        if counter is None:
            raise StatisticalError(f"{metric} is not a binary metric")

        control_successes = getattr(control, counter)
        treatment_successes = getattr(treatment, counter)
        control_total = control.impressions
        treatment_total = treatment.impressions

        if control_successes > control_total or treatment_successes > treatment_total:
            raise StatisticalError(f"{counter} exceed impressions for {metric.value}")

        if control_total == 0 or treatment_total == 0:
            return SignificanceResult()

        pooled = (control_successes + treatment_successes) / (control_total + treatment_total)
        expected_control = control_total * pooled
        expected_treatment = treatment_total * pooled

        if expected_control == 0 or expected_treatment == 0:
            return SignificanceResult()

        chi_square = (
            (control_successes - expected_control) ** 2 / expected_control
            + (treatment_successes - expected_treatment) ** 2 / expected_treatment
        )
        significant = chi_square > CHI_SQUARE_CRITICAL
        confidence = SIGNIFICANT_CONFIDENCE if significant else chi_square / CHI_SQUARE_CRITICAL * SIGNIFICANT_CONFIDENCE

        return SignificanceResult(
            significant=significant,
            confidence=confidence,
            statistic=chi_square,
            p_value=float(stats.chi2.sf(chi_square, 1))
        )

    def t_test(
        self,
        control: VariantTracking,
        treatment: VariantTracking,
        metric: MetricName = MetricName.AVERAGE_ORDER_VALUE
    ) -> SignificanceResult:
        """Welch-style t statistic on revenue means; std is approximated as 0.3 x |mean|."""
        counter = CONTINUOUS_METRICS.get(metric)
        if counter is None:
            raise StatisticalError(f"{metric} is not a continuous metric")

        control_n = getattr(control, counter)
        treatment_n = getattr(treatment, counter)
        if control_n < MIN_CONTINUOUS_SAMPLES or treatment_n < MIN_CONTINUOUS_SAMPLES:
            return SignificanceResult()

        control_mean = control.revenue / max(1, control_n)
        treatment_mean = treatment.revenue / max(1, treatment_n)
        control_std = abs(control_mean) * STD_TO_MEAN_RATIO
        treatment_std = abs(treatment_mean) * STD_TO_MEAN_RATIO

        standard_error = math.sqrt(control_std ** 2 / control_n + treatment_std ** 2 / treatment_n)
        if standard_error == 0:
            return SignificanceResult()

        t_stat = abs(treatment_mean - control_mean) / standard_error
        significant = t_stat > Z_CRITICAL
        confidence = SIGNIFICANT_CONFIDENCE if significant else min(0.94, t_stat / Z_CRITICAL * SIGNIFICANT_CONFIDENCE)

        return SignificanceResult(
            significant=significant,
            confidence=confidence,
            statistic=t_stat,
            p_value=float(2 * stats.norm.sf(t_stat))
        )

    @staticmethod
    def select_winner(
        outcomes: Dict[str, Dict[str, MetricOutcome]],
        metrics: Sequence[MetricName]
    ) -> Optional[str]:
        """Variant with the highest sum of significant positive lifts, if any."""
        winner = None
        best_score = 0.0

        for variant_id, per_metric in outcomes.items():
            score = 0.0
            for metric in metrics:
                outcome = per_metric.get(metric.value)
                if outcome and outcome.significant and outcome.lift > 0:
                    score += outcome.lift
            # Strictly greater keeps the first variant on ties
            if score > best_score:
                best_score = score
                winner = variant_id

        return winner

    def analyze(self, experiment: Experiment, tracking: List[VariantTracking]) -> ExperimentResult:
        """
        Compare every non-control variant with the control on every declared metric.

        Raises:
            InsufficientDataError: Fewer than two tracked variants, or no control row
        """
        if len(tracking) < 2:
            raise InsufficientDataError(
                f"Experiment {experiment.id} needs tracking for at least 2 variants, found {len(tracking)}"
            )

        by_variant = {row.variant_id: row for row in tracking}
        control = experiment.control
        control_row = by_variant.get(control.id)
        if control_row is None:
            raise InsufficientDataError(f"No tracking data for control variant {control.id}")

        z = z_for_confidence(experiment.confidence_level)
        outcomes: Dict[str, Dict[str, MetricOutcome]] = {}
        for variant in experiment.variants:
            row = by_variant.get(variant.id)
            if variant.id == control.id or row is None:
                continue

            outcomes[variant.id] = {
                metric.value: self.compare(control_row, row, metric, z)
                for metric in experiment.metrics
            }

        winner = self.select_winner(outcomes, experiment.metrics)
        total_impressions = sum(row.impressions for row in tracking)
        required = self.required_per_variant(experiment, control_row)

        logger.info(
            "experiment_analyzed",
            experiment_id=experiment.id,
            winner=winner,
            total_impressions=total_impressions,
            required_sample_size=required
        )

        return ExperimentResult(
            experiment_id=experiment.id,
            control_variant_id=control.id,
            variants=outcomes,
            winner=winner,
            recommendation=self.recommend(
                experiment,
                outcomes,
                winner,
                total_impressions,
                required_sample_size=required,
                min_variant_impressions=min(row.impressions for row in tracking)
            ),
            total_impressions=total_impressions,
            required_sample_size=required,
            analyzed_at=self.clock.now()
        )

    def compare(
        self,
        control: VariantTracking,
        treatment: VariantTracking,
        metric: MetricName,
        z: float = Z_CRITICAL
    ) -> MetricOutcome:
        """Test one metric and attach the lift interval, power and posterior comparison."""
        control_value = metric_value(control, metric)
        value = metric_value(treatment, metric)
        result = self.test(control, treatment, metric)

        outcome = MetricOutcome(
            value=value,
            control_value=control_value,
            lift=calculate_lift(value, control_value),
            confidence=result.confidence,
            significant=result.significant,
            p_value=result.p_value
        )

        if metric in BINARY_METRICS:
            counter = BINARY_METRICS[metric]
            if control.impressions == 0 or treatment.impressions == 0:
                return outcome

            interval = lift_confidence_interval(
                control_value,
                control_value * (1 - control_value) / control.impressions,
                value,
                value * (1 - value) / treatment.impressions,
                z
            )
            outcome.power = statistical_power(control_value, control.impressions, value, treatment.impressions)
            outcome.probability_better, outcome.expected_loss = bayesian_comparison(
                getattr(control, counter),
                control.impressions,
                getattr(treatment, counter),
                treatment.impressions
            )
        else:
            counter = CONTINUOUS_METRICS[metric]
            control_n = getattr(control, counter)
            treatment_n = getattr(treatment, counter)
            if control_n < MIN_CONTINUOUS_SAMPLES or treatment_n < MIN_CONTINUOUS_SAMPLES:
                return outcome

            interval = lift_confidence_interval(
                control_value,
                (control_value * STD_TO_MEAN_RATIO) ** 2 / control_n,
                value,
                (value * STD_TO_MEAN_RATIO) ** 2 / treatment_n,
                z
            )

        if interval is not None:
            outcome.lift_lower, outcome.lift_upper = interval
        return outcome

    def required_per_variant(self, experiment: Experiment, control_row: VariantTracking) -> Optional[int]:
        """Sample size per variant for the first binary metric, from the control's observed rate."""
        for metric in experiment.metrics:
            if metric not in BINARY_METRICS:
                continue
            baseline = metric_value(control_row, metric)
            try:
                return required_sample_size(
                    baseline,
                    self.minimum_detectable_effect,
                    alpha=1 - experiment.confidence_level
                )
            except StatisticalError:
                # No usable baseline yet (0% or 100% so far)
                return None
        return None

    def recommend(
        self,
        experiment: Experiment,
        outcomes: Dict[str, Dict[str, MetricOutcome]],
        winner: Optional[str],
        total_impressions: int,
        required_sample_size: Optional[int] = None,
        min_variant_impressions: int = 0
    ) -> str:
        """Human-readable next step for the experiment owner."""
        parts = []
        running_for = None
        if experiment.started_at is not None:
            running_for = self.clock.now() - experiment.started_at

        if winner is None:
            parts.append("No variant significantly outperformed the control.")
            if running_for is not None and running_for.days < SHORT_RUN_DAYS:
                parts.append("Consider running the experiment longer for more conclusive results.")

            leader = self._leader(outcomes, experiment.metrics)
            if leader is not None:
                parts.append(
                    f"Variant {leader[0]} is leading with a {leader[1]:.0%} chance of beating the control."
                )
        else:
            improvements = [
                f"{name} (+{outcome.lift:.1f}%)"
                for name, outcome in outcomes[winner].items()
                if outcome.significant and outcome.lift > 0
            ]
            parts.append(
                f"Variant {winner} is the winner with significant improvements in: {', '.join(improvements)}."
            )

            revenue = outcomes[winner].get(MetricName.REVENUE_PER_IMPRESSION.value)
            if revenue is not None and revenue.significant:
                parts.append(f"Estimated revenue impact: {revenue.lift:+.1f}% per impression.")

            if running_for is not None and running_for < timedelta(hours=self.min_run_hours):
                parts.append(
                    f"Results are preliminary: keep the experiment running for at least "
                    f"{self.min_run_hours} hours before acting on them."
                )

        if total_impressions < experiment.sample_size:
            parts.append(
                f"Need {experiment.sample_size - total_impressions} more exposures to reach the planned sample size."
            )

        if required_sample_size is not None and min_variant_impressions < required_sample_size:
            parts.append(
                f"Detecting a {self.minimum_detectable_effect:.0%} lift with {TARGET_POWER:.0%} power "
                f"takes about {required_sample_size} exposures per variant."
            )

        return " ".join(parts)

    @staticmethod
    def _leader(
        outcomes: Dict[str, Dict[str, MetricOutcome]],
        metrics: Sequence[MetricName]
    ) -> Optional[Tuple[str, float]]:
        """Variant most likely to beat the control on the primary metric, above 80%."""
        if not metrics:
            return None

        primary = metrics[0].value
        leader = None
        for variant_id, per_metric in outcomes.items():
            outcome = per_metric.get(primary)
            if outcome is None or outcome.probability_better is None:
                continue
            if outcome.probability_better > LEADING_PROBABILITY and (
                leader is None or outcome.probability_better > leader[1]
            ):
                leader = (variant_id, outcome.probability_better)
        return leader
