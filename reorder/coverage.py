"""Window coverage estimation for the adaptive K-Slack buffer.

Two numbers drive the alpha controller:

  threshold: how much of the stream the window must cover so that an
             average over the correlation field stays within the error
             bound at the configured confidence (AQ-K-Slack, Ji et al.)
  runtime:   how much of the recent stream the current window actually
             covered, measured against the running maximum timestamp

Both are fractions in [0, 1].  Degenerate samples return neutral values so
the stream keeps flowing.
"""

from statistics import NormalDist, fmean, pvariance


class WindowCoverageEstimator:
    __slots__ = ("error_threshold", "confidence_level", "critical_value")

    def __init__(self, error_threshold: float, confidence_level: float):
        self.error_threshold = error_threshold
        self.confidence_level = confidence_level
        # z for a two-sided interval, e.g. 1.96 at 95%
        self.critical_value = abs(NormalDist().inv_cdf((1 - confidence_level) / 2))

    def spread_estimate(self, samples) -> float:
        """Required coverage fraction for the correlation values in *samples*.

        With n values of mean mu and variance sigma^2, covering a fraction
        theta of them keeps the confidence-interval half-width of the mean
        below error_threshold * |mu| when

            theta >= z^2 sigma^2 / (z^2 sigma^2 + eps^2 mu^2 (n - 1))

        (finite population correction included).
        """
        n = len(samples)
        if n < 2:
            return 0.0
        mean = fmean(samples)
        variance = pvariance(samples, mean)
        if variance == 0:
            return 0.0
        spread = self.critical_value ** 2 * variance
        tolerance = (self.error_threshold * mean) ** 2 * (n - 1)
        return spread / (spread + tolerance)

    def runtime_coverage(self, latest_timestamp: int, timestamps, window: int,
                         reference_span: int) -> float:
        """Fraction of recent arrivals that landed within *window* of the running max.

        *timestamps* is walked in arrival order.  Only timestamps inside
        [latest_timestamp - reference_span, ...] are counted; anything
        older still feeds the running maximum.
        """
        horizon = latest_timestamp - reference_span
        running_max = None
        considered = 0
        covered = 0
        for ts in timestamps:
            if running_max is None or ts > running_max:
                running_max = ts
            if ts < horizon:
                continue
            considered += 1
            if running_max - ts <= window:
                covered += 1
        if not considered:
            return 1.0
        return covered / considered
