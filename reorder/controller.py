"""PD controller that tunes the window multiplier alpha.

error = threshold - runtime_coverage.  Positive error means the window is
covering less of the stream than the target asks for, so alpha grows.
There is no integral term.  The absolute value keeps alpha non-negative;
the controller bounces off zero instead of settling there.
"""

KP = 0.5
KD = 0.8


class AlphaController:
    __slots__ = ("alpha", "previous_alpha", "previous_error", "kp", "kd")

    def __init__(self, kp: float = KP, kd: float = KD):
        self.kp = kp
        self.kd = kd
        # alpha is the multiplier in use until the first update; the first
        # update itself starts from previous_alpha = 0
        self.alpha = 1.0
        self.previous_alpha = 0.0
        self.previous_error = 0.0

    def update(self, threshold: float, runtime_coverage: float) -> float:
        error = threshold - runtime_coverage
        delta = self.kp * error + self.kd * (error - self.previous_error)
        alpha = abs(self.previous_alpha + delta)
        self.previous_error = error
        self.previous_alpha = alpha
        self.alpha = alpha
        return alpha

    def state(self) -> tuple[float, float, float]:
        return self.alpha, self.previous_alpha, self.previous_error

    def load(self, alpha: float, previous_alpha: float, previous_error: float) -> None:
        self.alpha = alpha
        self.previous_alpha = previous_alpha
        self.previous_error = previous_error
