from __future__ import annotations


class AdjustmentError(Exception):
    """
    Base class for errors raised while estimating an adjusted treatment effect.

    ``stage`` names the step that failed (``"nuisance"``, ``"residualize"``,
    ``"effect"`` or ``"config"``) and ``variable`` the column involved, when
    there is one.
    """

    def __init__(self, message: str, stage: str | None = None, variable: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.variable = variable


class UnsupportedBackend(AdjustmentError, ValueError):
    """Raised when the nuisance method selector is not a known backend."""

    def __init__(self, method) -> None:
        from .nuisance import BACKEND_NAMES

        super().__init__(
            f"Unsupported nuisance backend {method!r}. "
            f"Choose one of: {', '.join(BACKEND_NAMES)}, "
            f"or pass a NuisanceRegressor instance.",
            stage="config",
        )
        self.method = method


class NuisanceFitFailure(AdjustmentError):
    """
    Raised when a nuisance regressor fails to fit or predict.

    The exception raised by the underlying library is chained as
    ``__cause__`` and left untouched.
    """
    pass


class ResidualLengthMismatch(AdjustmentError):
    """
    Raised when a prediction vector does not have one entry per observation.

    Predictions are matched to observations by position only, so a backend
    that drops or adds rows can never be aligned after the fact.
    """
    pass


class DegenerateDesign(AdjustmentError):
    """
    Raised when the final residual-on-residual regression is singular.

    Usually the treatment is (almost) perfectly predicted by the confounders,
    leaving no variation in the residualised treatment: a positivity
    violation.
    """
    pass
