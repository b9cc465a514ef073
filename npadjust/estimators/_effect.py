from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm

from .._exceptions import DegenerateDesign
from ._residualize import ResidualPair

logger = logging.getLogger(__name__)

SLOPE = "z_residual"

# A variance below this fraction of its reference scale counts as no
# variation at all.
_DEGENERATE_TOL = 1e-10
_LEVERAGE_TOL   = 1e-8


def _no_variation(variance: float, scale: float) -> bool:
    return variance == 0.0 or variance <= _DEGENERATE_TOL * scale


def hc2_leverage(regressor) -> np.ndarray:
    """
    Hat-matrix diagonal of a simple regression with intercept.

    ``h_ii = 1/n + (x_i - x̄)² / Σ (x_j - x̄)²``
    """
    x = np.asarray(regressor, dtype=float)
    centred = x - x.mean()
    return 1.0 / len(x) + centred ** 2 / float(centred @ centred)


def ols_hc2(endog, regressor, name: str = SLOPE, variable: str | None = None):
    """
    Fit ``endog ~ 1 + regressor`` by OLS with HC2 standard errors.

    Inference uses the t distribution with ``n - 2`` degrees of freedom.

    Raises
    ------
    ``DegenerateDesign``
        If there are fewer than 3 observations, the regressor has no
        variation beyond the intercept, or an observation has leverage 1.
    """
    endog = np.asarray(endog, dtype=float)
    x = np.asarray(regressor, dtype=float)
    n = len(x)
    label = variable or name

    if n < 3:
        raise DegenerateDesign(
            f"Need at least 3 observations for HC2 inference on '{label}', got {n}.",
            stage="effect",
            variable=label,
        )

    # A bare regressor has no reference variance, so its scale is the raw
    # second moment var(x) + mean(x)². That also flags a constant non-zero
    # regressor, which is collinear with the intercept.
    variance = float(np.var(x))
    if _no_variation(variance, float(np.mean(x ** 2))):
        raise DegenerateDesign(
            f"'{label}' has no variation left to estimate a slope (variance {variance:.3g}); "
            f"the regression on it is singular.",
            stage="effect",
            variable=label,
        )

    leverage = hc2_leverage(x)
    if np.any(leverage >= 1.0 - _LEVERAGE_TOL):
        raise DegenerateDesign(
            f"An observation has leverage 1 in the regression on '{label}'; "
            f"the HC2 correction 1 / (1 - h_ii) is undefined.",
            stage="effect",
            variable=label,
        )

    exog = pd.DataFrame({"const": np.ones(n), name: x})
    return sm.OLS(pd.Series(endog, index=exog.index, name="endog"), exog).fit(
        cov_type="HC2", use_t=True
    )


def estimate_effect(
    residuals: ResidualPair,
    reference_variance: float | None = None,
    variable: str | None = None,
):
    """
    Regress the outcome residual on the treatment residual.

    Returns the statsmodels result of ``y_residual ~ 1 + z_residual`` with
    HC2 covariance; the treatment effect is ``result.params["z_residual"]``.

    Parameters
    ----------
    residuals : ResidualPair
        Output of ``residualize``.
    reference_variance : float, optional
        Variance of the raw treatment. When given, a residual treatment
        variance below a tiny fraction of it is treated as zero, which is
        what a nuisance model that recovers the treatment exactly leaves.
    variable : str, optional
        Treatment name used in error messages.

    Raises
    ------
    ``DegenerateDesign``
        If the residualised treatment has (numerically) zero variance.
    """
    z_res = residuals.z_residual
    label = variable or SLOPE

    # Residuals have mean close to zero whatever the treatment's scale, so
    # they are measured against the treatment variance before adjustment.
    if reference_variance is not None:
        variance = float(np.var(z_res))
        if reference_variance <= 0.0 or _no_variation(variance, reference_variance):
            raise DegenerateDesign(
                f"Residualised treatment '{label}' has zero variance "
                f"({variance:.3g} vs. {reference_variance:.3g} before adjustment). "
                f"The confounders predict the treatment exactly: a positivity violation.",
                stage="effect",
                variable=label,
            )

    result = ols_hc2(residuals.y_residual, z_res, name=SLOPE, variable=label)
    logger.debug(
        "Residual regression: slope=%.6g, HC2 se=%.6g, n=%d",
        result.params[SLOPE], result.bse[SLOPE], len(residuals),
    )
    return result
