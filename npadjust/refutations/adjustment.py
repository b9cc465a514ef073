from __future__ import annotations

import warnings

import numpy as np
import pandas as pd

from .._exceptions import AdjustmentError
from ..nuisance import fit_nuisance
from ._check import RefutationCheck, RefutationReport

_PLACEBO_SEED = 99999
_RCC_SEED     = 54321
_RCC_COL      = "_rcc"

# Checks pass when the statistic stays within this many standard errors.
_SE_TOLERANCE = 2.0


def _refit(estimator, data: pd.DataFrame):
    # Warnings from the re-fits (e.g. weak overlap) belong to the refutation,
    # not to the user's original estimate.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        return estimator.fit(data)


def _placebo_effect(estimator, data: pd.DataFrame, z_perm: np.ndarray, y_hat: np.ndarray) -> float:
    """Re-estimate with a new treatment, reusing the outcome predictions."""
    T = estimator.treatment
    y = data[estimator.outcome].to_numpy(dtype=float)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        if estimator.residualize_treatment:
            placebo_data = data.assign(**{T: z_perm})
            z_hat = fit_nuisance(estimator.backend, T, estimator.confounders, placebo_data).predictions
        else:
            z_hat = np.zeros(len(z_perm))
        return estimator._estimate(y, z_perm, y_hat, z_hat).effect


def _check_placebo_treatment(
    estimator,
    data: pd.DataFrame,
    outcome_predictions: np.ndarray,
    original_se: float,
) -> RefutationCheck:
    """
    Permute the treatment column at random and re-estimate.

    A permuted treatment is independent of both outcome and confounders, so
    its estimated effect should be within noise of zero. The outcome does not
    change, so only the treatment nuisance model is refit; the outcome
    predictions of the original fit are reused.
    """
    rng = np.random.default_rng(_PLACEBO_SEED)
    T = estimator.treatment
    z_perm = rng.permutation(data[T].to_numpy(dtype=float))
    bound = _SE_TOLERANCE * original_se

    try:
        placebo = _placebo_effect(estimator, data, z_perm, outcome_predictions)
    except AdjustmentError as exc:
        return RefutationCheck(
            name="Placebo treatment",
            passed=False,
            detail=f"re-estimation on permuted treatment failed ({exc.__class__.__name__}).",
        )

    passed = abs(placebo) <= bound
    if passed:
        detail = f"placebo effect = {placebo:.4f}  (≤ {_SE_TOLERANCE:g} SE = {bound:.4f})"
    else:
        detail = (
            f"placebo effect = {placebo:.4f}  (> {_SE_TOLERANCE:g} SE = {bound:.4f})  "
            f"A randomly permuted treatment shows an effect; the nuisance models "
            f"may be overfitting."
        )
    return RefutationCheck(
        name="Placebo treatment", passed=passed, detail=detail,
        statistic=float(placebo), threshold=float(bound),
    )


def _check_random_common_cause(
    estimator,
    data: pd.DataFrame,
    original_effect: float,
    original_se: float,
) -> RefutationCheck:
    """
    Add a pure-noise confounder, refit both nuisance models and re-estimate.

    The noise column carries no information, so the estimate should barely
    move. A large shift means the result depends on incidental details of
    the nuisance fits.
    """
    rng = np.random.default_rng(_RCC_SEED)

    col = _RCC_COL
    while col in data.columns:
        col = "_" + col

    augmented = data.assign(**{col: rng.normal(size=len(data))})
    bound = _SE_TOLERANCE * original_se

    try:
        new_effect = _refit(estimator._with_confounders(estimator.confounders + [col]), augmented).effect
    except AdjustmentError as exc:
        return RefutationCheck(
            name="Random common cause",
            passed=False,
            detail=f"re-estimation with a random confounder failed ({exc.__class__.__name__}).",
        )

    shift = abs(new_effect - original_effect)
    passed = shift <= bound
    if passed:
        detail = f"estimate shifted by {shift:.4f}  (≤ {_SE_TOLERANCE:g} SE = {bound:.4f})"
    else:
        detail = (
            f"estimate shifted by {shift:.4f}  (> {_SE_TOLERANCE:g} SE = {bound:.4f})  "
            f"Adding a random common cause destabilised the estimate."
        )
    return RefutationCheck(
        name="Random common cause", passed=passed, detail=detail,
        statistic=float(shift), threshold=float(bound),
    )


class AdjustmentRefutationReport(RefutationReport):
    """
    Refutation checks for a nonparametric adjustment estimate.

    Obtain via ``EffectEstimate.refute(data)``::

        result = NonparametricAdjustment("Z", "Y", ["X"]).fit(df)
        print(result.refute(df).summary())
    """

    _title = "Nonparametric Adjustment Refutation Report"
