from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .._exceptions import DegenerateDesign
from ..nuisance import NuisanceRegressor, fit_nuisance, get_backend
from ..refutations._check import Assumption
from ._effect import SLOPE, estimate_effect, hc2_leverage, ols_hc2
from ._residualize import ResidualPair, residualize

logger = logging.getLogger(__name__)

ADJUSTMENT_ASSUMPTIONS: list[Assumption] = [
    Assumption("Conditional ignorability: no unobserved confounders given the adjustment set", testable=False),
    Assumption("Overlap (positivity): treatment is not determined by the confounders", testable=True),
    Assumption("Nuisance models capture E[Y | X] and E[Z | X] well", testable=True),
    Assumption("Constant treatment effect (otherwise a variance-weighted average is estimated)", testable=False),
    Assumption("Stable Unit Treatment Value Assumption (SUTVA)", testable=False),
]

DEFAULT_SEED = 42

# var(z) / var(z_residual) above this means the confounders explain more than
# 95% of the treatment variance.
CONDITION_WARN = 20.0

# Above this (99% explained) the treatment is treated as a function of the
# confounders. Out-of-bag and cross-validated predictions never recover such a
# treatment exactly, so the zero-variance check alone does not catch it.
CONDITION_MAX = 100.0


def _squared_correlation(a: np.ndarray, b: np.ndarray) -> float:
    if np.var(a) == 0.0 or np.var(b) == 0.0:
        return float("nan")
    return float(np.corrcoef(a, b)[0, 1] ** 2)


# ── Result ─────────────────────────────────────────────────────────────────────

class EffectEstimate:
    """
    The result of a nonparametric covariate-adjusted ATE estimation.

    The effect is the slope of the outcome residual on the treatment
    residual, with HC2 standard errors and t-based inference on ``n - 2``
    degrees of freedom. The naive regression of outcome on treatment is kept
    alongside it so the confounding bias removed by adjustment is visible.
    """

    def __init__(
        self,
        result,
        unadjusted_result,
        residuals: ResidualPair,
        outcome_values: np.ndarray,
        outcome_predictions: np.ndarray,
        treatment_values: np.ndarray,
        estimator: NonparametricAdjustment,
    ) -> None:
        self._result = result
        self._unadjusted = unadjusted_result
        self._residuals = residuals
        self._y = outcome_values
        self._y_hat = outcome_predictions
        self._z = treatment_values
        self._estimator = estimator
        self._treatment = estimator.treatment
        self._outcome = estimator.outcome
        self._confounders = list(estimator.confounders)

    @property
    def effect(self) -> float:
        """ATE point estimate: slope on the residualised treatment."""
        return float(self._result.params[SLOPE])

    @property
    def std_err(self) -> float:
        """HC2 standard error of the ATE."""
        return float(self._result.bse[SLOPE])

    @property
    def tvalue(self) -> float:
        return float(self._result.tvalues[SLOPE])

    @property
    def pvalue(self) -> float:
        """Two-sided p-value for ``H0: ATE = 0`` from t with ``n - 2`` df."""
        return float(self._result.pvalues[SLOPE])

    @property
    def conf_int(self) -> tuple[float, float]:
        """95% confidence interval for the ATE."""
        ci = self._result.conf_int()
        return (float(ci.loc[SLOPE, 0]), float(ci.loc[SLOPE, 1]))

    @property
    def coefficients(self) -> pd.Series:
        """The ATE row: estimate, standard error, t value and p-value."""
        return pd.Series(
            {
                "ATE": self.effect,
                "Std. Error": self.std_err,
                "t value": self.tvalue,
                "Pr(>|t|)": self.pvalue,
            },
            name=self._treatment,
        )

    @property
    def n_obs(self) -> int:
        return len(self._residuals)

    @property
    def residuals(self) -> ResidualPair:
        """Outcome and treatment residuals from the nuisance models."""
        return self._residuals

    @property
    def leverage(self) -> np.ndarray:
        """Hat-matrix diagonal of the residual regression, as used by HC2."""
        return hc2_leverage(self._residuals.z_residual)

    @property
    def fitted_values(self) -> np.ndarray:
        """Outcome minus the residuals of the final regression."""
        return self._y - np.asarray(self._result.resid, dtype=float)

    @property
    def r_squared(self) -> float:
        """Squared correlation of ``fitted_values`` with the outcome."""
        return _squared_correlation(self._y, self.fitted_values)

    @property
    def nuisance_r_squared(self) -> float:
        """Squared correlation of the outcome nuisance predictions with the outcome."""
        return _squared_correlation(self._y, self._y_hat)

    @property
    def incremental_r_squared(self) -> float:
        """
        ``r_squared - nuisance_r_squared``.

        A diagnostic of how much the treatment term adds over the outcome
        nuisance model alone; it has no estimand interpretation.
        """
        return self.r_squared - self.nuisance_r_squared

    @property
    def residual_r_squared(self) -> float:
        """R² of the residual-on-residual regression itself."""
        return float(self._result.rsquared)

    @property
    def condition_number(self) -> float:
        """
        ``var(z) / var(z_residual)``: how much treatment variation the
        confounders absorb. Large values signal weak identification.
        """
        return float(np.var(self._z) / np.var(self._residuals.z_residual))

    @property
    def unadjusted_effect(self) -> float:
        """
        Naive estimate: OLS slope of outcome on treatment, no adjustment.

        ``nan`` when the naive regression itself is degenerate, e.g. a binary
        treatment with a single treated unit (leverage 1).
        """
        if self._unadjusted is None:
            return float("nan")
        return float(self._unadjusted.params[SLOPE])

    @property
    def unadjusted_std_err(self) -> float:
        """HC2 standard error of the naive estimate, ``nan`` when unavailable."""
        if self._unadjusted is None:
            return float("nan")
        return float(self._unadjusted.bse[SLOPE])

    @property
    def method(self) -> str:
        """Name of the nuisance backend."""
        return self._estimator.backend.name

    @property
    def confounders(self) -> list[str]:
        return list(self._confounders)

    @property
    def assumptions(self) -> list[Assumption]:
        """Assumptions required for a causal interpretation."""
        return list(ADJUSTMENT_ASSUMPTIONS)

    @property
    def statsmodels_result(self):
        """The residual-on-residual statsmodels result, for full diagnostics."""
        return self._result

    @property
    def statsmodels_unadjusted_result(self):
        """The naive outcome-on-treatment statsmodels result, or ``None`` if it was degenerate."""
        return self._unadjusted

    def executive_summary(self) -> str:
        """Narrative explanation of the method, assumptions, and result."""
        from .._explain import explain_adjustment
        return explain_adjustment(self)

    def summary(self) -> str:
        lo, hi = self.conf_int
        partial = "" if self._estimator.residualize_treatment else "  (outcome-only residualisation)"

        lines = [
            "",
            f"Nonparametric Adjustment: {self._treatment} → {self._outcome}",
            f"  Estimand: ATE   Nuisance model: {self.method}{partial}",
            "─" * 58,
            f"  ATE estimate         : {self.effect:>10.4f}  (adjusting for: {', '.join(self._confounders)})",
        ]
        if self._unadjusted is None:
            lines.append(f"  Unadjusted estimate  : {'n/a':>10}  (naive regression is degenerate)")
        else:
            bias = self.unadjusted_effect - self.effect
            lines += [
                f"  Unadjusted estimate  : {self.unadjusted_effect:>10.4f}  (no controls)",
                f"  Confounding bias     : {bias:>+10.4f}",
            ]
        lines += [
            "",
            f"  Std. error (HC2)     : {self.std_err:>10.4f}",
            f"  t value              : {self.tvalue:>10.4f}  (df = {self.n_obs - 2})",
            f"  p-value              : {self.pvalue:>10.4f}",
            f"  95% CI               : [{lo:.4f}, {hi:.4f}]",
            "",
            f"  R²                   : {self.r_squared:>10.4f}",
            f"  Incremental R²       : {self.incremental_r_squared:>+10.4f}  (over the outcome nuisance model)",
            f"  Condition number     : {self.condition_number:>10.2f}  (var(Z) / var(Z residual))",
            "",
            "  Assumptions",
            "  " + "┄" * 48,
        ]
        for a in ADJUSTMENT_ASSUMPTIONS:
            lines.append(f"  {a.fmt_tag()}  {a.name}")
        lines.append("")
        return "\n".join(lines)

    def refute(self, data: pd.DataFrame):
        """
        Run refutation checks against this estimate.

        - **Placebo treatment**: permutes the treatment column, refits the
          treatment nuisance model and re-estimates with the original outcome
          residuals. The placebo effect should be near zero.
        - **Random common cause**: adds a pure-noise confounder, refits both
          nuisance models and checks the estimate is stable.

        Parameters
        ----------
        data : pd.DataFrame
            The same dataframe passed to ``fit()``.
        """
        from ..refutations.adjustment import (
            AdjustmentRefutationReport,
            _check_placebo_treatment,
            _check_random_common_cause,
        )
        checks = [
            _check_placebo_treatment(self._estimator, data, self._y_hat, self.std_err),
            _check_random_common_cause(self._estimator, data, self.effect, self.std_err),
        ]
        return AdjustmentRefutationReport(
            checks=checks,
            treatment=self._treatment,
            outcome=self._outcome,
        )

    def __repr__(self) -> str:
        return self.summary()


# ── Estimator ──────────────────────────────────────────────────────────────────

class NonparametricAdjustment:
    """
    Residual-on-residual ATE estimator with nonparametric nuisance models.

    A Frisch-Waugh-Lovell regression in which the linear partialling-out
    step is replaced by a flexible regressor:

    1. Fits ``E[outcome | confounders]`` and ``E[treatment | confounders]``
       with the chosen backend (random forest, SVM or kernel regression).
       The two fits are independent and run concurrently when ``n_jobs``
       is not 1.
    2. Subtracts the predictions to get outcome and treatment residuals.
    3. Regresses the outcome residual on the treatment residual by OLS and
       reports the slope as the ATE, with HC2 robust inference.

    Parameters
    ----------
    treatment, outcome : str
        Column names. The treatment may be binary or continuous.
    confounders : list of str
        Columns to adjust for. Numeric, boolean and categorical columns
        may be mixed.
    method : str or NuisanceRegressor
        ``"random_forest"`` (default), ``"svm"``, ``"kernel"``, or a
        backend instance.
    residualize_treatment : bool
        ``False`` residualises only the outcome and regresses it on the raw
        treatment.
    n_jobs : int
        Number of threads for the two nuisance fits.
    random_state : int or None
        Seed for stochastic backends.
    max_condition_number : float
        Largest tolerated ``var(Z) / var(Z residual)``. Beyond it the treatment
        is taken to be determined by the confounders and ``fit`` raises
        ``DegenerateDesign``. Pass ``np.inf`` to only warn.
    **backend_params
        Passed to the backend constructor, e.g. ``n_estimators=1000``.

    Raises
    ------
    ``UnsupportedBackend``
        If ``method`` is not a supported backend. Raised here, before any
        data is seen.
    ``ValueError``
        If the variable specification is inconsistent.

    Example::

        result = NonparametricAdjustment(
            treatment="Z", outcome="Y", confounders=["X"], method="random_forest"
        ).fit(df)
        print(result.summary())
    """

    def __init__(
        self,
        treatment: str,
        outcome: str,
        confounders: list[str],
        method="random_forest",
        residualize_treatment: bool = True,
        n_jobs: int = 1,
        random_state: int | None = DEFAULT_SEED,
        max_condition_number: float = CONDITION_MAX,
        **backend_params,
    ) -> None:
        self._backend = get_backend(method, random_state=random_state, **backend_params)
        self._method = method
        self._treatment = treatment
        self._outcome = outcome
        self._confounders = [confounders] if isinstance(confounders, str) else list(confounders)
        self._residualize_treatment = residualize_treatment
        self._n_jobs = n_jobs
        self._random_state = random_state
        self._max_condition_number = max_condition_number
        self._backend_params = backend_params
        self._validate_inputs()

    def _validate_inputs(self) -> None:
        T, Y, X = self._treatment, self._outcome, self._confounders
        if T == Y:
            raise ValueError("Treatment and outcome must be different variables.")
        if not X:
            raise ValueError("At least one confounder is required.")
        if len(set(X)) != len(X):
            raise ValueError(f"Confounders contain duplicates: {X}")
        for label, var in [("Treatment", T), ("Outcome", Y)]:
            if var in X:
                raise ValueError(f"{label} '{var}' cannot also be a confounder.")
        if not self._max_condition_number > 1.0:
            raise ValueError(
                f"max_condition_number must be greater than 1, got {self._max_condition_number}."
            )

    @property
    def treatment(self) -> str:
        return self._treatment

    @property
    def outcome(self) -> str:
        return self._outcome

    @property
    def confounders(self) -> list[str]:
        return list(self._confounders)

    @property
    def backend(self) -> NuisanceRegressor:
        return self._backend

    @property
    def residualize_treatment(self) -> bool:
        return self._residualize_treatment

    def _with_confounders(self, confounders: list[str]) -> NonparametricAdjustment:
        """Same configuration, different adjustment set."""
        return NonparametricAdjustment(
            self._treatment,
            self._outcome,
            confounders,
            method=self._method,
            residualize_treatment=self._residualize_treatment,
            n_jobs=self._n_jobs,
            random_state=self._random_state,
            max_condition_number=self._max_condition_number,
            **self._backend_params,
        )

    def _validate_data(self, data: pd.DataFrame) -> None:
        columns = set(data.columns)
        for label, var in [("Treatment", self._treatment), ("Outcome", self._outcome)]:
            if var not in columns:
                raise ValueError(f"{label} column '{var}' not found in dataframe.")
            if not pd.api.types.is_numeric_dtype(data[var]):
                raise ValueError(f"{label} column '{var}' must be numeric or boolean, got {data[var].dtype}.")

        missing = [c for c in self._confounders if c not in columns]
        if missing:
            raise ValueError(f"Confounder column(s) {missing} not found in dataframe.")

        used = [self._outcome, self._treatment, *self._confounders]
        incomplete = [c for c in used if data[c].isna().any()]
        if incomplete:
            raise ValueError(
                f"Column(s) {incomplete} contain missing values. "
                f"Drop or impute incomplete rows before estimation."
            )
        if len(data) < 3:
            raise ValueError(f"At least 3 observations are required, got {len(data)}.")

    def _fit_nuisances(self, data: pd.DataFrame):
        targets = [self._outcome]
        if self._residualize_treatment:
            targets.append(self._treatment)

        if self._n_jobs == 1:
            fits = [fit_nuisance(self._backend, t, self._confounders, data) for t in targets]
        else:
            fits = Parallel(n_jobs=self._n_jobs, prefer="threads")(
                delayed(fit_nuisance)(self._backend, t, self._confounders, data)
                for t in targets
            )
        return fits

    def fit(self, data: pd.DataFrame) -> EffectEstimate:
        """
        Residualise outcome and treatment on the confounders and estimate the ATE.

        Parameters
        ----------
        data : pd.DataFrame
            One row per observation with outcome, treatment and confounder
            columns and no missing values. Not modified.

        Raises
        ------
        ``ValueError``
            If columns are missing, non-numeric where numbers are needed,
            or incomplete.
        ``NuisanceFitFailure``
            If a nuisance model fails to fit.
        ``ResidualLengthMismatch``
            If a nuisance model does not return one prediction per row.
        ``DegenerateDesign``
            If the residualised treatment has no variation, or the confounders
            explain so much of it that the condition number exceeds
            ``max_condition_number``.
        """
        self._validate_data(data)
        T, Y = self._treatment, self._outcome
        logger.debug("Estimating effect of %r on %r with %d rows", T, Y, len(data))

        y = data[Y].to_numpy(dtype=float)
        z = data[T].to_numpy(dtype=float)

        fits = self._fit_nuisances(data)
        y_hat = fits[0].predictions
        z_hat = fits[1].predictions if self._residualize_treatment else np.zeros(len(z))

        return self._estimate(y, z, y_hat, z_hat)

    def _estimate(self, y, z, y_hat, z_hat) -> EffectEstimate:
        """Residual-on-residual stage, given the nuisance predictions."""
        T, Y = self._treatment, self._outcome
        residuals = residualize(y, z, y_hat, z_hat, outcome=Y, treatment=T)
        result = estimate_effect(residuals, reference_variance=float(np.var(z)), variable=T)
        try:
            unadjusted = ols_hc2(y, z, name=SLOPE, variable=T)
        except DegenerateDesign as exc:
            # Comparison only; a degenerate naive regression is left unreported.
            logger.debug("Unadjusted regression skipped: %s", exc)
            unadjusted = None

        estimate = EffectEstimate(
            result,
            unadjusted,
            residuals,
            outcome_values=y,
            outcome_predictions=y_hat,
            treatment_values=z,
            estimator=self,
        )
        if not self._residualize_treatment:
            return estimate

        kappa = estimate.condition_number
        explained = 1 - 1 / kappa
        if kappa > self._max_condition_number:
            raise DegenerateDesign(
                f"The confounders explain {explained:.1%} of the variance of '{T}' "
                f"(condition number {kappa:.1f} > {self._max_condition_number:g}). "
                f"The treatment is close to a deterministic function of the "
                f"confounders: a positivity violation.",
                stage="effect",
                variable=T,
            )
        if kappa > CONDITION_WARN:
            warnings.warn(
                f"The confounders explain {explained:.1%} of the variance of '{T}' "
                f"(condition number {kappa:.1f}). "
                f"Overlap is weak and the estimate may be unstable.",
                UserWarning,
                stacklevel=3,
            )
        return estimate


def estimate_ate(
    outcome: str,
    treatment: str,
    confounders: list[str],
    data: pd.DataFrame,
    method="random_forest",
    **kwargs,
) -> EffectEstimate:
    """
    Functional form of ``NonparametricAdjustment(...).fit(data)``.

    Extra keyword arguments go to ``NonparametricAdjustment``.
    """
    return NonparametricAdjustment(
        treatment=treatment,
        outcome=outcome,
        confounders=confounders,
        method=method,
        **kwargs,
    ).fit(data)
