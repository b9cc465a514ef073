"""
Nuisance regressors: flexible models of ``E[target | confounders]``.

Every backend implements ``NuisanceRegressor.fit(target, confounders, data)``
and returns a ``NuisanceFit`` holding the in-sample predictions and a
``predict`` function for new rows. The estimator only ever consumes the
in-sample predictions; the models themselves come from scikit-learn and
statsmodels and are never reimplemented here.

Three backends are built in, with defaults chosen to match the usual R
tools for the same job:

- ``"random_forest"``: ``RandomForestRegressor`` with 500 trees, leaves of
  at least 5 observations and a third of the features tried per split.
  In-sample predictions are out-of-bag predictions, so each observation is
  predicted only by trees that never saw it.
- ``"svm"``: epsilon support vector regression with an RBF kernel on
  standardised features and a standardised target.
- ``"kernel"``: local-constant kernel regression with least-squares
  cross-validated bandwidths, handling mixed continuous / categorical data.

New backends subclass ``NuisanceRegressor`` (or wrap any scikit-learn
regressor in ``SklearnBackend``) and can be passed directly as ``method``.
"""
from __future__ import annotations

import logging
from typing import Callable

import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.compose import TransformedTargetRegressor
from sklearn.ensemble import RandomForestRegressor
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVR
from statsmodels.nonparametric.kernel_regression import KernelReg

from ._exceptions import AdjustmentError, NuisanceFitFailure, UnsupportedBackend

logger = logging.getLogger(__name__)

BACKEND_NAMES = ("random_forest", "svm", "kernel")

# Accepted spellings, compared after lower-casing and dropping "_", "-" and spaces.
_ALIASES = {
    "randomforest": "random_forest",
    "rf":           "random_forest",
    "svm":          "svm",
    "svr":          "svm",
    "kernel":           "kernel",
    "kernelregression": "kernel",
    "npreg":            "kernel",
}

RF_DEFAULTS = {
    "n_estimators":     500,
    "min_samples_leaf": 5,
    "max_features":     1 / 3,
}

SVM_DEFAULTS = {
    "kernel":  "rbf",
    "C":       1.0,
    "epsilon": 0.1,
    "gamma":   "scale",
}


# ── Fitted nuisance model ──────────────────────────────────────────────────────

class NuisanceFit:
    """
    A fitted nuisance model for one target variable.

    ``predictions`` are the in-sample fitted values, one per row of the data
    the model was fitted on, in the same order. ``predict(data)`` evaluates
    the model on new rows when the backend supports it.
    """

    def __init__(
        self,
        model,
        predictions,
        predict_fn: Callable[[pd.DataFrame], np.ndarray] | None,
        target: str,
        backend: str,
    ) -> None:
        self._model = model
        self._predictions = np.asarray(predictions, dtype=float)
        self._predict_fn = predict_fn
        self._target = target
        self._backend = backend

    @property
    def model(self):
        """The underlying fitted library object."""
        return self._model

    @property
    def predictions(self) -> np.ndarray:
        """In-sample predictions of the target."""
        return self._predictions.copy()

    @property
    def target(self) -> str:
        return self._target

    @property
    def backend(self) -> str:
        return self._backend

    def predict(self, data: pd.DataFrame) -> np.ndarray:
        """Predict the target for the rows of ``data``."""
        if self._predict_fn is None:
            raise NotImplementedError(
                f"The {self._backend} backend does not support out-of-sample prediction."
            )
        return np.asarray(self._predict_fn(data), dtype=float)

    def __repr__(self) -> str:
        return f"NuisanceFit(target={self._target!r}, backend={self._backend!r}, n={len(self._predictions)})"


# ── Backend interface ──────────────────────────────────────────────────────────

class NuisanceRegressor:
    """
    Interface for nuisance backends.

    Subclasses implement ``fit`` and set ``name``. ``fit`` must not modify
    ``data`` and must return one prediction per row, in row order.
    """

    name = "custom"

    def fit(self, target: str, confounders: list[str], data: pd.DataFrame) -> NuisanceFit:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _design_matrix(
    data: pd.DataFrame,
    confounders: list[str],
    columns: list[str] | None = None,
) -> pd.DataFrame:
    """Numeric design matrix with non-numeric confounders one-hot encoded."""
    X = pd.get_dummies(data[confounders], dtype=float).astype(float)
    if columns is not None:
        # New data may lack some category levels seen at fit time.
        X = X.reindex(columns=columns, fill_value=0.0)
    return X


class SklearnBackend(NuisanceRegressor):
    """
    Adapter for any scikit-learn regressor.

    The estimator is cloned for every fit, so one backend can serve both
    nuisance fits, including concurrently.

    Example::

        from sklearn.ensemble import GradientBoostingRegressor
        backend = SklearnBackend(GradientBoostingRegressor())
        result = NonparametricAdjustment("z", "y", ["x"], method=backend).fit(df)
    """

    name = "sklearn"

    def __init__(self, estimator) -> None:
        self.estimator = estimator

    def _in_sample(self, model, X: np.ndarray, target: str) -> np.ndarray:
        return model.predict(X)

    def fit(self, target: str, confounders: list[str], data: pd.DataFrame) -> NuisanceFit:
        design = _design_matrix(data, confounders)
        columns = list(design.columns)
        X = design.to_numpy(dtype=float)
        y = data[target].to_numpy(dtype=float)

        model = clone(self.estimator).fit(X, y)
        predictions = self._in_sample(model, X, target)

        def predict(new_data: pd.DataFrame) -> np.ndarray:
            return model.predict(_design_matrix(new_data, confounders, columns).to_numpy(dtype=float))

        return NuisanceFit(model, predictions, predict, target=target, backend=self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.estimator!r})"


class RandomForestBackend(SklearnBackend):
    """
    Random forest regression (``sklearn.ensemble.RandomForestRegressor``).

    With ``oob=True`` (the default) the in-sample predictions are the
    out-of-bag predictions. In-sample forest predictions nearly interpolate
    the training data and would leave residuals close to zero.
    """

    name = "random_forest"

    def __init__(self, oob: bool = True, random_state: int | None = None, **params) -> None:
        self.oob = oob
        settings = {**RF_DEFAULTS, **params}
        super().__init__(
            RandomForestRegressor(oob_score=oob, random_state=random_state, **settings)
        )

    def _in_sample(self, model, X: np.ndarray, target: str) -> np.ndarray:
        if not self.oob:
            return model.predict(X)

        # scikit-learn writes 0 for rows that every tree drew into its sample.
        n = len(X)
        oob_trees = np.zeros(n, dtype=int)
        for in_bag in model.estimators_samples_:
            oob_trees += ~np.isin(np.arange(n), in_bag)
        uncovered = int(np.sum(oob_trees == 0))
        if uncovered:
            raise NuisanceFitFailure(
                f"The {self.name} nuisance model for '{target}' has no out-of-bag "
                f"prediction for {uncovered} of {n} observation(s). Increase "
                f"n_estimators (currently {model.n_estimators}) or pass oob=False.",
                stage="nuisance",
                variable=target,
            )
        return model.oob_prediction_


class SVMBackend(SklearnBackend):
    """
    Epsilon support vector regression (``sklearn.svm.SVR``).

    Features and target are both standardised before fitting, and
    predictions are mapped back to the target's scale.
    """

    name = "svm"

    def __init__(self, **params) -> None:
        settings = {**SVM_DEFAULTS, **params}
        super().__init__(
            TransformedTargetRegressor(
                regressor=make_pipeline(StandardScaler(), SVR(**settings)),
                transformer=StandardScaler(),
            )
        )


class KernelRegressionBackend(NuisanceRegressor):
    """
    Nonparametric kernel regression
    (``statsmodels.nonparametric.kernel_regression.KernelReg``).

    Numeric confounders use a continuous kernel; boolean, object and
    unordered categorical confounders an unordered kernel; ordered
    categoricals an ordered kernel. Bandwidths are chosen by least-squares
    cross-validation unless ``bw`` is given, which is O(n²) per evaluation
    and slow on large samples.

    Parameters
    ----------
    reg_type : str
        ``"lc"`` (local constant, default) or ``"ll"`` (local linear).
    bw : str or array-like
        ``"cv_ls"``, ``"aic"`` or explicit bandwidths, one per confounder.
    """

    name = "kernel"

    def __init__(self, reg_type: str = "lc", bw="cv_ls", **params) -> None:
        self.reg_type = reg_type
        self.bw = bw
        self.params = params

    @staticmethod
    def _encode(
        data: pd.DataFrame,
        confounders: list[str],
        levels: dict[str, pd.Index] | None = None,
    ) -> tuple[np.ndarray, str, dict[str, pd.Index]]:
        columns, var_type, seen = [], "", {}
        for name in confounders:
            col = data[name]
            if pd.api.types.is_bool_dtype(col) or not pd.api.types.is_numeric_dtype(col):
                if isinstance(col.dtype, pd.CategoricalDtype):
                    cats = levels[name] if levels else col.cat.categories
                    codes = pd.Categorical(col, categories=cats, ordered=col.cat.ordered).codes
                    var_type += "o" if col.cat.ordered else "u"
                else:
                    cats = levels[name] if levels else pd.Index(sorted(col.unique()))
                    codes = pd.Categorical(col, categories=cats).codes
                    var_type += "u"
                seen[name] = cats
                columns.append(codes.astype(float))
            else:
                columns.append(col.to_numpy(dtype=float))
                var_type += "c"
        return np.column_stack(columns), var_type, seen

    def fit(self, target: str, confounders: list[str], data: pd.DataFrame) -> NuisanceFit:
        exog, var_type, levels = self._encode(data, confounders)
        model = KernelReg(
            endog=data[target].to_numpy(dtype=float),
            exog=exog,
            var_type=var_type,
            reg_type=self.reg_type,
            bw=self.bw,
            **self.params,
        )
        predictions, _ = model.fit()
        logger.debug("Kernel bandwidths for %s: %s", target, model.bw)

        def predict(new_data: pd.DataFrame) -> np.ndarray:
            new_exog, _, _ = self._encode(new_data, confounders, levels)
            mean, _ = model.fit(new_exog)
            return mean

        return NuisanceFit(model, predictions, predict, target=target, backend=self.name)

    def __repr__(self) -> str:
        return f"KernelRegressionBackend(reg_type={self.reg_type!r}, bw={self.bw!r})"


# ── Selection and fitting ──────────────────────────────────────────────────────

def get_backend(method="random_forest", random_state: int | None = None, **params) -> NuisanceRegressor:
    """
    Resolve a method selector to a backend instance.

    ``method`` is a backend name (``"random_forest"``, ``"svm"``,
    ``"kernel"``, case-insensitive, common aliases accepted) or an existing
    ``NuisanceRegressor``, which is returned unchanged. ``random_state`` only
    applies to the random forest; ``params`` go to the backend constructor.

    Raises
    ------
    ``UnsupportedBackend``
        If ``method`` is not a known name or backend instance.
    """
    if isinstance(method, NuisanceRegressor):
        if params:
            raise ValueError(
                f"Backend parameters {sorted(params)} cannot be applied to an "
                f"already constructed {type(method).__name__}."
            )
        return method
    if not isinstance(method, str):
        raise UnsupportedBackend(method)

    key = _ALIASES.get(method.lower().replace("_", "").replace("-", "").replace(" ", ""))
    if key == "random_forest":
        return RandomForestBackend(random_state=random_state, **params)
    if key == "svm":
        return SVMBackend(**params)
    if key == "kernel":
        return KernelRegressionBackend(**params)
    raise UnsupportedBackend(method)


def fit_nuisance(
    backend: NuisanceRegressor,
    target: str,
    confounders: list[str],
    data: pd.DataFrame,
) -> NuisanceFit:
    """
    Fit ``backend`` to ``target`` and check its predictions are usable.

    Backends may return a ``NuisanceFit`` or a bare prediction vector. Any
    library error, or non-finite predictions, raise ``NuisanceFitFailure``.
    Length checks are left to the residualiser.
    """
    logger.debug("Fitting %s nuisance model for %r on %s", backend.name, target, confounders)
    try:
        fitted = backend.fit(target, list(confounders), data)
        if not isinstance(fitted, NuisanceFit):
            fitted = NuisanceFit(None, fitted, None, target=target, backend=backend.name)
    except AdjustmentError:
        raise
    except Exception as exc:
        raise NuisanceFitFailure(
            f"The {backend.name} nuisance model for '{target}' failed to fit: "
            f"{type(exc).__name__}: {exc}",
            stage="nuisance",
            variable=target,
        ) from exc

    predictions = fitted.predictions
    if not np.all(np.isfinite(predictions)):
        raise NuisanceFitFailure(
            f"The {backend.name} nuisance model for '{target}' produced "
            f"{int(np.sum(~np.isfinite(predictions)))} non-finite prediction(s).",
            stage="nuisance",
            variable=target,
        )
    return fitted
