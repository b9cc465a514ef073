import logging

from .estimators import (
    NonparametricAdjustment, EffectEstimate, estimate_ate,
    ResidualPair, residualize, estimate_effect, hc2_leverage,
)
from .nuisance import (
    NuisanceRegressor, NuisanceFit, SklearnBackend,
    RandomForestBackend, SVMBackend, KernelRegressionBackend,
    get_backend, fit_nuisance, BACKEND_NAMES,
)
from .refutations import AdjustmentRefutationReport, RefutationCheck
from .refutations._check import Assumption
from ._exceptions import (
    AdjustmentError, UnsupportedBackend, NuisanceFitFailure,
    ResidualLengthMismatch, DegenerateDesign,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "NonparametricAdjustment", "EffectEstimate", "estimate_ate",
    "ResidualPair", "residualize", "estimate_effect", "hc2_leverage",
    "NuisanceRegressor", "NuisanceFit", "SklearnBackend",
    "RandomForestBackend", "SVMBackend", "KernelRegressionBackend",
    "get_backend", "fit_nuisance", "BACKEND_NAMES",
    "AdjustmentRefutationReport", "RefutationCheck", "Assumption",
    "AdjustmentError", "UnsupportedBackend", "NuisanceFitFailure",
    "ResidualLengthMismatch", "DegenerateDesign",
]
