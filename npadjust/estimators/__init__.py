from .adjustment import NonparametricAdjustment, EffectEstimate, estimate_ate
from ._residualize import ResidualPair, residualize
from ._effect import estimate_effect, hc2_leverage

__all__ = [
    "NonparametricAdjustment", "EffectEstimate", "estimate_ate",
    "ResidualPair", "residualize",
    "estimate_effect", "hc2_leverage",
]
