"""
Narrative explanation of an adjusted effect estimate.

``explain_adjustment`` takes an ``EffectEstimate`` and returns the
multi-line text shown by ``EffectEstimate.executive_summary()``.
"""
from __future__ import annotations

import numpy as np

_SEP = "━" * 66

_METHOD_NAMES = {
    "random_forest": "a random forest (out-of-bag predictions)",
    "svm":           "support vector regression",
    "kernel":        "local-constant kernel regression",
}


def _fmt_p(p: float) -> str:
    if p < 0.001:
        return "p < 0.001"
    return f"p = {p:.3f}"


def _list_vars(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _effect_phrase(effect: float, treatment: str, outcome: str) -> str:
    direction = "increase" if effect >= 0 else "decrease"
    return (
        f"a one-unit increase in {treatment} is estimated to cause "
        f"an {direction} of {abs(effect):.4f} in {outcome}"
    )


def _assumptions_section(assumptions: list) -> str:
    n_u = sum(1 for a in assumptions if not a.testable)
    lines = [
        "ASSUMPTIONS",
        f"{n_u} of the {len(assumptions)} assumptions below cannot be checked in the "
        f"data and must be justified on substantive grounds.",
        "",
    ]
    lines += [f"  {a.fmt_tag()}  {a.name}" for a in assumptions]
    return "\n".join(lines)


def explain_adjustment(result) -> str:
    T, Y = result._treatment, result._outcome
    X = result.confounders
    lo, hi = result.conf_int
    learner = _METHOD_NAMES.get(result.method, f"the {result.method} backend")

    if result._estimator.residualize_treatment:
        partialling = (
            f"Both {Y} and {T} are predicted from {_list_vars(X)} with {learner}, "
            f"and the prediction errors (residuals) are kept. Regressing the {Y} "
            f"residual on the {T} residual isolates the variation in {T} that the "
            f"confounders do not explain, as in the Frisch-Waugh-Lovell theorem, "
            f"without assuming the confounders act linearly."
        )
    else:
        partialling = (
            f"{Y} is predicted from {_list_vars(X)} with {learner} and its residual "
            f"is regressed on {T} directly; {T} itself is not residualised."
        )

    overlap = (
        f"The confounders explain {1 - 1 / result.condition_number:.1%} of the "
        f"variance of {T}."
    )

    if np.isnan(result.unadjusted_effect):
        naive = (
            f"The unadjusted (naive) regression of {Y} on {T} is degenerate, so no "
            f"naive comparison is reported. {overlap}"
        )
    else:
        bias = result.unadjusted_effect - result.effect
        naive = (
            f"The unadjusted (naive) estimate was {result.unadjusted_effect:.4f}. "
            f"The difference of {abs(bias):.4f} is the confounding bias removed by "
            f"adjustment. {overlap}"
        )

    blocks = [
        "\n".join([_SEP, "Executive Summary — Nonparametric Covariate Adjustment",
                   f"  {T} → {Y}  |  estimand: ATE", _SEP]),

        "\n".join([
            "METHOD",
            partialling,
            "Standard errors are heteroskedasticity-consistent (HC2), correcting "
            "each squared residual for its leverage.",
        ]),

        _assumptions_section(result.assumptions),

        "\n".join([
            "RESULT",
            f"Adjusting for {_list_vars(X)}, {_effect_phrase(result.effect, T, Y)} "
            f"(95% CI: [{lo:.4f}, {hi:.4f}], SE = {result.std_err:.4f}, "
            f"{_fmt_p(result.pvalue)}, n = {result.n_obs}).",
            "",
            naive,
        ]),

        "\n".join([
            "CAVEATS",
            f"The estimate is causal only if {_list_vars(X)} "
            f"{'captures' if len(X) == 1 else 'capture'} all confounding of {T} "
            f"and {Y}. Flexible nuisance models remove nonlinear confounding that "
            f"a linear control would miss, but poorly fitted nuisance models leave "
            f"bias behind. If the treatment effect varies across units, the "
            f"estimate is a weighted average that favours units whose treatment is "
            f"least predictable from the confounders.",
        ]),

        _SEP,
    ]
    return "\n\n".join(blocks)
