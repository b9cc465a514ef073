from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from .._exceptions import ResidualLengthMismatch


@dataclass(frozen=True)
class ResidualPair:
    """
    Outcome and treatment residuals, one entry per observation.

    Both arrays are read-only copies. ``to_frame()`` gives the two columns
    side by side, e.g. for a residual-on-residual scatter plot.
    """

    y_residual: np.ndarray
    z_residual: np.ndarray

    def __post_init__(self) -> None:
        y = np.array(self.y_residual, dtype=float)
        z = np.array(self.z_residual, dtype=float)
        if len(y) != len(z):
            raise ResidualLengthMismatch(
                f"Residual vectors differ in length: y_residual has {len(y)}, "
                f"z_residual has {len(z)}.",
                stage="residualize",
            )
        y.setflags(write=False)
        z.setflags(write=False)
        object.__setattr__(self, "y_residual", y)
        object.__setattr__(self, "z_residual", z)

    def __len__(self) -> int:
        return len(self.y_residual)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"y_residual": self.y_residual, "z_residual": self.z_residual})


def _as_vector(values, label: str) -> np.ndarray:
    # Positional only: a pandas index is deliberately ignored.
    arr = np.asarray(values, dtype=float)
    if arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr[:, 0]
    if arr.ndim != 1:
        raise ResidualLengthMismatch(
            f"Expected a 1-D vector for {label}, got shape {arr.shape}.",
            stage="residualize",
            variable=label,
        )
    return arr


def residualize(
    y,
    z,
    y_hat,
    z_hat,
    outcome: str = "y",
    treatment: str = "z",
) -> ResidualPair:
    """
    Subtract nuisance predictions from the observed outcome and treatment.

    ``y_residual[i] = y[i] - y_hat[i]`` and ``z_residual[i] = z[i] - z_hat[i]``.
    Inputs are matched by position. Any length mismatch fails immediately;
    nothing is truncated or realigned.

    Raises
    ------
    ``ResidualLengthMismatch``
        If the four inputs do not all have the same length.
    """
    y = _as_vector(y, outcome)
    n = len(y)
    vectors = {}
    for label, values in [
        (treatment, z),
        (f"{outcome} predictions", y_hat),
        (f"{treatment} predictions", z_hat),
    ]:
        arr = _as_vector(values, label)
        if len(arr) != n:
            raise ResidualLengthMismatch(
                f"{label} has {len(arr)} entries but the dataset has {n} observations. "
                f"Nuisance predictions must cover every row, in row order.",
                stage="residualize",
                variable=label,
            )
        vectors[label] = arr

    return ResidualPair(
        y_residual=y - vectors[f"{outcome} predictions"],
        z_residual=vectors[treatment] - vectors[f"{treatment} predictions"],
    )
