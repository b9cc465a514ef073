from .adjustment import AdjustmentRefutationReport
from ._check import Assumption, RefutationCheck, RefutationReport

__all__ = ["AdjustmentRefutationReport", "Assumption", "RefutationCheck", "RefutationReport"]
