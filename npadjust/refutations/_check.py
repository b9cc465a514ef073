from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Assumption:
    """
    An identifying assumption behind a causal reading of the estimate.

    ``testable`` says whether the data can speak to it (``True``) or it has
    to be argued from subject-matter knowledge (``False``).
    """

    name: str
    testable: bool

    def fmt_tag(self) -> str:
        """Fixed-width label used in summaries."""
        return "[  testable  ]" if self.testable else "[ untestable ]"


@dataclass(frozen=True)
class RefutationCheck:
    """
    Outcome of one refutation check.

    ``statistic`` is the number the check judged (a placebo effect or a
    shift in the estimate) and ``threshold`` the bound it was held to; both
    are ``nan`` when the check could not be run.
    """

    name: str
    passed: bool
    detail: str
    statistic: float = float("nan")
    threshold: float = float("nan")

    def __repr__(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return f"RefutationCheck({status!r}, {self.name!r})"


class RefutationReport:
    """
    A set of refutation checks run against one estimate.

    Subclasses provide ``_title`` for the first line of ``summary()``.
    """

    _title = "Refutation Report"

    def __init__(self, checks: list[RefutationCheck], treatment: str, outcome: str) -> None:
        self._checks = list(checks)
        self._treatment = treatment
        self._outcome = outcome

    @property
    def checks(self) -> list[RefutationCheck]:
        """Checks in the order they ran (a copy)."""
        return list(self._checks)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self._checks)

    @property
    def failed_checks(self) -> list[RefutationCheck]:
        return [c for c in self._checks if not c.passed]

    def summary(self) -> str:
        lines = ["", f"{self._title}: {self._treatment} → {self._outcome}", "─" * 50]
        lines += [
            f"  [{'PASS' if c.passed else 'FAIL'}]  {c.name}: {c.detail}"
            for c in self._checks
        ]
        lines.append("")
        if self.passed:
            lines.append("  All checks passed.")
        else:
            lines.append(f"  {len(self.failed_checks)} of {len(self._checks)} check(s) failed.")
        lines.append("")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()
