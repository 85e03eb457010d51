# ===================================== IMPORTS ====================================== #

# Standard Library Imports
from typing import Iterable, Optional

# ==================================== EXCEPTIONS ==================================== #

class AmpliconError(Exception):
    """Base class for errors raised by the analysis core."""


class StructuralError(AmpliconError, ValueError):
    """Malformed input: ids missing from metadata or lineage, negative counts,
    an invalid distance matrix, taxa missing from the tree."""


class EmptyInputError(AmpliconError, ValueError):
    """A filter or transform left zero samples or zero taxa."""

    def __init__(self, step: str, axis: str, detail: Optional[str] = None) -> None:
        self.step, self.axis = step, axis
        msg = f"'{step}' left no {axis}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class DivideByZeroError(AmpliconError, ZeroDivisionError):
    """Row-sum normalisation hit one or more all-zero samples."""

    def __init__(self, step: str, sample_ids: Iterable[str]) -> None:
        self.step = step
        self.sample_ids = list(sample_ids)
        shown = ", ".join(map(str, self.sample_ids[:10]))
        if len(self.sample_ids) > 10:
            shown += ", ..."
        super().__init__(
            f"'{step}' requires non-zero sample totals; "
            f"{len(self.sample_ids)} all-zero sample(s): {shown}. "
            "Prune empty samples first."
        )


class ConvergenceWarning(UserWarning):
    """A per-taxon model fit did not converge or had undefined variance."""
