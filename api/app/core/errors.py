"""Domain errors raised by the registry and the stats services.

Routers never catch these; ``app.main`` maps each family to an HTTP status.
``InsufficientDataError`` and ``StatisticalComputationError`` are normally
caught inside the analyzers and reported as a status on the result instead.
"""

from __future__ import annotations


class ExperimentError(Exception):
    """Base class for every error the stats core raises."""


# ----------------------------------------------------------------------
# Missing rows (404)
# ----------------------------------------------------------------------

class NotFoundError(ExperimentError):
    pass


class ExperimentNotFoundError(NotFoundError):
    def __init__(self, experiment_id) -> None:
        super().__init__(f"Experiment {experiment_id} not found")
        self.experiment_id = experiment_id


class VariantNotFoundError(NotFoundError):
    def __init__(self, variant_id) -> None:
        super().__init__(f"Variant {variant_id} not found")
        self.variant_id = variant_id


class AssignmentNotFoundError(NotFoundError):
    def __init__(self, experiment_id, recipient_id: str) -> None:
        super().__init__(f"Recipient {recipient_id!r} has no assignment in experiment {experiment_id}")
        self.experiment_id = experiment_id
        self.recipient_id = recipient_id


class PowerAnalysisNotFoundError(NotFoundError):
    def __init__(self, analysis_id) -> None:
        super().__init__(f"Power analysis {analysis_id} not found")
        self.analysis_id = analysis_id


# ----------------------------------------------------------------------
# Invalid configuration (422)
# ----------------------------------------------------------------------

class InvalidAllocationError(ExperimentError):
    """Traffic allocation does not sum to 100, names unknown variants, or is empty."""


# ----------------------------------------------------------------------
# State conflicts (409)
# ----------------------------------------------------------------------

class StateConflictError(ExperimentError):
    pass


class InvalidTransitionError(StateConflictError):
    def __init__(self, current, target) -> None:
        super().__init__(f"Cannot move experiment from {current} to {target}")
        self.current = current
        self.target = target


class ExperimentNotRunningError(StateConflictError):
    pass


class ExperimentCompletedError(StateConflictError):
    """Completed experiments are read-only."""


class VariantLockedError(StateConflictError):
    """Variant content cannot change once recipients have been assigned."""


class SequentialStateError(StateConflictError):
    """Stored interim checks are inconsistent, or no further check is allowed."""


# ----------------------------------------------------------------------
# Recoverable analysis conditions
# ----------------------------------------------------------------------

class InsufficientDataError(ExperimentError):
    """Not enough observations yet to compute a statistic."""


class StatisticalComputationError(ExperimentError):
    """Degenerate input such as zero variance or a NaN statistic."""


class DuplicateAssignmentRace(ExperimentError):
    """A concurrent request assigned the same recipient first.

    Only used internally by the assignment engine, which recovers by
    re-reading the winning row.
    """
