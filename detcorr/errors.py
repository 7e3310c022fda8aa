"""Exceptions raised by the detection-correction pipeline."""


class DetcorrError(Exception):
    """Base class for all pipeline errors."""


class PreconditionViolation(DetcorrError, ValueError):
    """Structural problem with the inputs (shapes, ordering, visit count). Fatal."""


class ConvergenceFailure(DetcorrError):
    """The occupancy optimiser for one species did not converge."""


class DegenerateGeometry(DetcorrError):
    """Too few or coplanar points for a hull, or too few species for a distance."""


class DegenerateNullDistribution(DetcorrError):
    """Null ensemble with zero variance for a plot/metric."""
