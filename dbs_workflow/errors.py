"""
Error taxonomy for the DBS workflow.

Input and declaration errors are fatal and must abort before any sampling.
Convergence problems are recoverable by resampling with a changed
configuration. An unreliable fit is not an exception at all: it is a status
carried by the fitted artifact (see ``ArtifactStatus``) and only becomes an
error when something tries to rank it without an explicit override.
"""


class WorkflowError(Exception):
    """Base class for all workflow errors."""


class SchemaError(WorkflowError, ValueError):
    """Input table does not have the declared shape or content."""


class SpecificationError(WorkflowError, ValueError):
    """Model declaration is internally inconsistent."""


class ConvergenceFailure(WorkflowError, RuntimeError):
    """
    Sampler diagnostics outside tolerance, or the sampler itself failed.

    Attributes:
        report: ConvergenceReport describing the failure (may be None when
            the sampler raised before producing draws)
    """

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class UnreliableArtifactError(WorkflowError):
    """An unreliable artifact was passed to ranking without an override."""
