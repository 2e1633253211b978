"""
Exceptions shared by the pipeline packages.
"""


class PipelineError(Exception):
    """Base class for all pipeline toolkit errors."""


class DefinitionError(PipelineError):
    """
    Raised when a pipeline definition cannot be parsed or selected.

    Carries the source path (when known) so CLI output can point at the file.
    """

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        self.reason = message
        super().__init__(f"{source}: {message}" if source else message)


class StepExecutionError(PipelineError):
    """Raised when a step container cannot be created, started or inspected."""
