"""Exception taxonomy for the orchestration core.

Parse and validation problems in agent output are not exceptions: the
response parser reports them as values. Everything below is raised when
a caller asks for something that cannot be done, or when a collaborator
fails.
"""


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""


class NotFoundError(OrchestratorError):
    """Unknown orchestration, worker, relation or template."""


class LifecycleError(OrchestratorError):
    """Requested transition is not valid from the current status.

    Raised before any state is touched.
    """


class TemplateError(OrchestratorError):
    """Invalid template, or a forbidden mutation of the template index."""


class CircularInheritanceError(TemplateError):
    """A template's ``extends`` chain loops back on itself."""

    def __init__(self, chain):
        self.chain = list(chain)
        super().__init__(
            f"Circular template inheritance: {' -> '.join(self.chain)}")


class SubSessionError(OrchestratorError):
    """Invalid sub-session registration."""


class TransportError(OrchestratorError):
    """The session-control service could not be reached or refused a call."""
