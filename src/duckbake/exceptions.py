"""Exception hierarchy shared by all pillars."""


class DuckBakeError(Exception):
    """Base class for all errors raised by duckbake."""


class ModelNotAvailable(DuckBakeError):
    """The inference backend could not be reached."""


class QueryError(DuckBakeError):
    """A SQL statement failed. Recorded on the visualization result."""


class SearchError(DuckBakeError):
    """A semantic search failed. The turn continues with partial context."""


class PersistenceError(DuckBakeError):
    """Saving or loading conversation data failed."""


class ProjectNotFound(DuckBakeError):
    def __init__(self, project_id):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class TurnInProgress(DuckBakeError):
    """A new turn was submitted while another one is still running."""
