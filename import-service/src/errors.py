# import-service/src/errors.py


class ImportPipelineError(Exception):
    """Base class for import pipeline failures."""


class SourceUnavailable(ImportPipelineError):
    """The remote download or stored-object fetch failed (after retries)."""


class TransientFetchError(ImportPipelineError):
    """A retryable object-store failure."""


class ParseFatal(ImportPipelineError):
    """The decoder cannot make forward progress on the input."""


class BatchInsertError(ImportPipelineError):
    def __init__(self, collection: str, size: int, cause: Exception):
        super().__init__(f"batch insert into {collection} failed ({size} rows): {cause}")
        self.collection = collection
        self.size = size
        self.cause = cause


class Conflict(ImportPipelineError):
    """An exclusive job of the same kind is already pending or running."""


class NotFound(ImportPipelineError):
    pass


class InvalidSubmission(ImportPipelineError):
    """The kind/target combination of a submission is not supported."""
