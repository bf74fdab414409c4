class ListenImportError(Exception):
    """Base class for everything the import pipeline raises on purpose."""

class DecodeError(ListenImportError):
    """A source buffer or page could not be turned into listen events."""

class LastFMError(DecodeError):
    """Last.fm answered with an error payload instead of recent tracks."""

    def __init__(self, code, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Last.fm error {code}: {message}")

class UploadRejected(ListenImportError):
    """The upload as a whole breaks the acceptance limits."""

class JobNotFound(ListenImportError, KeyError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job '{job_id}' not found.")

    def __str__(self):
        return self.args[0]

class InvalidTransition(ListenImportError):
    """A progress state change that the job state machine doesn't allow."""
