class PredictionServiceError(Exception):
    """Base class for every failure the prediction flow can raise."""


class ValidationError(PredictionServiceError):
    """The upload was missing, not an image, or too large."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ModelUnavailable(PredictionServiceError):
    """Model files are missing remotely or could not be written/loaded locally."""


class DecodeError(PredictionServiceError):
    """Uploaded bytes are not a decodable image."""


class InferenceError(PredictionServiceError):
    """The forward pass failed or produced no score."""


class PersistenceError(PredictionServiceError):
    """The prediction datastore could not be reached."""
