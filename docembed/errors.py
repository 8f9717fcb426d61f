"""Error taxonomy shared by the embedding pipeline and the draft store."""


class EmbeddingError(Exception):
    """Base class for every error raised by this package."""


class InvalidInput(EmbeddingError):
    """Bad request shape or bounds. Always the caller's to fix."""


class NotReady(EmbeddingError):
    """Inference requested before the model finished loading."""


class ModelLoadFailure(EmbeddingError):
    """The model could not be fetched or compiled on any allowed device."""


class InferenceFailure(EmbeddingError):
    """A single embedding call failed; fails the enclosing batch."""


class StorageUnavailable(EmbeddingError):
    """The durable key-value slot could not be read or written."""
