"""Typed failures surfaced by the extraction pipeline and the local store."""


class ParseError(ValueError):
    """Model response text contained no recoverable JSON.

    ``excerpt`` holds the first characters of the cleaned response so callers
    can log what the model actually sent back. Terminal for the call that
    raised it; nothing in this package retries.
    """

    def __init__(self, code: str, excerpt: str = ""):
        super().__init__(f"{code}: {excerpt}" if excerpt else code)
        self.code = code
        self.excerpt = excerpt


class StorageError(RuntimeError):
    """Local store operation failed (wraps the driver error)."""
