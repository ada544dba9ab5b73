"""Exception hierarchy for uefiboot."""


class UefiBootError(RuntimeError):
    """Base class for uefiboot failures."""


class ElevationError(UefiBootError):
    """Administrator privileges are unavailable or were refused.

    Fatal for the session: the executor refuses every further command once
    this has been raised.
    """


class PayloadError(UefiBootError):
    """A kernel or initrd image required for an install is missing."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path
