from __future__ import annotations


class KahveError(Exception):
    pass


class ValidationError(KahveError, ValueError):
    """Input rejected before any credit is spent or any request is made."""


class InsufficientCreditError(KahveError):
    def __init__(self, message: str = "No credits remaining; purchase a credit pack to continue.") -> None:
        super().__init__(message)


class GenerationFailedError(KahveError):
    pass


class SpeechFailedError(KahveError):
    pass


class PersistenceError(KahveError):
    pass


class SessionBusyError(KahveError, RuntimeError):
    pass


class PurchaseError(KahveError):
    pass


class PlaybackError(KahveError):
    pass
