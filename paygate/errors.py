"""
Errors - Failure taxonomy for the payment execution engine.

None of these are fatal to the hosting process. The catalog and the signing
mode controller encode failures in their return values; the payment protocol
turns them into a single terminal ``error`` progress event.
"""

from typing import Optional


class PaygateError(RuntimeError):
    """Base class for every failure raised inside the engine."""


class ConfigurationError(PaygateError):
    """Resource server URL or developer key missing or unusable."""


class NetworkError(PaygateError):
    """DNS, timeout or connection failure talking to a remote server."""


class ProtocolError(PaygateError):
    """A remote party answered with something the executor cannot use."""


class SigningError(PaygateError):
    USER_CANCELLED = "user-cancelled"
    TIMEOUT = "timeout"
    WRONG_NETWORK = "wrong-network"
    NO_WALLET = "no-wallet"
    INSUFFICIENT_FUNDS = "insufficient-funds"
    FAILED = "failed"

    def __init__(self, message: str, reason: str = FAILED) -> None:
        super().__init__(message)
        self.reason = reason

    @property
    def user_cancelled(self) -> bool:
        return self.reason == self.USER_CANCELLED


class ExecutionCancelled(PaygateError):
    """The consumer of a progress stream went away."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "Execution cancelled")
