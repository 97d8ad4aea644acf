"""Error taxonomy for the crafting, signing and broadcast pipeline.

Every expected failure carries enough structured detail (field, chain rule,
nonce, ...) for a caller to explain it without re-deriving it:

- ValidationError: malformed or unsafe request, never retried automatically
- SequencingConflict: nonce contention, caller may retry after backoff
- RpcUnavailable: chain state could not be read while crafting
- SignerUnavailable / UserRejected: hardware outcomes, never retried silently
- BroadcastTransient: RPC-level, retried with bounded backoff by the broadcaster
- BroadcastRejected: chain-level rejection, never retried with identical parameters
- TransactionDropped: expired before confirmation, re-craft instead of re-sign

ConfigurationError and InvariantViolation are fatal and are not converted into
results by the orchestrator.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for expected pipeline outcomes."""

    code = "pipeline_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> dict:
        """Structured form for the calling layer."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, {self.details!r})"


class ValidationError(PipelineError):
    """Request violates a chain rule or a safety check."""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, rule: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, rule=rule, **details)
        self.field = field
        self.rule = rule


class SequencingConflict(PipelineError):
    """An unresolved nonce reservation already exists for the sender."""

    code = "sequencing_conflict"
    retryable = True

    def __init__(self, address: str, network: str, nonce: int, expires_at: float):
        super().__init__(
            f"Nonce {nonce} is already reserved for {address} on {network}",
            address=address,
            network=network,
            nonce=nonce,
            expires_at=expires_at,
        )
        self.address = address
        self.network = network
        self.nonce = nonce
        self.expires_at = expires_at


class RpcUnavailable(PipelineError):
    """Chain state could not be read (endpoint down, timed out or rate limited)."""

    code = "rpc_unavailable"
    retryable = True


class SignerError(PipelineError):
    """Base class for hardware-layer outcomes."""

    code = "signer_error"


class SignerUnavailable(SignerError):
    """Device is not connected, locked, or running the wrong app."""

    code = "signer_unavailable"


class UserRejected(SignerError):
    """The user declined on the device. Final, never retried."""

    code = "user_rejected"


class SignatureMismatch(SignerError):
    """Device returned a signature that does not belong to the sender."""

    code = "signature_mismatch"


class BroadcastError(PipelineError):
    """Base class for submission outcomes."""

    code = "broadcast_error"


class BroadcastTransient(BroadcastError):
    """RPC-level failure (timeouts, 5xx, rate limits)."""

    code = "broadcast_transient"
    retryable = True


class BroadcastRejected(BroadcastError):
    """Chain rejected the transaction."""

    code = "broadcast_rejected"

    def __init__(self, message: str, reason: str, hint: Optional[str] = None, **details: Any):
        super().__init__(message, reason=reason, hint=hint, **details)
        self.reason = reason
        self.hint = hint


class TransactionDropped(BroadcastError):
    """Transaction expired before confirmation."""

    code = "dropped"

    def __init__(self, message: str, hint: str = "re-craft the transaction with fresh sequencing info", **details: Any):
        super().__init__(message, hint=hint, **details)
        self.hint = hint


class FeeEstimationDegraded(PipelineError):
    """Warning record: the returned fee estimate is stale or a static default.

    Attached to results, never raised.
    """

    code = "fee_estimation_degraded"


class ConfigurationError(RuntimeError):
    """Fatal: configuration is missing or corrupt."""


class InvariantViolation(RuntimeError):
    """Fatal: an internal invariant does not hold."""
