"""Engine error taxonomy.

Every rejected operation raises one of these with a specific code and a
human-readable message. Routers never build error payloads by hand; the
handlers registered in main.py render them as a consistent JSON envelope.
"""

from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(EngineError):
    """Malformed input, rejected before any store access."""

    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(EngineError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class IllegalTransitionError(EngineError):
    """The asset (or listing, or payout) is not in a state that allows the operation."""

    code = "illegal_transition"
    status_code = status.HTTP_409_CONFLICT


class ConcurrentModificationError(EngineError):
    """Stale version. The caller should re-read and retry; the engine never does."""

    code = "concurrent_modification"
    status_code = status.HTTP_409_CONFLICT


class InsufficientSupplyError(EngineError):
    code = "insufficient_supply"
    status_code = status.HTTP_409_CONFLICT


class InsufficientListingError(EngineError):
    code = "insufficient_listing"
    status_code = status.HTTP_409_CONFLICT


class InsufficientHoldingsError(EngineError):
    """Holder tried to list more units than are sellable."""

    code = "insufficient_holdings"
    status_code = status.HTTP_409_CONFLICT


class DistributionInProgressError(EngineError):
    code = "distribution_in_progress"
    status_code = status.HTTP_409_CONFLICT


class AssetFrozenError(EngineError):
    """Trading is blocked pending manual reconciliation."""

    code = "asset_frozen"
    status_code = status.HTTP_423_LOCKED


class SettlementFailure(EngineError):
    """The ledger settlement collaborator reported a failure."""

    code = "settlement_failure"
    status_code = status.HTTP_502_BAD_GATEWAY


class SettlementSubmissionError(SettlementFailure):
    """An intent could not be handed to the settlement collaborator.

    Local state is left as submitted; resending reuses the same idempotency key.
    """

    code = "settlement_submission_failed"


class InvariantViolation(EngineError):
    """Internal ledger inconsistency. The affected asset has been frozen."""

    code = "invariant_violation"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Render an EngineError as the standard error envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "detail": exc.detail,
        },
    )
