"""Typed service errors surfaced by the ledger, guard and orchestrator."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for errors translated into HTTP responses by the app."""

    code = "service_error"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.extra}


class AccountNotFound(ServiceError):
    code = "account_not_found"
    status_code = 404


class InsufficientCredits(ServiceError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, required: int, available: Optional[int] = None):
        if available is None:
            message = f"Insufficient credits. Required: {required}. Top up credits to continue."
        else:
            message = (
                f"Insufficient credits. Required: {required}, available: {available}. "
                "Top up credits to continue."
            )
        super().__init__(message, required=required, available=available)
        self.required = required
        self.available = available


class RateLimited(ServiceError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class AccountBanned(ServiceError):
    code = "account_banned"
    status_code = 403

    def __init__(self):
        # Ban reasons stay in the audit trail.
        super().__init__("This account cannot generate content. Contact support.")


class PermissionDenied(ServiceError):
    code = "permission_denied"
    status_code = 403


class UnknownTool(ServiceError):
    code = "unknown_tool"
    status_code = 422


class ToolDisabled(ServiceError):
    code = "tool_disabled"
    status_code = 503


class GenerationNotFound(ServiceError):
    code = "generation_not_found"
    status_code = 404


class InvalidGenerationState(ServiceError):
    code = "invalid_generation_state"
    status_code = 409


class GenerationUpstreamFailure(ServiceError):
    code = "generation_failed"
    status_code = 502

    def __init__(self, generation_id: str):
        super().__init__("Content generation failed. Please try again.", generation_id=generation_id)
        self.generation_id = generation_id


class GenerationCancelled(ServiceError):
    code = "generation_cancelled"
    status_code = 409

    def __init__(self, generation_id: str):
        super().__init__("Generation was cancelled before completion.", generation_id=generation_id)
        self.generation_id = generation_id


class LedgerInconsistency(ServiceError):
    code = "ledger_inconsistency"
    status_code = 500

    def __init__(self, generation_id: str, reason: str):
        super().__init__(
            "Generation could not be billed and was discarded. No credits were charged.",
            generation_id=generation_id,
        )
        self.generation_id = generation_id
        self.reason = reason


class PlanNotFound(ServiceError):
    code = "plan_not_found"
    status_code = 404


class PlanUnavailable(ServiceError):
    code = "plan_unavailable"
    status_code = 409


class RiskFlagNotFound(ServiceError):
    code = "risk_flag_not_found"
    status_code = 404


class RiskFlagAlreadyResolved(ServiceError):
    code = "risk_flag_already_resolved"
    status_code = 409


class DuplicatePlan(ServiceError):
    code = "duplicate_plan"
    status_code = 409
