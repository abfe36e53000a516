from typing import Any, Dict, Iterable, Optional


class AgentAPIError(Exception):
    """
    Base exception for lead pipeline errors.

    Every subclass carries an HTTP status, a human readable ``error`` title and a
    machine readable ``code`` so callers can branch on the failure kind.
    """
    status_code: int = 500
    error: str = "Internal error"
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.error
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "code": self.code,
            "message": self.message,
            **self.extra,
        }


class LeadNotFound(AgentAPIError):
    """Raised when a lead does not exist within the caller's organization."""
    status_code = 404
    error = "Lead not found"
    code = "NOT_FOUND"

    def __init__(self, lead_id: Any):
        super().__init__(f"Lead with id {lead_id} not found")


class UnknownAction(AgentAPIError):
    """Raised when an action name is outside the action catalog."""
    status_code = 400
    error = "Unknown action"
    code = "UNKNOWN_ACTION"

    def __init__(self, action: Any, valid_actions: Iterable[str]):
        super().__init__(
            f"Unknown action: {action}",
            action=action,
            validActions=list(valid_actions),
        )


class InvalidTransition(AgentAPIError):
    """Raised when the lead's current status is not in the action's allowed-from set."""
    status_code = 409
    error = "Invalid transition"
    code = "INVALID_TRANSITION"

    def __init__(
        self,
        action: str,
        current_status: str,
        allowed_from: Iterable[str],
        allowed_actions: Iterable[str],
        target_status: Optional[str],
    ):
        allowed_from = list(allowed_from)
        super().__init__(
            f'Cannot perform "{action}" when lead is in "{current_status}". '
            f"Allowed from: {', '.join(allowed_from)}",
            action=action,
            currentStatus=current_status,
            allowedFrom=allowed_from,
            allowedActions=list(allowed_actions),
            targetStatus=target_status,
        )


class ActionAlreadyRecorded(AgentAPIError):
    """Raised when a one-shot action flag is already set on the lead."""
    status_code = 409
    error = "Action already recorded"
    code = "ACTION_ALREADY_RECORDED"

    def __init__(self, action: str, flag: str):
        super().__init__(f"{action} already recorded", action=action, flag=flag)


class AlreadyReplied(AgentAPIError):
    """Raised when mark_replied is attempted on a lead that already replied."""
    status_code = 409
    error = "Already replied"
    code = "ALREADY_REPLIED"

    def __init__(self, replied_at: Optional[str] = None):
        super().__init__("Lead reply already recorded", repliedAtUtc=replied_at)


class TransitionEngineRejected(AgentAPIError):
    """Raised when the transition engine refuses a move the rule table allowed."""
    status_code = 409
    error = "Transition rejected"
    code = "TRANSITION_REJECTED"

    def __init__(
        self,
        reason: str,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
        action: Optional[str] = None,
    ):
        extra: Dict[str, Any] = {
            "reason": reason,
            "currentStatus": current_status,
            "targetStatus": target_status,
        }
        if action is not None:
            extra["action"] = action
        super().__init__(f"Transition rejected: {reason}", **extra)


class ConcurrentModification(AgentAPIError):
    """Raised when a lead kept changing underneath a request after all retries."""
    status_code = 409
    error = "Concurrent modification"
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, lead_id: Any):
        super().__init__(f"Lead {lead_id} was modified concurrently, retry the request")


class IdempotencyKeyConflict(AgentAPIError):
    """Raised when an Idempotency-Key is reused with a different request."""
    status_code = 409
    error = "Idempotency key conflict"
    code = "IDEMPOTENCY_KEY_CONFLICT"

    def __init__(self):
        super().__init__("Idempotency-Key already used with different data")


class ActionTimeout(AgentAPIError):
    """Raised when a request exceeds its execution budget. Nothing is committed."""
    status_code = 503
    error = "Request timed out"
    code = "TIMEOUT"

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Request did not complete within {timeout_seconds:g}s and was rolled back"
        )
