"""Typed failures raised by the marketplace core.

Every operation fails with exactly one of these. The thin API layer maps
``code`` to its own status codes; nothing in the core matches on messages.
"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    code = "marketplace_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(MarketplaceError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[Any] = None, message: Optional[str] = None):
        super().__init__(message or f"{entity} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class Forbidden(MarketplaceError):
    code = "forbidden"


class InvalidState(MarketplaceError):
    code = "invalid_state"

    def __init__(self, message: str, *, entity: Optional[str] = None, status: Optional[Any] = None, **details: Any):
        super().__init__(message, entity=entity, status=getattr(status, "value", status), **details)
        self.entity = entity
        self.status = status


class RequestNotOpen(InvalidState):
    code = "request_not_open"

    def __init__(self, request_id: str, status: Any):
        super().__init__("Legal request is not open", entity="legal_request", status=status, request_id=request_id)


class Conflict(MarketplaceError):
    code = "conflict"
    retryable = True


class DuplicateProposal(Conflict):
    code = "duplicate_proposal"

    def __init__(self, request_id: str, lawyer_id: str):
        super().__init__(
            "Lawyer already submitted a proposal for this request",
            request_id=request_id,
            lawyer_id=lawyer_id,
        )


class InsufficientBalance(MarketplaceError):
    code = "insufficient_balance"

    def __init__(self, user_id: str, balance_type: Any, available: int, requested: int):
        super().__init__(
            f"Insufficient balance. Required: {requested}, available: {available}",
            user_id=user_id,
            balance_type=getattr(balance_type, "value", balance_type),
            available=available,
            requested=requested,
        )
        self.available = available
        self.requested = requested


class ValidationError(MarketplaceError):
    code = "validation_error"
    retryable = True

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field
