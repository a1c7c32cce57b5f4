from .descriptor import (
    Accepted,
    Rejected,
    RejectionReason,
    TargetDescriptor,
    ValidationVerdict,
)
from .validator import is_allowlisted, is_private_or_literal_host, validate

__all__ = [
    "Accepted",
    "Rejected",
    "RejectionReason",
    "TargetDescriptor",
    "ValidationVerdict",
    "is_allowlisted",
    "is_private_or_literal_host",
    "validate",
]
