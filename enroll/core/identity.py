"""
Identity gate: decides whether a caller's hardware token may act on a record.
"""

from enum import Enum
from typing import Optional

from .schema import is_valid_identity_token


class IdentityDecision(str, Enum):
    NO_CHECK_NEEDED = "no-check-needed"
    ADOPT = "adopt"
    MATCH = "match"
    MISMATCH = "mismatch"


def check_identity(stored_token: Optional[str], candidate: Optional[str]) -> IdentityDecision:
    """
    Compare a candidate token with the one stored on a record.

    A record without a token adopts a well-formed candidate. A record with a
    token accepts only the same token, compared case-insensitively. When no
    candidate is offered nothing is checked; operations that need a token
    enforce that themselves.
    """
    if not candidate:
        return IdentityDecision.NO_CHECK_NEEDED

    if not stored_token:
        if is_valid_identity_token(candidate):
            return IdentityDecision.ADOPT
        return IdentityDecision.NO_CHECK_NEEDED

    if stored_token.lower() == candidate.lower():
        return IdentityDecision.MATCH

    return IdentityDecision.MISMATCH
