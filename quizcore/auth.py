"""Identity gate consulted before any session or ability mutation."""
from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod
from typing import Mapping, Optional

from .errors import AuthorizationError


logger = logging.getLogger(__name__)


class IdentityGate(ABC):
    """Decide whether a caller may act on a learner's resources."""

    @abstractmethod
    def authorize(self, caller_token: Optional[str], resource_owner_id: str) -> bool:
        """Return ``True`` to allow, ``False`` to deny."""


class StaticTokenGate(IdentityGate):
    """Maps bearer tokens to owner ids; for development and tests."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)

    def authorize(self, caller_token: Optional[str], resource_owner_id: str) -> bool:
        if not caller_token:
            return False
        for token, owner_id in self._tokens.items():
            if hmac.compare_digest(token, caller_token):
                return owner_id == resource_owner_id
        return False


class AllowAllGate(IdentityGate):
    """Gate for local runs without authentication."""

    def authorize(self, caller_token: Optional[str], resource_owner_id: str) -> bool:
        return True


def require_owner(gate: IdentityGate, caller_token: Optional[str], owner_id: str) -> None:
    if not gate.authorize(caller_token, owner_id):
        logger.warning("Identity gate denied access", extra={"owner_id": owner_id})
        raise AuthorizationError(f"Caller is not allowed to act for {owner_id}")


__all__ = ["AllowAllGate", "IdentityGate", "StaticTokenGate", "require_owner"]
