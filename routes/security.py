"""API-key authentication, roles and rate limiting shared across routers."""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from fastapi import Header, HTTPException, Request

from prompt_mining.config import AuthConfig

OPERATOR_ROLE = "operator"

_AUDIT_LOGGER = logging.getLogger("prompt_mining.audit")


@dataclass(frozen=True)
class SecurityContext:
    """Caller identity attached to each request; anonymous callers have no token hash."""

    actor: str
    role: str
    token_hash: str

    @property
    def authenticated(self) -> bool:
        return bool(self.token_hash)


@dataclass(frozen=True)
class SecuritySettings:
    tokens: Dict[str, str]
    require_auth_mint: bool
    require_auth_read: bool
    rate_limit: int
    rate_window: float

    @classmethod
    def from_auth_config(cls, auth: AuthConfig) -> "SecuritySettings":
        return cls(
            tokens=dict(auth.api_keys),
            require_auth_mint=auth.require_auth_mint,
            require_auth_read=auth.require_auth_read,
            rate_limit=auth.rate_limit,
            rate_window=auth.rate_window_seconds,
        )


def _http_error(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message}, headers=headers)


class RateLimiter:
    """Per-caller request budget over a sliding window of ``window_seconds``."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def hit(self, key: str) -> Optional[int]:
        """Record a request for ``key`` and return how many remain in the window.

        Returns None when limiting is disabled (``limit`` of zero). Raises a
        429 carrying ``Retry-After`` once the budget is spent.
        """

        if self.limit <= 0:
            return None
        now = self._clock()
        hits = self._hits[key]
        cutoff = now - self.window
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self.limit:
            retry_after = max(1, math.ceil(hits[0] + self.window - now))
            raise _http_error(
                429,
                "RATE_LIMIT_EXCEEDED",
                "Too many requests, please try again later.",
                headers={"Retry-After": str(retry_after)},
            )
        hits.append(now)
        return self.limit - len(hits)

    def clear(self) -> None:
        self._hits.clear()


class SecurityGate:
    """API keys and rate limiting for one application instance."""

    def __init__(self, settings: SecuritySettings, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings
        self._limiter = RateLimiter(settings.rate_limit, settings.rate_window, clock=clock)

    def reset_rate_limits(self) -> None:
        self._limiter.clear()

    def _resolve_role(self, token: str) -> Optional[str]:
        role = None
        for candidate, candidate_role in self.settings.tokens.items():
            if hmac.compare_digest(candidate.encode(), token.encode()):
                role = candidate_role
        return role

    def authenticate(self, request: Request, token: Optional[str], *, required: bool) -> SecurityContext:
        if not token:
            if required:
                raise _http_error(
                    401,
                    "MISSING_API_KEY",
                    "API key is required. Provide it in the x-api-key header.",
                )
            host = request.client.host if request.client else "unknown"
            self._limiter.hit(f"anon:{host}")
            context = SecurityContext(actor="anonymous", role="public", token_hash="")
            request.state.security_context = context
            return context

        role = self._resolve_role(token)
        if role is None:
            raise _http_error(401, "INVALID_API_KEY", "Invalid API key provided.")

        digest = hashlib.sha256(token.encode()).hexdigest()
        remaining = self._limiter.hit(digest)
        context = SecurityContext(actor=digest[:16], role=role, token_hash=digest)
        request.state.security_context = context
        _AUDIT_LOGGER.info(
            "security.authenticated",
            extra={
                "actor": context.actor,
                "role": role,
                "path": request.url.path,
                "method": request.method,
                "remaining": remaining,
            },
        )
        return context


def get_security_gate(request: Request) -> SecurityGate:
    return request.app.state.security


def _extract_token(x_api_key: Optional[str], authorization: Optional[str]) -> Optional[str]:
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


async def require_mint_access(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> SecurityContext:
    gate = get_security_gate(request)
    token = _extract_token(x_api_key, authorization)
    return gate.authenticate(request, token, required=gate.settings.require_auth_mint)


async def require_read_access(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> SecurityContext:
    gate = get_security_gate(request)
    token = _extract_token(x_api_key, authorization)
    return gate.authenticate(request, token, required=gate.settings.require_auth_read)


def require_role(role: str) -> Callable[..., object]:
    """Dependency demanding an authenticated caller holding ``role``."""

    async def _dependency(
        request: Request,
        x_api_key: Optional[str] = Header(None, alias="x-api-key"),
        authorization: Optional[str] = Header(None, alias="Authorization"),
    ) -> SecurityContext:
        gate = get_security_gate(request)
        context = gate.authenticate(request, _extract_token(x_api_key, authorization), required=True)
        if context.role != role:
            raise _http_error(403, "ROLE_FORBIDDEN", f"This operation requires the '{role}' role.")
        return context

    return _dependency


require_operator = require_role(OPERATOR_ROLE)


def audit_event(context: SecurityContext, action: str, **extra: object) -> None:
    payload = {"actor": context.actor, "role": context.role, **extra}
    _AUDIT_LOGGER.info(action, extra=payload)


__all__ = [
    "OPERATOR_ROLE",
    "RateLimiter",
    "SecurityContext",
    "SecurityGate",
    "SecuritySettings",
    "audit_event",
    "get_security_gate",
    "require_mint_access",
    "require_operator",
    "require_read_access",
    "require_role",
]
