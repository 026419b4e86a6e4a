"""
Bearer token authentication for the MCP endpoint.

Flow per request:
- Authorization: Bearer <jwt> is required
- signature verified with the key named by the token's kid (cached JWKS)
- payload decoded into claims
- every allow-condition must evaluate to true against the claims

The result is a RequestContext that the transport passes explicitly to tool
handlers and from there to the policy engine.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jwt  # PyJWT

from .config import JWTConfig, ProtectedResourceConfig
from .errors import AuthError, EvalError
from .expressions import Program, compile_all
from .keyset import KeySetCache

LOG = logging.getLogger('filesystem-mcp')

WELL_KNOWN_PROTECTED_RESOURCE = '/.well-known/oauth-protected-resource'


@dataclass(frozen=True)
class RequestContext:
    """Per-request values threaded from authentication to the tool handlers."""

    claims: Optional[Dict[str, Any]] = None

    @property
    def authenticated(self) -> bool:
        return self.claims is not None


ANONYMOUS = RequestContext()


@dataclass(frozen=True)
class ProtectedResourceMetadata:
    url_suffix: str = ''
    resource: Optional[str] = None
    authorization_servers: List[str] = field(default_factory=list)
    scopes_supported: List[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: ProtectedResourceConfig) -> 'ProtectedResourceMetadata':
        return cls(
            url_suffix=cfg.url_suffix,
            resource=cfg.resource,
            authorization_servers=list(cfg.authorization_servers),
            scopes_supported=list(cfg.scopes_supported),
        )

    @property
    def path(self) -> str:
        return WELL_KNOWN_PROTECTED_RESOURCE + self.url_suffix

    def metadata_url(self, base_url: str) -> str:
        return base_url.rstrip('/') + self.path

    def challenge(self, base_url: str) -> str:
        """WWW-Authenticate value pointing clients at the discovery document."""
        return (
            'Bearer error="invalid_token", '
            f'resource_metadata="{self.metadata_url(base_url)}", '
            f'scope="{" ".join(self.scopes_supported)}"'
        )

    def document(self, base_url: str) -> Dict[str, Any]:
        return {
            'resource': self.resource or base_url.rstrip('/'),
            'authorization_servers': list(self.authorization_servers),
            'scopes_supported': list(self.scopes_supported),
            'bearer_methods_supported': ['header'],
        }


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


class TokenAuthenticator:
    def __init__(self, enabled: bool, keys: Optional[KeySetCache], allow_conditions: Optional[List[str]] = None, leeway: float = 0.0):
        self.enabled = enabled
        self.keys = keys
        self.leeway = leeway
        # Compiled up front so a bad condition aborts startup.
        self._programs: List[Program] = compile_all(allow_conditions or [])

    @classmethod
    def from_config(cls, cfg: JWTConfig, keys: Optional[KeySetCache]) -> 'TokenAuthenticator':
        return cls(cfg.enabled, keys, [c.expression for c in cfg.allow_conditions])

    def authenticate(self, authorization: Optional[str]) -> RequestContext:
        """Return the request context for an Authorization header value, or raise AuthError."""
        if not self.enabled:
            return ANONYMOUS

        # 1. token present
        token = _bearer_token(authorization)
        if token is None:
            raise self._reject(AuthError.MISSING_TOKEN, 'Authorization header not found')

        # 2. signature against the cached key set
        payload_bytes = self._verify_signature(token)

        # 3. payload into claims
        claims = self._decode_claims(payload_bytes)

        # 4. allow-conditions
        for prg in self._programs:
            try:
                ok = prg.evaluate(claims)
            except EvalError as e:
                LOG.error('allow-condition evaluation error expr=%r error=%s', prg.expression, e.message)
                raise self._reject(AuthError.CONDITION_NOT_MET, 'condition evaluation failed') from e
            if ok is not True:
                raise self._reject(AuthError.CONDITION_NOT_MET, f'condition not met: {prg.expression}')

        return RequestContext(claims=claims)

    def _verify_signature(self, token: str) -> bytes:
        if token.count('.') != 2:
            raise self._reject(AuthError.MALFORMED_TOKEN, 'token must have three segments')
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise self._reject(AuthError.MALFORMED_TOKEN, f'unreadable header: {e}') from e
        kid = str(header.get('kid') or '')
        if not kid:
            raise self._reject(AuthError.MALFORMED_TOKEN, 'token missing kid')

        # Unknown kids are rejected until the next scheduled refresh.
        key = self.keys.get(kid) if self.keys is not None else None
        if key is None:
            raise self._reject(AuthError.SIGNATURE_INVALID, f'unknown signing key (kid={kid})')
        if header.get('alg') != key.algorithm:
            raise self._reject(AuthError.SIGNATURE_INVALID, f'algorithm mismatch for kid={kid}')
        try:
            return jwt.PyJWS().decode(token, key=key.key, algorithms=[key.algorithm])
        except jwt.InvalidSignatureError as e:
            raise self._reject(AuthError.SIGNATURE_INVALID, 'signature verification failed') from e
        except jwt.InvalidTokenError as e:
            raise self._reject(AuthError.MALFORMED_TOKEN, f'undecodable token: {e}') from e

    def _decode_claims(self, payload_bytes: bytes) -> Dict[str, Any]:
        try:
            claims = json.loads(payload_bytes.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise self._reject(AuthError.MALFORMED_PAYLOAD, 'payload is not valid JSON') from e
        if not isinstance(claims, dict):
            raise self._reject(AuthError.MALFORMED_PAYLOAD, 'payload is not a JSON object')
        exp = claims.get('exp')
        if exp is not None:
            if isinstance(exp, bool) or not isinstance(exp, (int, float)):
                raise self._reject(AuthError.MALFORMED_PAYLOAD, 'exp claim must be numeric')
            if exp < time.time() - self.leeway:
                raise self._reject(AuthError.TOKEN_EXPIRED, 'token expired')
        return claims

    @staticmethod
    def _reject(kind: str, detail: str) -> AuthError:
        LOG.info('JWT: access denied (%s): %s', kind, detail)
        return AuthError(kind, detail)
