from __future__ import annotations

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base error; `code` is the stable wire code, `kind` the internal cause."""

    code = 'E_INTERNAL'

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'kind': self.kind, 'message': self.message}


class ConfigError(GatewayError):
    code = 'E_CONFIG'

    def __init__(self, message: str, kind: str = 'invalid-config'):
        super().__init__(kind, message)


class CompileError(ConfigError):
    def __init__(self, message: str):
        super().__init__(message, kind='compile-error')


class EvalError(GatewayError):
    code = 'E_EVAL'

    def __init__(self, message: str):
        super().__init__('eval-error', message)


class AuthError(GatewayError):
    MISSING_TOKEN = 'missing-token'
    MALFORMED_TOKEN = 'malformed-token'
    MALFORMED_PAYLOAD = 'malformed-payload'
    SIGNATURE_INVALID = 'signature-invalid'
    TOKEN_EXPIRED = 'token-expired'
    CONDITION_NOT_MET = 'condition-not-met'

    code = 'E_UNAUTHORIZED'

    def public_message(self) -> str:
        # Same text for every cause; the cause itself is only logged.
        return 'access denied'


class PolicyError(GatewayError):
    UNKNOWN_TOOL = 'unknown-tool'
    INVALID_PATH = 'invalid-path'
    PATH_DENIED = 'path-denied'

    code = 'E_FORBIDDEN'


class ProcessError(GatewayError):
    START_FAILURE = 'start-failure'
    TIMEOUT = 'timeout'
    NOT_FOUND = 'not-found'
    ALREADY_EXITED = 'already-exited'
    NO_HANDLE = 'no-handle'

    code = 'E_EXEC'

    def __init__(self, kind: str, message: str, stdout: Optional[str] = None, stderr: Optional[str] = None):
        super().__init__(kind, message)
        self.stdout = stdout
        self.stderr = stderr

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.stdout is not None:
            out['stdout'] = self.stdout
        if self.stderr is not None:
            out['stderr'] = self.stderr
        return out


class ToolArgumentError(GatewayError):
    code = 'E_BAD_ARG'

    def __init__(self, message: str):
        super().__init__('bad-argument', message)
