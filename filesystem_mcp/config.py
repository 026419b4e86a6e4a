from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError

DEFAULT_SERVER_NAME = 'filesystem-mcp'


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.environ.get(name) or '').strip().lower()
    if not raw:
        return default
    return raw in ('1', 'true', 'yes', 'y', 'on')


def _split_env_list(val: Optional[str]) -> List[str]:
    if not val:
        return []
    # Support comma or semicolon separated
    items = []
    for part in val.replace(';', ',').split(','):
        s = part.strip()
        if s:
            items.append(s)
    return items


class ServerConfig(BaseModel):
    name: str = DEFAULT_SERVER_NAME


class RuleConfig(BaseModel):
    name: str
    paths: List[str]
    operations: List[Literal['read', 'write', 'exec']]
    when: List[str] = Field(default_factory=list)


class PolicyConfig(BaseModel):
    enabled: bool = False
    default_policy: Literal['allow', 'deny'] = 'deny'
    rules: List[RuleConfig] = Field(default_factory=list)


class AllowCondition(BaseModel):
    expression: str


class JWTConfig(BaseModel):
    enabled: bool = False
    jwks_uri: Optional[str] = None
    allow_conditions: List[AllowCondition] = Field(default_factory=list)
    refresh_interval_sec: int = 300
    fetch_timeout_sec: float = 10.0

    @model_validator(mode='after')
    def _require_jwks_uri(self) -> 'JWTConfig':
        if self.enabled and not self.jwks_uri:
            raise ValueError('jwt.jwks_uri is required when jwt.enabled is true')
        if self.refresh_interval_sec < 1:
            raise ValueError('jwt.refresh_interval_sec must be positive')
        return self


class ProtectedResourceConfig(BaseModel):
    url_suffix: str = ''
    resource: Optional[str] = None
    authorization_servers: List[str] = Field(default_factory=list)
    scopes_supported: List[str] = Field(default_factory=list)


class ToolsConfig(BaseModel):
    exec_timeout_sec: float = 30.0
    max_output_bytes: int = 1_048_576
    process_retention: int = 0


class Settings(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    jwt: JWTConfig = Field(default_factory=JWTConfig)
    oauth_protected_resource: ProtectedResourceConfig = Field(default_factory=ProtectedResourceConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Environment wins over the file for the knobs operators tweak per host."""
    tools = dict(raw.get('tools') or {})
    if os.environ.get('FSM_EXEC_TIMEOUT_SEC'):
        tools['exec_timeout_sec'] = _env_int('FSM_EXEC_TIMEOUT_SEC', 30)
    if os.environ.get('FSM_MAX_OUTPUT_BYTES'):
        tools['max_output_bytes'] = _env_int('FSM_MAX_OUTPUT_BYTES', 1_048_576)
    if os.environ.get('FSM_PROCESS_RETENTION'):
        tools['process_retention'] = _env_int('FSM_PROCESS_RETENTION', 0)
    raw['tools'] = tools

    jwt_cfg = dict(raw.get('jwt') or {})
    if os.environ.get('FSM_JWT_ENABLED'):
        jwt_cfg['enabled'] = _env_bool('FSM_JWT_ENABLED')
    if os.environ.get('FSM_JWKS_URI'):
        jwt_cfg['jwks_uri'] = os.environ['FSM_JWKS_URI'].strip()
    raw['jwt'] = jwt_cfg

    scopes = _split_env_list(os.environ.get('FSM_SCOPES_SUPPORTED'))
    if scopes:
        prm = dict(raw.get('oauth_protected_resource') or {})
        prm['scopes_supported'] = scopes
        raw['oauth_protected_resource'] = prm
    return raw


def parse_settings(raw: Dict[str, Any]) -> Settings:
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f'invalid configuration: {e}') from e


def load_settings(fp: Optional[Path] = None) -> Settings:
    """Load settings from the JSON config file (FSM_CONFIG) plus env overrides.

    A missing path means defaults; an unreadable or invalid file is fatal.
    """
    if fp is None:
        env_fp = (os.environ.get('FSM_CONFIG') or '').strip()
        fp = Path(env_fp) if env_fp else None
    raw: Dict[str, Any] = {}
    if fp is not None:
        try:
            raw = json.loads(fp.read_text(encoding='utf-8'))
        except OSError as e:
            raise ConfigError(f'cannot read config file {fp}: {e}') from e
        except json.JSONDecodeError as e:
            raise ConfigError(f'config file {fp} is not valid JSON: {e}') from e
        if not isinstance(raw, dict):
            raise ConfigError(f'config file {fp} must contain a JSON object')
    return parse_settings(_apply_env_overrides(raw))
