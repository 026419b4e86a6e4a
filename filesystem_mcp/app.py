#!/usr/bin/env python3
import argparse
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from fastapi import FastAPI, Request
    from fastapi.concurrency import run_in_threadpool
    from fastapi.responses import JSONResponse
    import uvicorn
except Exception:
    print("Missing dependencies: fastapi, uvicorn")
    print("Create a venv and: pip install -e .")
    raise SystemExit(1)

try:
    # module import
    from .auth import ProtectedResourceMetadata, TokenAuthenticator
    from .config import Settings, load_settings
    from .errors import AuthError, ConfigError, GatewayError
    from .keyset import KeySetCache
    from .policy import PolicyEngine
    from .processes import ProcessSupervisor
    from .tools import ToolsManager
except ImportError:
    # script import
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
    from filesystem_mcp.auth import ProtectedResourceMetadata, TokenAuthenticator
    from filesystem_mcp.config import Settings, load_settings
    from filesystem_mcp.errors import AuthError, ConfigError, GatewayError
    from filesystem_mcp.keyset import KeySetCache
    from filesystem_mcp.policy import PolicyEngine
    from filesystem_mcp.processes import ProcessSupervisor
    from filesystem_mcp.tools import ToolsManager

PROTOCOL_VERSION = '2025-06-18'
SERVER_VERSION = '0.1.0'


def _setup_logging() -> logging.Logger:
    # FSM_LOG_LEVEL=DEBUG|INFO|WARNING
    lvl = os.environ.get('FSM_LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(level=getattr(logging, lvl, logging.INFO), format='[%(levelname)s] %(message)s')
    LOG = logging.getLogger('filesystem-mcp')
    # Optional file logging:
    #   FSM_LOG_FILE: file path
    #   FSM_LOG_ROTATE: if set, RotatingFileHandler max bytes (default 5242880). FSM_LOG_BACKUPS (default 5)
    log_file = os.environ.get('FSM_LOG_FILE')
    rotate_bytes = os.environ.get('FSM_LOG_ROTATE')
    if not log_file:
        return LOG
    root = logging.getLogger()
    if any(getattr(h, 'baseFilename', None) == str(Path(log_file).resolve()) for h in root.handlers):
        return LOG
    try:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        if rotate_bytes:
            from logging.handlers import RotatingFileHandler
            max_bytes = int(rotate_bytes) if str(rotate_bytes).isdigit() else 5 * 1024 * 1024
            backups = int(os.environ.get('FSM_LOG_BACKUPS', '5'))
            fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backups)
        else:
            fh = logging.FileHandler(log_file)
        fh.setLevel(getattr(logging, lvl, logging.INFO))
        fh.setFormatter(logging.Formatter('[%(levelname)s] %(asctime)s %(message)s'))
        root.addHandler(fh)
        LOG.info('File logging enabled at %s', log_file)
    except (OSError, ValueError) as e:
        LOG.warning('Failed to initialize file logging: %s', e)
    return LOG


def _base_url(request: Request) -> str:
    host = request.headers.get('host') or request.url.netloc
    return f'{request.url.scheme}://{host}'


def _mcp_response(id_value, result=None, error=None):
    if error is not None:
        return {'jsonrpc': '2.0', 'id': id_value, 'error': error}
    return {'jsonrpc': '2.0', 'id': id_value, 'result': result}


def _text_and_structured(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'content': [{'type': 'text', 'text': json.dumps(obj, ensure_ascii=False, indent=2)}],
        'structuredContent': obj,
        'isError': False,
    }


def _tool_error(err: GatewayError) -> Dict[str, Any]:
    return {
        'content': [{'type': 'text', 'text': f'Error: {err.message}'}],
        'structuredContent': {'error': err.to_dict()},
        'isError': True,
    }


def create_app(settings: Optional[Settings] = None, *, keys: Optional[KeySetCache] = None, supervisor: Optional[ProcessSupervisor] = None) -> FastAPI:
    """Build the gateway app.

    Compiles policy rules and allow-conditions eagerly, so a bad
    configuration raises ConfigError here instead of on the first request.
    """
    LOG = _setup_logging()
    settings = settings or load_settings()

    policy = PolicyEngine(settings.policy)
    jwt_cfg = settings.jwt
    if keys is None and jwt_cfg.enabled:
        keys = KeySetCache(jwt_cfg.jwks_uri, refresh_interval=jwt_cfg.refresh_interval_sec, fetch_timeout=jwt_cfg.fetch_timeout_sec)
    authenticator = TokenAuthenticator.from_config(jwt_cfg, keys)
    metadata = ProtectedResourceMetadata.from_config(settings.oauth_protected_resource)
    supervisor = supervisor or ProcessSupervisor(
        max_output_bytes=settings.tools.max_output_bytes,
        retention=settings.tools.process_retention,
    )
    tools = ToolsManager(
        policy,
        supervisor,
        exec_timeout=settings.tools.exec_timeout_sec,
        server_name=settings.server.name,
        workspace=os.environ.get('FSM_WORKSPACE') or None,
    )
    LOG.info('policy enabled=%s rules=%d; jwt enabled=%s', policy.enabled, len(policy.rules), jwt_cfg.enabled)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if jwt_cfg.enabled and keys is not None:
            keys.start()
        try:
            yield
        finally:
            if keys is not None:
                keys.stop()
            supervisor.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.policy = policy
    app.state.keys = keys
    app.state.supervisor = supervisor
    app.state.tools = tools

    @app.get('/healthz')
    def healthz():
        out: Dict[str, Any] = {
            'ok': True,
            'name': settings.server.name,
            'version': SERVER_VERSION,
            'policy': {'enabled': policy.enabled, 'rules': len(policy.rules)},
            'jwt': {'enabled': jwt_cfg.enabled},
        }
        if keys is not None:
            ks = keys.keyset
            out['jwt'].update({'keys': len(ks), 'epoch': ks.epoch})
        return out

    @app.get(metadata.path)
    def protected_resource_metadata(request: Request):
        return metadata.document(_base_url(request))

    def _unauthorized(request: Request, err: AuthError) -> JSONResponse:
        return JSONResponse(
            {'error': err.public_message()},
            status_code=401,
            headers={'WWW-Authenticate': metadata.challenge(_base_url(request))},
        )

    @app.post('/mcp')
    async def mcp_endpoint(request: Request):
        try:
            ctx = authenticator.authenticate(request.headers.get('Authorization'))
        except AuthError as e:
            # cause already logged by the authenticator
            return _unauthorized(request, e)

        try:
            body = await request.json()
        except Exception:
            return JSONResponse({'error': 'invalid json'}, status_code=400)

        async def handle_one(msg: Dict[str, Any]):
            if not isinstance(msg, dict):
                return None
            msg_id = msg.get('id')
            method = msg.get('method') or ''
            params = msg.get('params') or {}
            if not isinstance(params, dict):
                return _mcp_response(msg_id, error={'code': -32602, 'message': 'Invalid params: expected an object'})

            if method == 'initialize':
                return _mcp_response(msg_id, result={
                    'protocolVersion': PROTOCOL_VERSION,
                    'capabilities': {'tools': {'listChanged': False}},
                    'serverInfo': {'name': settings.server.name, 'title': 'Filesystem MCP', 'version': SERVER_VERSION},
                })

            if method.startswith('notifications/'):
                return None

            if method == 'tools/list':
                return _mcp_response(msg_id, result={'tools': tools.list_tools()})

            if method == 'tools/call':
                name = params.get('name') or ''
                arguments = params.get('arguments')
                LOG.debug('mcp tools/call %s args=%r', name, arguments)
                try:
                    res = await run_in_threadpool(tools.call, name, arguments, ctx)
                except GatewayError as e:
                    LOG.info('tools/call %s failed: %s (%s)', name, e.kind, e.message)
                    return _mcp_response(msg_id, result=_tool_error(e))
                except OSError as e:
                    LOG.info('tools/call %s io error: %s', name, e)
                    return _mcp_response(msg_id, result={'content': [{'type': 'text', 'text': f'Error: {e.strerror or e}'}], 'structuredContent': {'error': {'code': 'E_EXEC', 'kind': 'io-error', 'message': str(e.strerror or e)}}, 'isError': True})
                return _mcp_response(msg_id, result=_text_and_structured(res))

            return _mcp_response(msg_id, error={'code': -32601, 'message': f'Unknown method: {method}'})

        if isinstance(body, list):
            out = []
            for m in body:
                r = await handle_one(m)
                if r is not None:
                    out.append(r)
            return JSONResponse(out) if out else JSONResponse(status_code=202, content=None)
        elif isinstance(body, dict):
            r = await handle_one(body)
            return JSONResponse(r) if r is not None else JSONResponse(status_code=202, content=None)
        return JSONResponse({'error': 'invalid payload'}, status_code=400)

    return app


def main():
    ap = argparse.ArgumentParser(description='Filesystem-MCP HTTP Server')
    ap.add_argument('--host', default=os.environ.get('FSM_HOST', '127.0.0.1'))
    ap.add_argument('--port', type=int, default=int(os.environ.get('FSM_PORT', '7090')))
    ap.add_argument('--config', default=os.environ.get('FSM_CONFIG'), help='JSON config file')
    args = ap.parse_args()

    try:
        settings = load_settings(Path(args.config) if args.config else None)
        app = create_app(settings)
    except ConfigError as e:
        print(f'Configuration error: {e.message}', file=sys.stderr)
        raise SystemExit(2)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == '__main__':
    main()
