import json
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from conftest import SECRET_A, make_token, oct_jwk


def require_fastapi():
    try:
        import fastapi  # noqa: F401
        from fastapi.testclient import TestClient  # noqa: F401
    except Exception as e:
        pytest.skip(f"fastapi not available: {e}")


def _auth_hdr(token: str):
    return {"Authorization": f"Bearer {token}"}


def _rpc(client, method, params=None, msg_id=1, headers=None):
    body = {'jsonrpc': '2.0', 'id': msg_id, 'method': method}
    if params is not None:
        body['params'] = params
    return client.post('/mcp', json=body, headers=headers or {})


def _client(raw_settings, keys=None):
    from fastapi.testclient import TestClient
    from filesystem_mcp.app import create_app
    from filesystem_mcp.config import parse_settings

    app = create_app(parse_settings(raw_settings), keys=keys)
    return TestClient(app)


def _keys():
    from filesystem_mcp.keyset import KeySetCache
    cache = KeySetCache(None)
    cache.load_document({'keys': [oct_jwk('k1', SECRET_A)]})
    return cache


def test_healthz_and_initialize():
    require_fastapi()
    client = _client({})
    r = client.get('/healthz')
    assert r.status_code == 200
    j = r.json()
    assert j['ok'] is True
    assert j['name'] == 'filesystem-mcp'

    r = _rpc(client, 'initialize', {'protocolVersion': '2025-06-18', 'capabilities': {}, 'clientInfo': {'name': 't', 'version': '1'}})
    assert r.status_code == 200
    res = r.json()['result']
    assert res['serverInfo']['name'] == 'filesystem-mcp'
    assert 'tools' in res['capabilities']

    # notifications get no body
    r = client.post('/mcp', json={'jsonrpc': '2.0', 'method': 'notifications/initialized'})
    assert r.status_code == 202


def test_tools_list_and_call(tmp_path: Path):
    require_fastapi()
    client = _client({})
    r = _rpc(client, 'tools/list')
    names = [t['name'] for t in r.json()['result']['tools']]
    assert 'filesystem_mcp_read_file' in names

    f = tmp_path / 'hello.txt'
    f.write_text('hello world\n', encoding='utf-8')
    r = _rpc(client, 'tools/call', {'name': 'filesystem_mcp_read_file', 'arguments': {'path': str(f)}})
    res = r.json()['result']
    assert res['isError'] is False
    assert res['structuredContent']['content'] == 'hello world\n'
    assert json.loads(res['content'][0]['text'])['content'] == 'hello world\n'


def test_batch_and_unknown_method():
    require_fastapi()
    client = _client({})
    batch = [
        {'jsonrpc': '2.0', 'id': 1, 'method': 'initialize', 'params': {}},
        {'jsonrpc': '2.0', 'method': 'notifications/initialized'},
        {'jsonrpc': '2.0', 'id': 2, 'method': 'tools/list'},
        {'jsonrpc': '2.0', 'id': 3, 'method': 'resources/list'},
    ]
    r = client.post('/mcp', json=batch)
    assert r.status_code == 200
    out = r.json()
    assert [m['id'] for m in out] == [1, 2, 3]
    assert out[2]['error']['code'] == -32601

    r = client.post('/mcp', content=b'{not json', headers={'Content-Type': 'application/json'})
    assert r.status_code == 400


def test_non_object_params_are_invalid():
    require_fastapi()
    client = _client({})
    for params in ([1, 2], 'filesystem_mcp_read_file', 7):
        r = _rpc(client, 'tools/call', params, msg_id=9)
        assert r.status_code == 200
        body = r.json()
        assert body['id'] == 9
        assert body['error']['code'] == -32602

    # one bad message does not sink the rest of a batch
    batch = [
        {'jsonrpc': '2.0', 'id': 1, 'method': 'tools/call', 'params': [1]},
        {'jsonrpc': '2.0', 'id': 2, 'method': 'tools/list'},
    ]
    out = client.post('/mcp', json=batch).json()
    assert out[0]['error']['code'] == -32602
    assert 'tools' in out[1]['result']


def test_policy_denial_is_tool_error(tmp_path: Path):
    require_fastapi()
    root = tmp_path.resolve()
    client = _client({'policy': {'enabled': True, 'default_policy': 'deny', 'rules': [
        {'name': 'ro', 'paths': [f'{root}/**'], 'operations': ['read']},
    ]}})
    r = _rpc(client, 'tools/call', {'name': 'write_file', 'arguments': {'path': str(root / 'x'), 'content': 'y'}})
    res = r.json()['result']
    assert res['isError'] is True
    assert res['structuredContent']['error']['code'] == 'E_FORBIDDEN'
    assert res['structuredContent']['error']['kind'] == 'path-denied'
    assert not (root / 'x').exists()

    r = _rpc(client, 'tools/call', {'name': 'shutdown_host', 'arguments': {}})
    assert r.json()['result']['structuredContent']['error']['kind'] == 'unknown-tool'


def test_jwt_required_with_challenge(tmp_path: Path):
    require_fastapi()
    raw = {
        'jwt': {
            'enabled': True,
            'jwks_uri': 'https://idp.example/jwks',
            'allow_conditions': [{'expression': 'payload.role == "admin"'}],
        },
        'oauth_protected_resource': {
            'url_suffix': '/mcp',
            'authorization_servers': ['https://idp.example'],
            'scopes_supported': ['files'],
        },
    }
    client = _client(raw, keys=_keys())

    r = _rpc(client, 'tools/list')
    assert r.status_code == 401
    assert r.json() == {'error': 'access denied'}
    challenge = r.headers['WWW-Authenticate']
    assert challenge.startswith('Bearer error="invalid_token"')
    assert 'resource_metadata="http://testserver/.well-known/oauth-protected-resource/mcp"' in challenge
    assert 'scope="files"' in challenge

    # wrong role and expired token look identical to the client
    for claims in ({'role': 'user'}, {'role': 'admin', 'exp': int(time.time()) - 5}):
        r = _rpc(client, 'tools/list', headers=_auth_hdr(make_token(claims)))
        assert r.status_code == 401
        assert r.json() == {'error': 'access denied'}

    r = _rpc(client, 'tools/list', headers=_auth_hdr(make_token({'role': 'admin'})))
    assert r.status_code == 200
    assert 'WWW-Authenticate' not in r.headers

    # discovery and health stay public
    r = client.get('/.well-known/oauth-protected-resource/mcp')
    assert r.status_code == 200
    doc = r.json()
    assert doc['authorization_servers'] == ['https://idp.example']
    assert doc['scopes_supported'] == ['files']
    assert doc['bearer_methods_supported'] == ['header']
    assert client.get('/healthz').json()['jwt'] == {'enabled': True, 'keys': 1, 'epoch': 1}


def test_claims_reach_policy(tmp_path: Path):
    require_fastapi()
    root = tmp_path.resolve()
    raw = {
        'jwt': {'enabled': True, 'jwks_uri': 'https://idp.example/jwks'},
        'policy': {'enabled': True, 'rules': [
            {'name': 'admins', 'paths': [f'{root}/**'], 'operations': ['write'], 'when': ['payload.role == "admin"']},
        ]},
    }
    client = _client(raw, keys=_keys())
    call = {'name': 'write_file', 'arguments': {'path': str(root / 'a.txt'), 'content': 'z'}}
    r = _rpc(client, 'tools/call', call, headers=_auth_hdr(make_token({'role': 'dev'})))
    assert r.json()['result']['isError'] is True
    r = _rpc(client, 'tools/call', call, headers=_auth_hdr(make_token({'role': 'admin'})))
    assert r.json()['result']['isError'] is False
    assert (root / 'a.txt').read_text(encoding='utf-8') == 'z'


def test_config_errors_are_fatal(tmp_path: Path, monkeypatch):
    require_fastapi()
    from filesystem_mcp.app import create_app
    from filesystem_mcp.config import load_settings, parse_settings
    from filesystem_mcp.errors import ConfigError

    with pytest.raises(ConfigError):
        create_app(parse_settings({'policy': {'rules': [{'name': 'x', 'paths': ['/a/**'], 'operations': ['read'], 'when': ['bogus(']}]}}))
    with pytest.raises(ConfigError):
        parse_settings({'jwt': {'enabled': True}})
    with pytest.raises(ConfigError):
        parse_settings({'policy': {'default_policy': 'maybe'}})

    bad = tmp_path / 'cfg.json'
    bad.write_text('{nope', encoding='utf-8')
    with pytest.raises(ConfigError):
        load_settings(bad)
    with pytest.raises(ConfigError):
        load_settings(tmp_path / 'missing.json')


def test_env_overrides(tmp_path: Path, monkeypatch):
    from filesystem_mcp.config import _split_env_list, load_settings

    cfg = tmp_path / 'cfg.json'
    cfg.write_text(json.dumps({'server': {'name': 'fs'}, 'tools': {'exec_timeout_sec': 5}}), encoding='utf-8')
    monkeypatch.setenv('FSM_CONFIG', str(cfg))
    monkeypatch.setenv('FSM_PROCESS_RETENTION', '25')
    monkeypatch.setenv('FSM_SCOPES_SUPPORTED', 'a, b;c')
    s = load_settings()
    assert s.server.name == 'fs'
    assert s.tools.exec_timeout_sec == 5
    assert s.tools.process_retention == 25
    assert s.oauth_protected_resource.scopes_supported == ['a', 'b', 'c']
    assert _split_env_list(' x ;; y,') == ['x', 'y']


def test_lifespan_stops_refresher_and_processes():
    require_fastapi()
    from fastapi.testclient import TestClient
    from filesystem_mcp.app import create_app
    from filesystem_mcp.config import parse_settings
    from filesystem_mcp.processes import ProcessSupervisor

    sup = ProcessSupervisor()
    app = create_app(parse_settings({}), supervisor=sup)
    with TestClient(app) as client:
        r = _rpc(client, 'tools/call', {'name': 'exec', 'arguments': {'command': 'sleep 30', 'background': True}})
        pid = r.json()['result']['structuredContent']['id']
    snap = sup.wait(pid, timeout=10)
    assert snap.state == 'killed'
