import base64
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SECRET_A = b'test-secret-a-0123456789abcdefghijklmnop'
SECRET_B = b'test-secret-b-0123456789abcdefghijklmnop'


def oct_jwk(kid: str, secret: bytes) -> dict:
    k = base64.urlsafe_b64encode(secret).rstrip(b'=').decode('ascii')
    return {'kty': 'oct', 'kid': kid, 'alg': 'HS256', 'use': 'sig', 'k': k}


def make_token(claims: dict, secret: bytes = SECRET_A, kid: str = 'k1') -> str:
    import jwt
    return jwt.encode(claims, secret, algorithm='HS256', headers={'kid': kid})


class FakeResponse:
    def __init__(self, doc=None, status: int = 200):
        self._doc = doc
        self.status_code = status

    def raise_for_status(self):
        import requests
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')

    def json(self):
        if isinstance(self._doc, Exception):
            raise self._doc
        return self._doc


class FakeSession:
    """Stands in for requests.Session; hands out queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, timeout=None, headers=None):
        self.calls.append({'url': url, 'timeout': timeout})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def jwks_doc():
    return {'keys': [oct_jwk('k1', SECRET_A)]}
