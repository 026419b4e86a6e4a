from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import jwt  # PyJWT
import requests

LOG = logging.getLogger('filesystem-mcp')


@dataclass(frozen=True)
class Key:
    kid: str
    key: Any
    algorithm: str


@dataclass(frozen=True)
class KeySet:
    keys: Mapping[str, Key] = field(default_factory=lambda: MappingProxyType({}))
    fetched_at: float = 0.0
    # bumped on every successful refresh
    epoch: int = 0

    def get(self, kid: str) -> Optional[Key]:
        return self.keys.get(kid)

    def __len__(self) -> int:
        return len(self.keys)


_EC_CURVES = {'P-256': 'ES256', 'P-384': 'ES384', 'P-521': 'ES512', 'secp256k1': 'ES256K'}


def _algorithm_for(jwk: Dict[str, Any]) -> Optional[str]:
    alg = jwk.get('alg')
    if alg:
        return str(alg)
    kty = jwk.get('kty')
    if kty == 'RSA':
        return 'RS256'
    if kty == 'EC':
        return _EC_CURVES.get(str(jwk.get('crv') or ''))
    if kty == 'OKP':
        return 'EdDSA'
    if kty == 'oct':
        return 'HS256'
    return None


def parse_jwks(doc: Any) -> Dict[str, Key]:
    """
    Build key-id -> Key from a JWKS document.
    JWKs without a kid or with an unsupported algorithm are skipped.
    Raises ValueError when the document itself is malformed or holds no usable key.
    """
    if not isinstance(doc, dict):
        raise ValueError('Invalid JWKS')
    raw_keys = doc.get('keys')
    if not isinstance(raw_keys, list):
        raise ValueError('Invalid JWKS keys')
    out: Dict[str, Key] = {}
    for jwk in raw_keys:
        if not isinstance(jwk, dict):
            continue
        kid = str(jwk.get('kid') or '')
        if not kid:
            LOG.warning('skipping JWK without kid')
            continue
        if jwk.get('use') not in (None, 'sig'):
            continue
        alg = _algorithm_for(jwk)
        if not alg:
            LOG.warning('skipping JWK kid=%s: cannot determine algorithm', kid)
            continue
        try:
            pk = jwt.PyJWK(jwk, algorithm=alg)
        except (jwt.PyJWKError, jwt.InvalidKeyError) as e:
            LOG.warning('skipping unusable JWK kid=%s: %s', kid, e)
            continue
        out[kid] = Key(kid=kid, key=pk.key, algorithm=alg)
    if raw_keys and not out:
        raise ValueError('JWKS contains no usable keys')
    return out


class KeySetCache:
    """
    Signature-verification keys fetched from a JWKS endpoint.

    A daemon thread fetches once at start and then every `refresh_interval`
    seconds. Each successful fetch swaps in a new immutable KeySet in a single
    assignment, so readers see either the old or the new set, never a mix.
    Failed fetches are logged and keep the previous set.
    """

    def __init__(self, jwks_uri: Optional[str], refresh_interval: float = 300, fetch_timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.jwks_uri = jwks_uri
        self.refresh_interval = refresh_interval
        self.fetch_timeout = fetch_timeout
        self._session = session or requests.Session()
        self._keyset = KeySet()
        self._swap_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def keyset(self) -> KeySet:
        return self._keyset

    def get(self, kid: str) -> Optional[Key]:
        return self._keyset.get(kid)

    def replace(self, keys: Mapping[str, Key]) -> KeySet:
        # writers serialize on the lock; readers never take it
        with self._swap_lock:
            new = KeySet(
                keys=MappingProxyType(dict(keys)),
                fetched_at=time.time(),
                epoch=self._keyset.epoch + 1,
            )
            self._keyset = new
        return new

    def load_document(self, doc: Any) -> KeySet:
        return self.replace(parse_jwks(doc))

    def refresh(self) -> bool:
        """Fetch the key set once. Returns False (and keeps the cache) on failure."""
        if not self.jwks_uri:
            return False
        try:
            r = self._session.get(self.jwks_uri, timeout=self.fetch_timeout, headers={'Accept': 'application/json'})
            r.raise_for_status()
            ks = self.load_document(r.json())
        except (requests.RequestException, ValueError) as e:
            LOG.warning('JWKS refresh from %s failed; keeping %d cached keys: %s', self.jwks_uri, len(self._keyset), e)
            return False
        LOG.info('JWKS refreshed: %d keys (epoch %d)', len(ks), ks.epoch)
        return True

    def _run(self) -> None:
        while True:
            try:
                self.refresh()
            except Exception:
                LOG.exception('JWKS refresh loop error')
            if self._stop.wait(self.refresh_interval):
                return

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='jwks-refresh', daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
