"""
requests.Session factory for the attendance API: pooled connections,
urllib3 Retry on 429/5xx, CA bundle resolution.

Transport retries are invisible to the Token Manager, which still makes at
most two logical attempts per operation.
"""

import os
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .constants import AGENT_VERSION, RETRY_TOTAL, RETRY_BACKOFF_FACTOR, RETRY_STATUS_FORCELIST

_RETRY_METHODS = frozenset({"HEAD", "GET", "POST"})


def build_retry():
    return Retry(
        total=RETRY_TOTAL,
        backoff_factor=RETRY_BACKOFF_FACTOR,
        status_forcelist=RETRY_STATUS_FORCELIST,
        allowed_methods=_RETRY_METHODS,
        respect_retry_after_header=True,
    )


def _ca_bundle():
    """REQUESTS_CA_BUNDLE / SSL_CERT_FILE if it exists, else certifi's bundle."""
    for var in ("REQUESTS_CA_BUNDLE", "SSL_CERT_FILE"):
        path = os.environ.get(var)
        if path and os.path.isfile(path):
            return path
    try:
        import certifi
    except ImportError:
        return True
    return certifi.where()


def create_session():
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=2, max_retries=build_retry())
    session = requests.Session()
    for prefix in ("https://", "http://"):
        session.mount(prefix, adapter)
    session.verify = _ca_bundle()
    session.headers.update({
        "Accept": "application/json",
        "User-Agent": f"autoclock-agent/{AGENT_VERSION}",
    })
    return session


def reset_session(session):
    """Close `session` and hand back a fresh one (stale pooled sockets)."""
    try:
        session.close()
    except Exception:
        pass
    return create_session()
