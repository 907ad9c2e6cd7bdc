"""Small blocking HTTP helper for talking to the local server. Callers run it off the event loop."""

import json
from http.client import HTTPException
from typing import Callable, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

Fetch = Callable[[str, str, float, Optional[bytes]], Tuple[int, bytes]]

# Everything a request to a dead, slow or half-started server can raise.
REQUEST_ERRORS = (URLError, HTTPException, OSError, ValueError)


def fetch(method: str, url: str, timeout: float, data: Optional[bytes] = None) -> Tuple[int, bytes]:
    """(status, body). Non-2xx answers are returned, not raised; transport errors propagate."""
    req = Request(url, data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urlopen(req, timeout=max(0.2, float(timeout or 1.0))) as resp:
            return resp.status, resp.read()
    except HTTPError as ex:
        try:
            body = ex.read() or b""
        except OSError:
            body = b""
        return ex.code, body


def build_url(base_url: str, path: str, params: Optional[dict] = None) -> str:
    url = f"{base_url.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return url


def decode_json(raw: bytes):
    return json.loads(raw.decode("utf-8")) if raw else {}
