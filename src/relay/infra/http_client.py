"""
Minimal JSON-over-HTTPS helper for the resolver and provider senders.

- No extra HTTP dependency: stdlib urllib, run in a worker thread via
  asyncio.to_thread so the event loop never blocks
- certifi's CA bundle for TLS (some local Python installs fail with
  CERTIFICATE_VERIFY_FAILED against the system store)
- Never raises for HTTP status codes; callers classify HttpResponse.status
  themselves. Network failures and timeouts surface as OSError /
  TimeoutError.
"""

from __future__ import annotations

import asyncio
import json
import ssl
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

import certifi


@lru_cache(maxsize=1)
def create_ssl_context() -> ssl.SSLContext:
    return ssl.create_default_context(cafile=certifi.where())


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


def _request_blocking(
    method: str,
    url: str,
    *,
    headers: Dict[str, str],
    payload: Optional[Dict[str, Any]],
    timeout_s: float,
) -> HttpResponse:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8") if payload is not None else None
    req_headers = {"Accept": "application/json", **headers}
    if data is not None:
        req_headers["Content-Type"] = "application/json"

    req = Request(url, data=data, method=method, headers=req_headers)
    try:
        with urlopen(req, timeout=timeout_s, context=create_ssl_context()) as resp:
            return HttpResponse(status=resp.status, body=resp.read().decode("utf-8", errors="replace"))
    except HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        return HttpResponse(status=exc.code, body=body)


async def request_json(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    payload: Optional[Dict[str, Any]] = None,
    timeout_s: float = 15.0,
) -> HttpResponse:
    return await asyncio.to_thread(
        _request_blocking,
        method,
        url,
        headers=headers or {},
        payload=payload,
        timeout_s=timeout_s,
    )
