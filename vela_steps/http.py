"""Step handler that performs an HTTP request and records the response.

The Kubernetes client passed to :func:`install` only needs
``get(namespace, name)``. It returns the secret's data as a mapping of
base64-encoded values (``ca.crt``, ``client.crt``, ``client.key``) and is
used when a step asks for ``tls_config``.
"""

from __future__ import annotations

import base64
import os
import re
import ssl
import tempfile
import urllib.error
import urllib.request
from collections.abc import Mapping
from typing import Any

from vela_steps.ratelimiter import RateLimiter
from vela_steps.registry import Providers, StepValue

PROVIDER_NAME = "http"
DEFAULT_TIMEOUT = 3.0

_SHARED_LIMITER = RateLimiter(128)

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_PART = re.compile(r"(\d+\.?\d*|\.\d+)([^\d.]*)")


def parse_duration(text: str) -> float:
    """Parse a duration such as ``"1h30m"`` or ``"300ms"`` into seconds."""
    rest = text
    sign = 1.0
    if rest and rest[0] in "+-":
        if rest[0] == "-":
            sign = -1.0
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f'time: invalid duration "{text}"')
    total = 0.0
    pos = 0
    while pos < len(rest):
        match = _PART.match(rest, pos)
        if match is None:
            raise ValueError(f'time: invalid duration "{text}"')
        number, unit = match.groups()
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        if unit not in _UNITS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')
        total += float(number) * _UNITS[unit]
        pos = match.end()
    return sign * total


def _canonical(name: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.split("-"))


def _parse_headers(v: StepValue, label: str) -> dict[str, list[str]] | None:
    if not v.exists("request", label):
        return None
    data = v.lookup("request", label).to_python()
    if not isinstance(data, Mapping):
        raise TypeError(f"request.{label} must be an object, got {data!r}")
    headers: dict[str, list[str]] = {}
    for name, value in data.items():
        if not isinstance(value, str):
            raise TypeError(f"request.{label}.{name}: cannot use value {value!r} as string")
        headers.setdefault(_canonical(name), []).append(value)
    return headers


def _body_bytes(body: Any) -> bytes:
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    raise TypeError(f"request.body: cannot use value {body!r} as string or bytes")


def _response_headers(message: Any) -> dict[str, list[str]]:
    headers: dict[str, list[str]] = {}
    if message is None:
        return headers
    for name, value in message.items():
        headers.setdefault(_canonical(name), []).append(value)
    return headers


class HttpProvider:
    """Runs HTTP requests on behalf of workflow steps."""

    def __init__(self, cli: Any = None, ns: str = "", rate_limiter: RateLimiter | None = None) -> None:
        self._cli = cli
        self._ns = ns
        self._rate_limiter = rate_limiter or _SHARED_LIMITER

    def do(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Send the request described by ``v`` and fill ``response``."""
        v.fill(self._run(v), "response")

    def _run(self, v: StepValue) -> dict[str, Any]:
        timeout: float | None = DEFAULT_TIMEOUT
        if v.exists("request", "timeout"):
            try:
                text = v.get_string("request", "timeout")
            except TypeError:
                text = ""
            if text:
                timeout = parse_duration(text)
        if timeout is not None and timeout <= 0:
            timeout = None

        method = v.get_string("method")
        url = v.get_string("url")

        if v.exists("request", "ratelimiter"):
            limiter = v.lookup("request", "ratelimiter")
            limit = limiter.get_int("limit")
            period = parse_duration(limiter.get_string("period"))
            key = f"{method}-{url.split('?')[0]}"
            if not self._rate_limiter.allow(key, limit, period):
                raise RuntimeError("request exceeds the rate limiter")

        body = None
        if v.exists("request", "body"):
            body = _body_bytes(v.lookup("request", "body").to_python())

        headers = _parse_headers(v, "header")
        # Request trailers cannot be sent with urllib; they are still validated.
        _parse_headers(v, "trailer")
        if headers is None:
            headers = {"Content-Type": ["application/json"]}

        request = urllib.request.Request(url, data=body, method=method)
        for name, values in headers.items():
            request.add_header(name, ", ".join(values))

        try:
            context = self._tls_context(v)
        except Exception:  # a broken TLS setup falls back to the default transport
            context = None
        if context is not None:
            opener = urllib.request.build_opener(urllib.request.HTTPSHandler(context=context))
        else:
            opener = urllib.request.build_opener()

        try:
            response = opener.open(request, timeout=timeout)
        except urllib.error.HTTPError as exc:
            response = exc
        with response:
            payload = response.read()
            return {
                "body": payload.decode("utf-8", errors="replace"),
                "header": _response_headers(response.headers),
                "trailer": None,
                "statusCode": response.status,
            }

    def _tls_context(self, v: StepValue) -> ssl.SSLContext | None:
        if not v.exists("tls_config"):
            return None
        secret_name = v.get_string("tls_config", "secret")
        namespace, name = self._ns, secret_name
        index = secret_name.find("/")
        if index > 0:
            namespace, name = secret_name[: index - 1], secret_name[index:]
        if self._cli is None:
            raise RuntimeError("no client to read the TLS secret")
        data = self._cli.get(namespace, name)

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.set_alpn_protocols(["http/1.1"])
        if "ca.crt" in data:
            ca_data = base64.b64decode(data["ca.crt"], validate=True)
            try:
                context.load_verify_locations(cadata=ca_data.decode("ascii", errors="ignore"))
            except ssl.SSLError:
                pass
        else:
            context.load_default_certs()

        cert_data = base64.b64decode(data["client.crt"], validate=True) if "client.crt" in data else b""
        key_data = base64.b64decode(data["client.key"], validate=True) if "client.key" in data else b""
        if not cert_data or not key_data:
            raise ValueError("parse client keypair: missing certificate or key")
        with tempfile.TemporaryDirectory() as directory:
            cert_path = os.path.join(directory, "client.crt")
            key_path = os.path.join(directory, "client.key")
            with open(cert_path, "wb") as handle:
                handle.write(cert_data)
            with open(key_path, "wb") as handle:
                handle.write(key_data)
            try:
                context.load_cert_chain(cert_path, key_path)
            except ssl.SSLError as exc:
                raise ValueError(f"parse client keypair: {exc}") from exc
        return context


def install(providers: Providers, cli: Any, ns: str) -> None:
    """Register the HTTP handler."""
    prd = HttpProvider(cli, ns)
    providers.register(PROVIDER_NAME, {"do": prd.do})