"""
PORTICO Intercepting Proxy
==========================

Receives the port-80 traffic the kernel redirected to the gateway, asks
the RequestClassifier what to do with it, and forwards it either to the
splash listener or to the destination named by the Host header.

Upstream failures are answered with 502 (unreachable) or 504 (timeout)
and are not retried.

Author: Team PORTICO
"""

from typing import Optional

import requests
from flask import Flask, Response, request
from loguru import logger

from core.classifier import ProbeRequest, RequestClassifier, Verdict
from core.config import GatewayConfig

from .splash import ALL_METHODS


HOP_BY_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}

# requests decodes the body for us, so the original framing no longer applies
EXCLUDED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "content-length"}


def _request_uri() -> str:
    """Path and query string exactly as the client sent them."""
    raw_uri = request.environ.get("RAW_URI") or request.environ.get("REQUEST_URI")
    if raw_uri and raw_uri.startswith("/"):
        return raw_uri
    if request.query_string:
        return f"{request.path}?{request.query_string.decode('latin-1')}"
    return request.path


def forward(target: str, timeout: Optional[float] = None) -> Response:
    """Replay the current request against ``target`` and stream the answer back."""
    headers = {
        name: value for name, value in request.headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "host"
    }

    try:
        upstream = requests.request(
            method=request.method,
            url=target,
            headers=headers,
            data=request.get_data(),
            allow_redirects=False,
            stream=True,
            timeout=timeout,
        )
    except requests.exceptions.Timeout as e:
        logger.warning(f"Upstream timeout for {target}: {e}")
        return Response("Gateway Timeout\n", status=504, mimetype="text/plain")
    except requests.exceptions.RequestException as e:
        logger.warning(f"Upstream error for {target}: {e}")
        return Response("Bad Gateway\n", status=502, mimetype="text/plain")

    # getlist keeps repeated headers such as Set-Cookie as separate lines
    raw_headers = upstream.raw.headers
    response_headers = [
        (name, value)
        for name in dict.fromkeys(raw_headers.keys())
        if name.lower() not in EXCLUDED_RESPONSE_HEADERS
        for value in raw_headers.getlist(name)
    ]

    def body():
        try:
            for chunk in upstream.iter_content(chunk_size=8192):
                yield chunk
        finally:
            upstream.close()

    return Response(body(), status=upstream.status_code, headers=response_headers)


def create_proxy_app(config: GatewayConfig, classifier: RequestClassifier) -> Flask:
    """
    Create the intercepting proxy Flask application.

    Args:
        config: Gateway configuration
        classifier: RequestClassifier deciding each request's fate

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)
    app.classifier = classifier
    app.config_data = config

    splash_base = f"http://{config.listen_ip}:{config.web_port}"

    @app.route("/", defaults={"path": ""}, methods=ALL_METHODS)
    @app.route("/<path:path>", methods=ALL_METHODS)
    def intercept(path):
        host = request.headers.get("Host")
        if not host:
            return Response("Missing Host header\n", status=400, mimetype="text/plain")

        source_ip = request.remote_addr or ""
        uri = _request_uri()
        logger.debug(f"Received request for {host}{uri} from {source_ip}")

        verdict = app.classifier.classify(ProbeRequest(
            host=host,
            path=request.path,
            source_ip=source_ip,
            headers=dict(request.headers.items()),
        ))

        if verdict is Verdict.PASS_THROUGH:
            target = f"http://{host}{uri}"
            logger.debug(f"Proxying to target: {target} from source: {source_ip}")
        else:
            target = f"{splash_base}{uri}"
            logger.debug(f"{verdict.value}: {host}{uri} from {source_ip} -> splash")

        return forward(target, config.upstream_timeout)

    return app
