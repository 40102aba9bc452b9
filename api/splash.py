"""
PORTICO Splash Listener
=======================

Serves the static splash page for every method and path. Only the
intercepting proxy talks to it, so it binds to loopback.

Author: Team PORTICO
"""

from pathlib import Path
from typing import Union

from flask import Flask, Response, request
from loguru import logger


ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]

PROJECT_ROOT = Path(__file__).parent.parent


def load_splash_html(splash_file: Union[str, Path]) -> bytes:
    """Read the splash page; relative paths are resolved from the project root."""
    path = Path(splash_file)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return path.read_bytes()


def create_splash_app(splash_html: bytes) -> Flask:
    """
    Create the splash Flask application.

    Args:
        splash_html: Page content returned for every request

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)
    app.splash_html = splash_html

    @app.route("/", defaults={"path": ""}, methods=ALL_METHODS)
    @app.route("/<path:path>", methods=ALL_METHODS)
    def splash(path):
        logger.debug(f"Splash request for {request.method} {request.full_path} "
                     f"(Host: {request.headers.get('Host')})")
        return Response(app.splash_html, status=200, mimetype="text/html")

    return app
