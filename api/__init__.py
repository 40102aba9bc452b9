"""
PORTICO HTTP Module
===================

Intercepting proxy and splash listeners.
"""

from .splash import create_splash_app, load_splash_html
from .proxy import create_proxy_app
from .server import HTTPListener

__all__ = [
    "create_splash_app",
    "load_splash_html",
    "create_proxy_app",
    "HTTPListener",
]
