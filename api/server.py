"""
PORTICO HTTP Listeners
======================

Runs a Flask app in a threaded werkzeug server on a background thread so
the gateway can start and stop its listeners from the lifecycle
controller. Every connection gets its own handler thread.

Author: Team PORTICO
"""

import logging
import threading
from typing import Optional

from flask import Flask
from loguru import logger
from werkzeug.serving import BaseWSGIServer, make_server


# werkzeug logs every request through stdlib logging; keep only its warnings
logging.getLogger("werkzeug").setLevel(logging.WARNING)


class HTTPListener:
    """A stoppable background HTTP server."""

    def __init__(self, name: str, app: Flask, host: str, port: int):
        self.name = name
        self.app = app
        self.host = host
        self.port = port

        self._server: Optional[BaseWSGIServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def bound_port(self) -> Optional[int]:
        return self._server.server_port if self._server else None

    def start(self):
        """
        Bind and start serving.

        Raises:
            OSError: if the address cannot be bound
        """
        try:
            self._server = make_server(self.host, self.port, self.app, threaded=True)
        except SystemExit:
            # werkzeug reports a failed bind by exiting the process
            raise OSError(f"{self.name} cannot bind {self.host}:{self.port}")
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name=self.name
        )
        self._thread.start()
        logger.info(f"{self.name} listening on {self.host}:{self.bound_port}")

    def stop(self):
        if self._server is None:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as e:
            logger.error(f"Error stopping {self.name}: {e}")
        finally:
            self._server = None
            self._thread = None
        logger.info(f"{self.name} stopped")
