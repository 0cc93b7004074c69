"""Local plain-HTTP preview of a bundle with directory listings.

Not part of the runtime image; it mirrors the served behaviour (browsing on,
no TLS) closely enough to check a bundle before assembly.
"""

from __future__ import annotations

import logging
import threading
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


class PreviewHandler(SimpleHTTPRequestHandler):
    extensions_map = {
        **SimpleHTTPRequestHandler.extensions_map,
        ".wasm": "application/wasm",
        ".js": "text/javascript",
        ".mjs": "text/javascript",
    }

    def log_message(self, format: str, *args) -> None:
        logger.info("%s - %s", self.address_string(), format % args)


class PreviewServer:
    """Serve ``root`` over plain HTTP from a background thread or the foreground."""

    def __init__(self, root: Path, *, host: str = "127.0.0.1", port: int = 8080, request_timeout: Optional[float] = None) -> None:
        self.root = root.resolve()
        if not self.root.is_dir():
            raise FileNotFoundError(f"Bundle directory not found: {self.root}")
        handler_cls: type = PreviewHandler
        if request_timeout is not None:
            handler_cls = type("TimedPreviewHandler", (PreviewHandler,), {"timeout": request_timeout})
        self.httpd = ThreadingHTTPServer((host, port), partial(handler_cls, directory=str(self.root)))
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Tuple[str, int]:
        host, port = self.httpd.server_address[:2]
        return str(host), int(port)

    @property
    def url(self) -> str:
        host, port = self.address
        return f"http://{host}:{port}/"

    def start(self) -> "PreviewServer":
        self._thread = threading.Thread(target=self.httpd.serve_forever, name="site-preview", daemon=True)
        self._thread.start()
        return self

    def serve_forever(self) -> None:
        logger.info("Previewing %s at %s", self.root, self.url)
        try:
            self.httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Preview stopped")
        finally:
            self.httpd.server_close()

    def stop(self) -> None:
        self.httpd.shutdown()
        self.httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def __enter__(self) -> "PreviewServer":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()

