"""Shared fixtures: a scripted local web site and crawl settings."""

from __future__ import annotations

import json
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from threading import Lock, Thread
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import pytest

from mirrorurl import Settings

FILE_CONTENT = b"Hello, world!"

Route = Tuple[int, Dict[str, str], bytes]
Handler = Callable[["SiteHandler"], Route]


def anchors_doc(anchors: Iterable[object]) -> bytes:
    lines = [
        "<!DOCTYPE html>",
        "<html>",
        "    <head>",
        "    </head>",
        "    <body>",
    ]
    for a in anchors:
        lines.append(f'        <a href="{a}">Anchor: {a}</a>')
    lines += ["    </body>", "</html>"]
    return "\n".join(lines).encode("utf-8")


class Site:
    def __init__(self) -> None:
        self.port = 0
        self.routes: Dict[str, Union[Route, Handler]] = {}
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = Lock()

    def url(self, path: str) -> str:
        return f"http://127.0.0.1:{self.port}{path}"

    def add(
        self,
        path: str,
        body: bytes = FILE_CONTENT,
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.routes[path] = (status, dict(headers or {}), body)

    def add_html(
        self, path: str, anchors: Iterable[object], content_type: str = "text/html"
    ) -> None:
        self.add(path, anchors_doc(anchors), headers={"Content-Type": content_type})

    def add_redirect(self, path: str, location: str, status: int = 301) -> None:
        self.add(path, b"", status, {"Location": location})

    def add_handler(self, path: str, handler: Handler) -> None:
        self.routes[path] = handler

    def hits(self, path: str) -> int:
        with self._lock:
            return sum(1 for p, _ in self.requests if p == path)

    def paths(self) -> List[str]:
        with self._lock:
            return [p for p, _ in self.requests]

    def enter(self, path: str, headers: Dict[str, str]) -> None:
        with self._lock:
            self.requests.append((path, headers))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def leave(self) -> None:
        with self._lock:
            self.in_flight -= 1


class SiteHandler(BaseHTTPRequestHandler):
    server: "SiteServer"

    def do_GET(self) -> None:
        site = self.server.site
        site.enter(self.path, {k.lower(): v for k, v in self.headers.items()})
        try:
            if site.delay:
                time.sleep(site.delay)
            route = site.routes.get(self.path)
            if route is None:
                status, headers, body = 404, {}, b""
            elif callable(route):
                status, headers, body = route(self)
            else:
                status, headers, body = route
        finally:
            # a client may reuse its slot as soon as the response arrives
            site.leave()
        self.send_response(status)
        for k, v in headers.items():
            self.send_header(k, v)
        if status != 304:
            self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body and status != 304:
            self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        pass


class SiteServer(ThreadingHTTPServer):
    daemon_threads = True
    site: Site


@pytest.fixture
def site():
    server = SiteServer(("127.0.0.1", 0), SiteHandler)
    server.site = Site()
    server.site.port = server.server_address[1]
    thread = Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.site
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def make_settings(site: Site, tmp_path: Path):
    def _make(path: str, **kwargs) -> Settings:
        values = dict(
            url=site.url(path),
            target=str(tmp_path / "download"),
            concurrent=10,
            threads=8,
            connect_timeout=5.0,
            fetch_timeout=0.5,
            debug=1,
            retries=0,
        )
        values.update(kwargs)
        return Settings(**values)

    return _make


def tree(root: Path) -> Dict[str, Optional[bytes]]:
    """Map every path under root to its bytes, or None for directories."""
    out: Dict[str, Optional[bytes]] = {}
    for p in sorted(root.rglob("*")):
        rel = p.relative_to(root).as_posix()
        out[rel] = None if p.is_dir() else p.read_bytes()
    return out


def write_skip_list(tmp_path: Path, entries: List[str]) -> Path:
    path = tmp_path / "skiplist.json"
    path.write_text(json.dumps(entries), encoding="utf-8")
    return path
