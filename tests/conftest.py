from __future__ import annotations

import threading
import time

import pytest
from requests.structures import CaseInsensitiveDict

from site_mirror import Settings


class FakeResponse:
    """Just enough of requests.Response for the fetch path."""

    def __init__(self, url, status_code=200, body=b"", content_type="text/html"):
        self.url = url
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"
        self.headers = CaseInsensitiveDict({"Content-Type": content_type})
        self._body = body
        self.closed = False

    @property
    def content(self) -> bytes:
        return self._body

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FakeSession:
    """Serves a dict of url -> (status, content_type, body) or an exception."""

    def __init__(self, site, delay=0.0):
        self.site = site
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def get(self, url, timeout=None, stream=False):
        with self._lock:
            self.calls.append(url)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            entry = self.site.get(url)
            if entry is None:
                return FakeResponse(url, 404, b"not found", "text/plain")
            if isinstance(entry, Exception):
                raise entry
            status, content_type, body = entry
            return FakeResponse(url, status, body, content_type)
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self):
        pass


def page(html: str):
    return (200, "text/html; charset=utf-8", html.encode("utf-8"))


def asset(body: bytes, content_type="application/octet-stream"):
    return (200, content_type, body)


@pytest.fixture
def settings(tmp_path):
    return Settings(max_depth=1, concurrency=3, timeout=5.0, workers=6, output_dir=str(tmp_path))

