import pytest
import requests

from video_crawler import FetchError, FilesystemStore


class FakeFetcher:
    """Stands in for MediaFetcher; records every URL it is asked for."""

    def __init__(self, pages=None, json_docs=None, media=None):
        self.pages = pages or {}
        self.json_docs = json_docs or {}
        self.media = media or {}
        self.calls = []

    def _lookup(self, table, kind, url):
        self.calls.append((kind, url))
        if url not in table:
            raise FetchError(url, requests.ConnectionError("unreachable"))
        return table[url]

    def fetch_text(self, url):
        return self._lookup(self.pages, "text", url)

    def fetch_json(self, url):
        return self._lookup(self.json_docs, "json", url)

    def stream(self, url):
        data = self._lookup(self.media, "stream", url)
        return iter([data[:4], data[4:]])


@pytest.fixture
def store(tmp_path):
    root = tmp_path / "output"
    root.mkdir()
    return FilesystemStore(root)


@pytest.fixture
def fetcher():
    return FakeFetcher()
