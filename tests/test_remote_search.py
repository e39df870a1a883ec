import asyncio

import pytest
import requests

from ekb.core.exceptions import UpstreamError
from ekb.infrastructure import remote_search
from ekb.infrastructure.remote_search import RemoteChunkSearcher


class FakeResponse:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(response=self)

    def json(self):
        return self._payload


def test_remote_search_calls_scored_endpoint(monkeypatch, doc_id):
    captured = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured.update(url=url, json=json, headers=headers)
        return FakeResponse({"chunks": [
            {"id": "c1", "document_id": doc_id, "content": "one", "chunk_index": 0, "score": 0.9},
            {"id": "c2", "document_id": doc_id, "content": "two", "chunk_index": 1, "score": 0.5},
        ]})

    monkeypatch.setattr(remote_search.requests, "post", fake_post)
    chunks = asyncio.run(RemoteChunkSearcher("http://vector:8081/", "query-svc").search_similar_chunks("q", 1))

    assert captured["url"] == "http://vector:8081/api/v1/vectors/search/scored"
    assert captured["json"] == {"query": "q", "limit": 1}
    assert captured["headers"] == {"X-User-ID": "query-svc"}
    assert [(c.id, c.chunk_index) for c in chunks] == [("c1", 0)]


def test_remote_search_keeps_per_item_scores(monkeypatch, doc_id):
    def fake_post(url, json=None, headers=None, timeout=None):
        return FakeResponse({"chunks": [
            {"id": "c1", "document_id": doc_id, "content": "one", "chunk_index": 0, "score": 0.9},
            {"id": "c2", "document_id": doc_id, "content": "two", "chunk_index": 1, "score": 0.5},
        ]})

    monkeypatch.setattr(remote_search.requests, "post", fake_post)
    results = asyncio.run(RemoteChunkSearcher("http://vector").search("q", 5))

    assert [(r.chunk.id, r.score) for r in results] == [("c1", 0.9), ("c2", 0.5)]


def test_remote_search_failure_is_upstream_error(monkeypatch):
    def fake_post(url, json=None, headers=None, timeout=None):
        return FakeResponse({}, status=500)

    monkeypatch.setattr(remote_search.requests, "post", fake_post)
    with pytest.raises(UpstreamError):
        asyncio.run(RemoteChunkSearcher("http://vector").search_similar_chunks("q", 3))
