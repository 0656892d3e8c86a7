import os
import json

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

import app as orion

TEST_SYSTEM_PROMPT = "You are a test assistant."


class FakeProvider:
    """Completion provider that replays fixed chunks and records each prompt."""

    def __init__(self, chunks=("Hello", ", ", "world!"), fail_after=None):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.calls = []
        self.closed = False

    def stream(self, messages):
        self.calls.append(messages)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_after is not None and i >= self.fail_after:
                    raise orion.CompletionError("upstream dropped the connection")
                yield chunk
        except GeneratorExit:
            self.closed = True
            raise


class FakeSearch:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else orion.empty_search()
        self.error = error
        self.queries = []

    def __call__(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.result


PARIS_RESULTS = {
    "summary": "It is sunny in Paris today.",
    "results": [
        {"title": "Paris weather", "snippet": "22C and sunny", "url": "https://weather.example/paris"},
    ],
}


def parse_events(body):
    return [json.loads(line[len("data:"):]) for line in body.splitlines() if line.startswith("data:")]


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    monkeypatch.setattr(orion, "SQLITE_PATH", str(tmp_path / "orion-test.db"))
    orion.rate_limiter.reset()
    monkeypatch.setattr(orion.rate_limiter, "clock", lambda: 1_000_020.0)
    orion._active_turns.clear()
    yield
    orion.app.dependency_overrides.clear()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def search():
    return FakeSearch(PARIS_RESULTS)


@pytest.fixture
def client(provider, search):
    def relay():
        return orion.StreamingRelay(
            provider, search, orion.KeywordClassifier(), system_prompt=TEST_SYSTEM_PROMPT
        )

    orion.app.dependency_overrides[orion.get_relay] = relay
    with TestClient(orion.app) as c:
        yield c


@pytest.fixture
def register(client):
    """Create an account and return (auth headers, user id)."""

    def _register(email="alice@example.com", password="secret123"):
        resp = client.post("/api/auth/signup", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        return {"Authorization": f"Bearer {data['token']}"}, data["user"]["userId"]

    return _register


@pytest.fixture
def chat(client):
    """POST one turn and return (response, parsed events)."""

    def _chat(headers, message, **extra):
        resp = client.post("/api/chat/stream", json={"message": message, **extra}, headers=headers)
        events = parse_events(resp.text) if resp.status_code == 200 else []
        return resp, events

    return _chat
