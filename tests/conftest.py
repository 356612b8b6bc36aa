import json

import httpx
import pytest

from ollama_stream import AsyncOllamaClient, OllamaClient

BASE = "http://ollama.test:11434"


def ndjson(*objects) -> bytes:
    """Encode objects as newline-delimited JSON."""
    return b"".join(json.dumps(o).encode() + b"\n" for o in objects)


def completion_lines(*fragments):
    """Streamed completion objects for ``fragments`` plus a final done object."""
    objs = [{"model": "m", "response": f, "done": False} for f in fragments]
    objs.append({"model": "m", "response": "", "done": True, "done_reason": "stop", "eval_count": len(fragments)})
    return objs


def chat_lines(*fragments):
    objs = [{"model": "m", "message": {"role": "assistant", "content": f}, "done": False} for f in fragments]
    objs.append({"model": "m", "message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"})
    return objs


class Recorder:
    """Byte source that records how many blocks the client pulled."""

    def __init__(self, blocks):
        self.blocks = list(blocks)
        self.pulled = 0

    def __iter__(self):
        for block in self.blocks:
            self.pulled += 1
            yield block

    async def aiter(self):
        for block in self.blocks:
            self.pulled += 1
            yield block


class FakeServer:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def payloads(self):
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_client():
    clients = []

    def factory(respond, **kwargs):
        server = FakeServer(respond)
        http = httpx.Client(transport=httpx.MockTransport(server))
        client = OllamaClient(BASE, model=kwargs.pop("model", "granite3-moe:1b"), http_client=http, **kwargs)
        clients.append(http)
        return client, server

    yield factory
    for http in clients:
        http.close()


@pytest.fixture
def make_async_client():
    def factory(respond, **kwargs):
        server = FakeServer(respond)
        http = httpx.AsyncClient(transport=httpx.MockTransport(server))
        client = AsyncOllamaClient(BASE, model=kwargs.pop("model", "granite3-moe:1b"), http_client=http, **kwargs)
        return client, server

    return factory
