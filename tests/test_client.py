import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from ollama_stream import (
    CallState,
    Cancelled,
    ClientSettings,
    Control,
    DecodeError,
    Message,
    NetworkError,
    OllamaClient,
    Role,
    ServerError,
    TimedOut,
    TruncatedStreamError,
    ValidationError,
    completion_request,
)
from ollama_stream.base import bounded_timeout

from .conftest import BASE, Recorder, chat_lines, completion_lines, ndjson


def stream_of(*objects):
    body = ndjson(*objects)
    return lambda request: httpx.Response(200, content=body)


def test_streamed_completion_calls_handler_per_chunk(make_client):
    client, server = make_client(stream_of(*completion_lines("The ", "quick ", "fox")))
    seen = []

    result = client.generate("Tell me a story", handler=seen.append)

    assert [c.content for c in seen] == ["The ", "quick ", "fox", ""]
    assert [c.done for c in seen] == [False, False, False, True]
    assert result.content == "The quick fox"
    assert result.chunks == 4
    assert result.done_reason == "stop"
    assert result.metadata["eval_count"] == 3
    assert server.requests[0].url == f"{BASE}/api/generate"
    assert server.payloads[0] == {"model": "granite3-moe:1b", "prompt": "Tell me a story", "stream": True}


def test_streamed_chat_assembles_final_message(make_client):
    client, server = make_client(stream_of(*chat_lines("Hel", "lo")))
    result = client.chat([{"role": "user", "content": "Say hello"}], options={"temperature": 0.0})

    assert result.message == Message(Role.ASSISTANT, "Hello")
    assert result.content == "Hello"
    assert server.requests[0].url == f"{BASE}/api/chat"
    assert server.payloads[0]["options"] == {"temperature": 0.0}


def test_non_streaming_invokes_handler_once(make_client):
    body = {
        "model": "granite3-moe:1b",
        "message": {"role": "assistant", "content": '{"scientific_name": "Gallus gallus domesticus"}'},
        "done": True,
        "done_reason": "stop",
        "eval_count": 57,
    }
    client, server = make_client(lambda request: httpx.Response(200, json=body))
    seen = []

    result = client.chat(
        [{"role": "system", "content": "Answer in JSON."}, {"role": "user", "content": "chicken"}],
        format="json",
        stream=False,
        handler=seen.append,
    )

    assert len(seen) == 1
    assert seen[0].done
    assert json.loads(result.message.content) == {"scientific_name": "Gallus gallus domesticus"}
    assert server.payloads[0]["stream"] is False
    assert server.payloads[0]["format"] == "json"


def test_handler_stop_cancels_without_reading_further(make_client):
    source = Recorder([ndjson(obj) for obj in completion_lines("one", "two")])
    client, _ = make_client(lambda request: httpx.Response(200, content=iter(source)))
    seen = []

    def handler(chunk):
        seen.append(chunk)
        return Control.STOP

    with pytest.raises(Cancelled) as excinfo:
        client.generate("count", handler=handler)

    assert len(seen) == 1
    assert source.pulled == 1
    assert excinfo.value.partial.content == "one"


def test_truncated_stream_is_not_completion(make_client):
    client, _ = make_client(lambda request: httpx.Response(200, content=b'{"response":"Hi","done":false}\n'))
    req = completion_request("m", "hi")
    stream = client.stream(req)

    with pytest.raises(TruncatedStreamError):
        list(stream)
    assert stream.state is CallState.FAILED
    assert stream.result is None


def test_connection_cut_mid_stream_is_truncation(make_client):
    def body():
        yield b'{"response":"Hi","done":false}\n'
        raise httpx.RemoteProtocolError("peer closed connection without sending complete message body")

    client, _ = make_client(lambda request: httpx.Response(200, content=body()))
    with pytest.raises(TruncatedStreamError):
        client.generate("hi")


def test_invalid_line_is_decode_error(make_client):
    client, _ = make_client(lambda request: httpx.Response(200, content=b'{"response":"a","done":false}\nnot json\n'))
    seen = []
    with pytest.raises(DecodeError):
        client.generate("hi", handler=seen.append)
    assert [c.content for c in seen] == ["a"]


def test_http_error_status_is_server_error(make_client):
    client, _ = make_client(lambda request: httpx.Response(404, json={"error": "model 'nope' not found"}))
    with pytest.raises(ServerError) as excinfo:
        client.generate("hi", model="nope")
    assert excinfo.value.status == 404
    assert excinfo.value.body == "model 'nope' not found"


def test_error_object_in_stream_is_server_error(make_client):
    client, _ = make_client(stream_of({"response": "a", "done": False}, {"error": "out of memory"}))
    with pytest.raises(ServerError, match="out of memory"):
        client.generate("hi")


@pytest.mark.parametrize(
    "exc, reason",
    [
        (httpx.ConnectError("connection refused"), "connect"),
        (httpx.ReadTimeout("timed out"), "timeout"),
        (httpx.ReadError("connection reset by peer"), "transport"),
    ],
)
def test_transport_failures_are_network_errors(make_client, exc, reason):
    def refuse(request):
        raise exc

    client, _ = make_client(refuse)
    with pytest.raises(NetworkError) as excinfo:
        client.generate("hi")
    assert excinfo.value.reason == reason


def test_invalid_request_never_reaches_the_server(make_client):
    client, server = make_client(stream_of(*chat_lines("x")))
    with pytest.raises(ValidationError):
        client.chat([{"role": "robot", "content": "beep"}])
    with pytest.raises(ValidationError):
        client.generate("x", format={"type": "object", "properties": {}, "required": ["a"]})
    assert server.requests == []


def test_cancel_signal_is_checked_before_each_read(make_client):
    source = Recorder([ndjson(obj) for obj in completion_lines("a", "b", "c")])
    client, _ = make_client(lambda request: httpx.Response(200, content=iter(source)))
    cancel = threading.Event()

    def handler(chunk):
        cancel.set()

    with pytest.raises(Cancelled) as excinfo:
        client.generate("hi", handler=handler, cancel=cancel)
    assert source.pulled == 1
    assert excinfo.value.partial.chunks == 1


def test_expired_deadline_times_out_before_sending(make_client):
    client, server = make_client(stream_of(*completion_lines("a")))
    with pytest.raises(TimedOut) as excinfo:
        client.generate("hi", timeout=0)
    assert excinfo.value.partial.chunks == 0
    assert server.requests == []


def test_handler_exception_propagates(make_client):
    client, _ = make_client(stream_of(*completion_lines("a", "b")))

    def handler(chunk):
        raise KeyError("bad chunk")

    with pytest.raises(KeyError):
        client.generate("hi", handler=handler)


def test_pull_stream_closed_early_is_cancelled(make_client):
    source = Recorder([ndjson(obj) for obj in completion_lines("a", "b", "c")])
    client, _ = make_client(lambda request: httpx.Response(200, content=iter(source)))

    with client.stream(completion_request("m", "hi")) as chunks:
        assert chunks.state is CallState.IDLE
        first = next(chunks)
        assert chunks.state is CallState.STREAMING

    assert first.content == "a"
    assert chunks.state is CallState.CANCELLED
    assert chunks.partial().content == "a"
    assert source.pulled == 1


def test_pull_stream_completes(make_client):
    client, _ = make_client(stream_of(*completion_lines("a", "b")))
    with client.stream(completion_request("m", "hi")) as chunks:
        contents = [c.content for c in chunks]
    assert contents == ["a", "b", ""]
    assert chunks.state is CallState.COMPLETED
    assert chunks.result.content == "ab"


def test_concurrent_calls_share_one_client(make_client):
    def respond(request):
        prompt = json.loads(request.content)["prompt"]
        return httpx.Response(200, content=ndjson(*completion_lines(prompt, "!")))

    client, server = make_client(respond)
    prompts = [f"p{i}" for i in range(8)]
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda p: client.generate(p).content, prompts))

    assert results == [f"{p}!" for p in prompts]
    assert len(server.requests) == 8


def test_client_from_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434")
    monkeypatch.setenv("OLLAMA_MODEL", "llama3.2")
    settings = ClientSettings.from_env(str(tmp_path / "missing.env"))

    client = OllamaClient.from_settings(settings)
    assert client.endpoint.url == "http://gpu-box:11434"
    assert client.model == "llama3.2"
    client.close()


def test_deadline_expiring_mid_stream_times_out(make_client):
    def body():
        yield ndjson({"response": "a", "done": False})
        time.sleep(0.3)
        yield ndjson(*completion_lines("b"))

    client, server = make_client(lambda request: httpx.Response(200, content=body()))
    with pytest.raises(TimedOut) as excinfo:
        client.generate("hi", timeout=0.2)

    assert excinfo.value.partial.content == "a"
    assert 0 < server.requests[0].extensions["timeout"]["read"] <= 0.2


def test_read_timeout_past_the_deadline_is_timed_out(make_client):
    def body():
        yield ndjson({"response": "a", "done": False})
        time.sleep(0.25)
        raise httpx.ReadTimeout("timed out")

    client, _ = make_client(lambda request: httpx.Response(200, content=body()))
    stream = client.stream(completion_request("m", "hi"), timeout=0.2)

    with pytest.raises(TimedOut):
        list(stream)
    assert stream.state is CallState.TIMED_OUT


def test_bounded_timeout_caps_each_phase():
    timeout = bounded_timeout(httpx.Timeout(None, connect=5.0), 2.0)
    assert (timeout.connect, timeout.read, timeout.write, timeout.pool) == (2.0, 2.0, 2.0, 2.0)

    configured = httpx.Timeout(None, connect=0.5)
    assert bounded_timeout(configured, None) is configured
    assert bounded_timeout(configured, 2.0).connect == 0.5


def test_handler_failure_on_final_chunk_fails_the_call(make_client):
    client, _ = make_client(lambda request: httpx.Response(200, json={"response": "x", "done": True}))
    chunks = client.stream(completion_request("m", "hi", stream=False))

    assert next(chunks).done
    chunks.abort(KeyError("bad chunk"))

    assert chunks.state is CallState.FAILED
    assert chunks.result is None


def test_non_streaming_pull_completes_when_closed(make_client):
    client, _ = make_client(lambda request: httpx.Response(200, json={"response": "x", "done": True}))
    with client.stream(completion_request("m", "hi", stream=False)) as chunks:
        next(chunks)
    assert chunks.state is CallState.COMPLETED
    assert chunks.result.content == "x"


def test_accept_header_follows_stream_flag(make_client):
    client, server = make_client(lambda request: httpx.Response(200, json={"response": "x", "done": True}))
    client.generate("hi", stream=False)
    client, server2 = make_client(stream_of(*completion_lines("x")))
    client.generate("hi")

    assert server.requests[0].headers["accept"] == "application/json"
    assert server2.requests[0].headers["accept"] == "application/x-ndjson"


def test_lazy_pool_is_created_once_across_threads(monkeypatch):
    created = []

    class SlowClient(httpx.Client):
        def __init__(self, *args, **kwargs):
            time.sleep(0.05)
            super().__init__(*args, **kwargs)
            created.append(self)

    monkeypatch.setattr(httpx, "Client", SlowClient)
    client = OllamaClient(BASE)
    barrier = threading.Barrier(4)

    def open_stream(_):
        barrier.wait()
        return client.stream(completion_request("m", "hi"))

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(open_stream, range(4)))

    assert len(created) == 1
    client.close()
