import json

import httpx
import pytest

from jobrelay.engine import EngineClient, flatten_messages, normalize_payload
from jobrelay.errors import PermanentUpstreamError, TransientUpstreamError


def _client(handler, **kw):
    return EngineClient("http://engine.test", transport=httpx.MockTransport(handler), **kw)


def test_first_user_message_becomes_prompt():
    payload = {
        "model": "m1",
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "what is a fever?"},
            {"role": "user", "content": "second"},
        ],
    }
    assert normalize_payload(payload) == {"model": "m1", "prompt": "what is a fever?"}


def test_messages_without_user_are_joined():
    messages = [{"role": "system", "content": "a"}, {"role": "assistant", "content": "b"}]
    assert flatten_messages(messages) == "a\nb"


def test_plain_prompt_gets_default_model():
    assert normalize_payload({"prompt": "test", "meta": {"x": 1}}, default_model="dflt") == {
        "model": "dflt",
        "prompt": "test",
    }


def test_payload_without_prompt_is_permanent_error():
    with pytest.raises(PermanentUpstreamError):
        normalize_payload({"model": "m"})


def test_complete_posts_flat_body():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"text": "generated"})

    client = _client(handler, default_model="llama-3.3-70b")
    result = client.run("completion", {"messages": [{"role": "user", "content": "hello"}]})

    assert result == {"text": "generated"}
    assert seen == {"path": "/api/completion", "body": {"model": "llama-3.3-70b", "prompt": "hello"}}


@pytest.mark.parametrize("status,exc", [
    (500, TransientUpstreamError),
    (503, TransientUpstreamError),
    (400, PermanentUpstreamError),
    (404, PermanentUpstreamError),
])
def test_status_codes_map_to_error_kind(status, exc):
    client = _client(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(exc) as info:
        client.complete({"prompt": "x"})
    assert f"Engine error {status}" in str(info.value)


def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientUpstreamError):
        _client(handler).complete({"prompt": "x"})


def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientUpstreamError) as info:
        _client(handler, timeout=3).complete({"prompt": "x"})
    assert "timed out" in str(info.value)


def test_non_json_body_is_transient():
    with pytest.raises(TransientUpstreamError):
        _client(lambda request: httpx.Response(200, text="<html>")).complete({"prompt": "x"})


def test_unknown_job_type_never_calls_engine():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(PermanentUpstreamError) as info:
        _client(handler).run("transcode", {"prompt": "x"})
    assert str(info.value) == "Unknown job type: transcode"
    assert calls == []
