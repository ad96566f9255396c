import json

import httpx
from fastapi.testclient import TestClient

from unigate.adapters.anthropic_compat.upstream import AnthropicTranscodingAdapter
from unigate.adapters.base import ProviderAdapter
from unigate.adapters.openai_compat.upstream import OpenAIPassthroughAdapter, UpstreamClient
from unigate.config.gateway_config import CorsConfig, GatewayConfig, GuardrailConfig, ProviderEndpoint
from unigate.core.cache import ResponseCache
from unigate.core.errors import UpstreamTimeout, UpstreamTransportError
from unigate.core.gateway import REQUEST_ID_HEADER, build_pipeline, create_app
from unigate.core.models import ProviderName, UpstreamResponse


CHAT_PATH = "/v1/chat/completions"
COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}],
}


class FakeAdapter(ProviderAdapter):
    def __init__(self, provider: ProviderName, reply=None):
        self.provider = provider
        self.reply = reply or (lambda _request: UpstreamResponse(
            status_code=200,
            headers={"content-type": "application/json"},
            body=json.dumps(COMPLETION).encode("utf-8"),
        ))
        self.calls = []
        self.closed = False

    async def chat_completions(self, request):
        self.calls.append(request)
        return self.reply(request)

    async def aclose(self):
        self.closed = True


def _config(*, per_minute: int = 100, guardrails: GuardrailConfig | None = None, cors: CorsConfig | None = None) -> GatewayConfig:
    return GatewayConfig(
        default_provider=ProviderName.OPENAI,
        providers={
            ProviderName.OPENAI: ProviderEndpoint(endpoint="http://openai.test", api_key_env="OPENAI_API_KEY"),
            ProviderName.ANTHROPIC: ProviderEndpoint(endpoint="http://anthropic.test", api_key_env="ANTHROPIC_API_KEY"),
        },
        model_mappings={"gpt-4o-mini": ProviderName.OPENAI, "claude-3-sonnet": ProviderName.ANTHROPIC},
        rate_limit_per_minute=per_minute,
        guardrails=guardrails or GuardrailConfig(),
        cors=cors or CorsConfig(),
    )


def _gateway(openai=None, anthropic=None, cache=None, **config_kwargs):
    adapters = {
        ProviderName.OPENAI: openai or FakeAdapter(ProviderName.OPENAI),
        ProviderName.ANTHROPIC: anthropic or FakeAdapter(ProviderName.ANTHROPIC),
    }
    records: list[dict] = []
    config = _config(**config_kwargs)
    app = create_app(config, pipeline=build_pipeline(config, adapters=adapters, cache=cache, log_sink=records.append))
    return app, adapters, records


def _body(model: str = "gpt-4o-mini", content: str = "Hi", **extra) -> bytes:
    payload = {"model": model, "messages": [{"role": "user", "content": content}], **extra}
    return json.dumps(payload).encode("utf-8")


def _post(client: TestClient, body: bytes, **headers):
    return client.post(CHAT_PATH, content=body, headers={"content-type": "application/json", **headers})


def test_non_streaming_request_is_proxied_and_logged():
    app, adapters, records = _gateway()
    with TestClient(app) as client:
        response = _post(client, _body())

    assert response.status_code == 200
    assert response.json() == COMPLETION
    assert response.headers[REQUEST_ID_HEADER]
    assert len(adapters[ProviderName.OPENAI].calls) == 1
    assert adapters[ProviderName.ANTHROPIC].calls == []

    record = records[-1]
    assert record["request_id"] == response.headers[REQUEST_ID_HEADER]
    assert record["status"] == 200
    assert record["model"] == "gpt-4o-mini"
    assert record["provider"] == "openai"
    assert record["served_from"] == "provider"
    assert record["path"] == CHAT_PATH
    assert record["payload_size"] == len(_body())
    assert record["response_size"] == len(response.content)
    assert "error" not in record


def test_mapped_claude_model_is_routed_to_anthropic():
    app, adapters, records = _gateway()
    with TestClient(app) as client:
        response = _post(client, _body(model="claude-3-sonnet"))
    assert response.status_code == 200
    assert len(adapters[ProviderName.ANTHROPIC].calls) == 1
    assert adapters[ProviderName.OPENAI].calls == []
    assert records[-1]["provider"] == "anthropic"


def test_unmapped_model_uses_default_provider():
    app, adapters, _ = _gateway()
    with TestClient(app) as client:
        _post(client, _body(model="some-new-model"))
    assert len(adapters[ProviderName.OPENAI].calls) == 1


def test_identical_request_is_served_from_cache():
    app, adapters, records = _gateway()
    with TestClient(app) as client:
        first = _post(client, _body())
        second = _post(client, _body())

    assert len(adapters[ProviderName.OPENAI].calls) == 1
    assert second.status_code == 200
    assert second.content == first.content
    assert second.headers[REQUEST_ID_HEADER] != first.headers[REQUEST_ID_HEADER]
    assert records[-1]["served_from"] == "cache"
    assert records[-1]["provider"] == "openai"
    assert records[-1]["cache_time_saved_ms"] >= 0


def test_byte_different_request_is_not_a_cache_hit():
    app, adapters, _ = _gateway()
    with TestClient(app) as client:
        _post(client, _body())
        _post(client, _body() + b" ")
    assert len(adapters[ProviderName.OPENAI].calls) == 2


def test_missing_model_rejected():
    app, adapters, records = _gateway()
    with TestClient(app) as client:
        response = _post(client, b'{"messages":[{"role":"user","content":"Hi"}]}')
    assert response.status_code == 400
    assert response.json() == {
        "error": {"message": "Model is required", "type": "invalid_request_error", "code": "MISSING_MODEL"}
    }
    assert adapters[ProviderName.OPENAI].calls == []
    assert records[-1]["status"] == 400
    assert records[-1]["error"] == "Model is required"


def test_missing_or_empty_messages_rejected():
    app, _, _ = _gateway()
    with TestClient(app) as client:
        missing = _post(client, b'{"model":"gpt-4o-mini"}')
        empty = _post(client, b'{"model":"gpt-4o-mini","messages":[]}')
    for response in (missing, empty):
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_MESSAGES"


def test_malformed_json_rejected():
    app, _, _ = _gateway()
    with TestClient(app) as client:
        response = _post(client, b"{not json")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"


def test_rate_limit_rejects_after_capacity():
    app, adapters, records = _gateway(per_minute=2)
    with TestClient(app) as client:
        statuses = [_post(client, _body(content=f"q{i}"), Authorization="Bearer sk-client-1").status_code for i in range(3)]
        other_client = _post(client, _body(), Authorization="Bearer sk-client-2")
        limited = _post(client, _body(content="again"), Authorization="Bearer sk-client-1")

    assert statuses == [200, 200, 429]
    assert other_client.status_code == 200
    assert limited.json()["error"] == {
        "message": "Rate limit exceeded",
        "type": "rate_limit_error",
        "code": "RATE_LIMIT_EXCEEDED",
    }
    assert len(adapters[ProviderName.OPENAI].calls) == 3
    assert records[-1]["status"] == 429


def test_block_mode_request_pii_never_reaches_provider():
    app, adapters, records = _gateway(guardrails=GuardrailConfig(enabled=True, mode="block"))
    with TestClient(app) as client:
        response = _post(client, _body(content="My SSN is 123-45-6789"))

    assert response.status_code == 400
    assert response.json()["error"] == {
        "message": "PII detected in request",
        "type": "guardrails_violation",
        "code": "PII_DETECTED",
    }
    assert adapters[ProviderName.OPENAI].calls == []
    assert records[-1]["guardrails"] == [{"stage": "request", "labels": ["SSN"]}]


def test_block_mode_response_pii_returns_502_and_is_not_cached():
    leaky = FakeAdapter(
        ProviderName.OPENAI,
        reply=lambda _request: UpstreamResponse(
            status_code=200,
            headers={"content-type": "application/json"},
            body=b'{"choices":[{"message":{"role":"assistant","content":"mail bob@example.com"}}]}',
        ),
    )
    app, _, _ = _gateway(openai=leaky, guardrails=GuardrailConfig(enabled=True, mode="block"))
    with TestClient(app) as client:
        first = _post(client, _body())
        second = _post(client, _body())

    assert first.status_code == 502
    assert first.json()["error"]["message"] == "PII detected in response"
    assert second.status_code == 502
    assert len(leaky.calls) == 2


def test_log_mode_passes_through_and_records_detection():
    app, adapters, records = _gateway(guardrails=GuardrailConfig(enabled=True, mode="log"))
    with TestClient(app) as client:
        response = _post(client, _body(content="reach me at bob@example.com"))
    assert response.status_code == 200
    assert len(adapters[ProviderName.OPENAI].calls) == 1
    assert records[-1]["guardrails"] == [{"stage": "request", "labels": ["EMAIL"]}]


def test_upstream_error_status_is_mirrored_and_not_cached():
    failing = FakeAdapter(
        ProviderName.OPENAI,
        reply=lambda _request: UpstreamResponse(
            status_code=503,
            headers={"content-type": "application/json"},
            body=b'{"error":{"message":"overloaded"}}',
        ),
    )
    app, _, records = _gateway(openai=failing)
    with TestClient(app) as client:
        first = _post(client, _body())
        _post(client, _body())

    assert first.status_code == 503
    assert first.json()["error"] == {
        "message": "Provider returned error: 503",
        "type": "provider_error",
        "code": "PROVIDER_ERROR",
    }
    assert len(failing.calls) == 2
    assert records[-1]["error"] == "Provider returned error: 503: overloaded"


def test_upstream_timeout_returns_504():
    def reply(_request):
        raise UpstreamTimeout()

    app, _, _ = _gateway(openai=FakeAdapter(ProviderName.OPENAI, reply=reply))
    with TestClient(app) as client:
        response = _post(client, _body())
    assert response.status_code == 504
    assert response.json()["error"]["code"] == "TIMEOUT"
    assert response.json()["error"]["message"] == "Request timeout"


def test_unexpected_adapter_failure_returns_500():
    def reply(_request):
        raise RuntimeError("adapter bug")

    app, _, records = _gateway(openai=FakeAdapter(ProviderName.OPENAI, reply=reply))
    with TestClient(app) as client:
        response = _post(client, _body())
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_ERROR"
    assert records[-1]["error"] == "adapter bug"


def _streaming_reply(chunks, failure=None):
    def reply(_request):
        async def stream():
            for chunk in chunks:
                yield chunk
            if failure is not None:
                raise failure

        return UpstreamResponse(status_code=200, headers={"content-type": "text/event-stream"}, stream=stream())

    return reply


def test_streaming_response_is_relayed_and_not_cached():
    frames = [b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n', b"data: [DONE]\n\n"]
    adapter = FakeAdapter(ProviderName.OPENAI, reply=_streaming_reply(frames))
    app, _, records = _gateway(openai=adapter)
    with TestClient(app) as client:
        first = _post(client, _body(stream=True))
        _post(client, _body(stream=True))

    assert first.status_code == 200
    assert first.headers["content-type"].startswith("text/event-stream")
    assert first.headers["cache-control"] == "no-cache"
    assert first.content == b"".join(frames)
    assert len(adapter.calls) == 2
    assert records[-1]["response_size"] == len(b"".join(frames))
    assert records[-1]["served_from"] == "provider"


def test_stream_failure_after_first_chunk_is_reported_in_band():
    first_frame = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
    adapter = FakeAdapter(
        ProviderName.OPENAI,
        reply=_streaming_reply([first_frame], failure=UpstreamTransportError("Upstream unreachable: reset")),
    )
    app, _, records = _gateway(openai=adapter)
    with TestClient(app) as client:
        response = _post(client, _body(stream=True))

    text = response.content.decode("utf-8")
    assert response.status_code == 200
    assert text.startswith(first_frame.decode("utf-8"))
    assert '"code": "INTERNAL_ERROR"' in text
    assert text.endswith("data: [DONE]\n\n")
    assert records[-1]["status"] == 500
    assert records[-1]["error"] == "Upstream unreachable: reset"


def test_adapters_closed_on_shutdown():
    app, adapters, _ = _gateway()
    with TestClient(app):
        pass
    assert adapters[ProviderName.OPENAI].closed is True
    assert adapters[ProviderName.ANTHROPIC].closed is True


def _passthrough(handler) -> OpenAIPassthroughAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIPassthroughAdapter(
        endpoint="http://openai.test/v1/chat/completions",
        api_key="sk-upstream",
        upstream=UpstreamClient(timeout_seconds=5, client=client),
    )


def test_named_user_message_is_forwarded_verbatim():
    forwarded = []

    def handler(request: httpx.Request) -> httpx.Response:
        forwarded.append(json.loads(request.content))
        return httpx.Response(200, json=COMPLETION)

    app, _, _ = _gateway(openai=_passthrough(handler))
    payload = {"model": "gpt-4o-mini", "messages": [{"role": "user", "name": "alice", "content": "Hi"}]}
    with TestClient(app) as client:
        response = _post(client, json.dumps(payload).encode("utf-8"))

    assert response.status_code == 200
    assert forwarded == [payload]


def test_tool_call_round_trip_is_forwarded_verbatim():
    forwarded = []

    def handler(request: httpx.Request) -> httpx.Response:
        forwarded.append(json.loads(request.content))
        return httpx.Response(200, json=COMPLETION)

    payload = {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "user", "content": "Weather in Paris?"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "call_1", "type": "function", "function": {"name": "weather", "arguments": '{"city":"Paris"}'}}
                ],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": "sunny"},
        ],
        "tools": [{"type": "function", "function": {"name": "weather", "parameters": {"type": "object"}}}],
    }
    app, _, _ = _gateway(openai=_passthrough(handler))
    with TestClient(app) as client:
        response = _post(client, json.dumps(payload).encode("utf-8"))

    assert response.status_code == 200
    assert forwarded == [payload]


def test_tool_turns_for_transcoded_model_are_rejected():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    anthropic = AnthropicTranscodingAdapter(
        endpoint="http://anthropic.test/v1/messages",
        api_key="ak",
        upstream=UpstreamClient(timeout_seconds=5, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))),
    )
    payload = {
        "model": "claude-3-sonnet",
        "messages": [{"role": "tool", "tool_call_id": "call_1", "content": "sunny"}],
    }
    app, _, _ = _gateway(anthropic=anthropic)
    with TestClient(app) as client:
        response = _post(client, json.dumps(payload).encode("utf-8"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_MESSAGES"
    assert calls == []


def test_cors_preflight_is_answered():
    app, adapters, _ = _gateway()
    with TestClient(app) as client:
        response = client.options(
            CHAT_PATH,
            headers={
                "Origin": "http://app.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type, Authorization",
            },
        )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] in ("http://app.example", "*")
    assert "POST" in response.headers["access-control-allow-methods"]
    assert response.headers["access-control-max-age"] == "600"
    assert response.headers["access-control-allow-credentials"] == "true"
    assert adapters[ProviderName.OPENAI].calls == []


def test_cors_headers_on_regular_and_error_responses():
    app, _, _ = _gateway()
    with TestClient(app) as client:
        ok = _post(client, _body(), Origin="http://app.example")
        rejected = _post(client, b"{not json", Origin="http://app.example")

    for response in (ok, rejected):
        assert "access-control-allow-origin" in response.headers
        assert response.headers["access-control-expose-headers"] == "Content-Length"


def test_cors_can_be_disabled():
    app, _, _ = _gateway(cors=CorsConfig(enabled=False))
    with TestClient(app) as client:
        response = client.options(
            CHAT_PATH,
            headers={"Origin": "http://app.example", "Access-Control-Request-Method": "POST"},
        )
    assert response.status_code == 405
    assert "access-control-allow-origin" not in response.headers


def test_record_carries_query_and_redacted_headers():
    app, _, records = _gateway()
    with TestClient(app) as client:
        client.post(
            CHAT_PATH + "?trace=1",
            content=_body(),
            headers={"content-type": "application/json", "Authorization": "Bearer sk-secret", "X-Team": "search"},
        )

    record = records[-1]
    assert record["query"] == {"trace": "1"}
    assert record["headers"]["authorization"] == "***"
    assert record["headers"]["x-team"] == "search"
    assert "sk-secret" not in json.dumps(record)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_expired_cache_entry_goes_back_to_provider():
    clock = FakeClock()
    app, adapters, records = _gateway(cache=ResponseCache(60, clock=clock))
    with TestClient(app) as client:
        _post(client, _body())
        clock.now += 30
        _post(client, _body())
        assert records[-1]["served_from"] == "cache"
        clock.now += 31
        _post(client, _body())

    assert len(adapters[ProviderName.OPENAI].calls) == 2
    assert records[-1]["served_from"] == "provider"
