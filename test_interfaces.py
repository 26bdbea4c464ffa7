"""
Tests for the upstream model client and the external HTTP client.
"""

from types import SimpleNamespace

import httpx
import openai
import pytest
import requests

from cosmo_engine.core import ExternalAPIClient, ModelClient
from cosmo_engine.models import UpstreamConfig
from cosmo_engine.utils import ConfigurationError, TransientUpstreamError, UpstreamError

REQUEST = httpx.Request("POST", "https://upstream.test/v1/chat/completions")


class FakeCompletions:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def create(self, **params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.result


def _openai_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _completion(content, prompt_tokens=12, completion_tokens=4):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _status_error(error_class, status_code):
    response = httpx.Response(status_code, request=REQUEST)
    return error_class(f"upstream returned {status_code}", response=response, body=None)


def test_complete_builds_messages_and_reads_usage():
    completions = FakeCompletions(result=_completion("Hi there"))
    client = ModelClient(UpstreamConfig(default_max_tokens=256), client=_openai_client(completions))

    response = client.complete("openai/gpt-4o-mini", "hello", system_prompt="Be brief.")

    assert response.content == "Hi there"
    assert response.prompt_tokens == 12
    assert response.completion_tokens == 4
    assert response.finish_reason == "stop"
    params = completions.calls[0]
    assert params["model"] == "openai/gpt-4o-mini"
    assert params["max_tokens"] == 256
    assert params["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hello"},
    ]
    assert client.get_performance_stats()["total_requests"] == 1


def test_stream_yields_deltas():
    chunks = [
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hel"))]),
        SimpleNamespace(choices=[]),
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))]),
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="lo"))]),
    ]
    completions = FakeCompletions(result=iter(chunks))
    client = ModelClient(client=_openai_client(completions))

    assert list(client.stream("m", "hi")) == ["Hel", "lo"]
    assert completions.calls[0]["stream"] is True


@pytest.mark.parametrize("error", [
    _status_error(openai.RateLimitError, 429),
    _status_error(openai.InternalServerError, 503),
    openai.APIConnectionError(request=REQUEST),
])
def test_transient_errors_are_retryable(error):
    client = ModelClient(client=_openai_client(FakeCompletions(error=error)))

    with pytest.raises(TransientUpstreamError) as excinfo:
        client.complete("m", "hi")

    assert excinfo.value.retryable


def test_client_errors_are_not_retryable():
    client = ModelClient(client=_openai_client(FakeCompletions(error=_status_error(openai.BadRequestError, 400))))

    with pytest.raises(UpstreamError) as excinfo:
        client.complete("m", "hi")

    assert not isinstance(excinfo.value, TransientUpstreamError)
    assert excinfo.value.status_code == 400


def test_per_model_rate_limit():
    client = ModelClient(client=_openai_client(FakeCompletions(result=_completion("ok"))))
    client.complete("m", "one", rate_limit_rpm=1)

    with pytest.raises(TransientUpstreamError):
        client.complete("m", "two", rate_limit_rpm=1)

    client.complete("other", "three", rate_limit_rpm=1)


def test_missing_api_key_is_a_configuration_error():
    client = ModelClient(UpstreamConfig(api_key=""))

    assert not client.is_healthy()
    with pytest.raises(ConfigurationError):
        client.complete("m", "hi")


class FakeHTTPResponse:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("not json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_external_get_sends_parameters_as_query():
    session = FakeSession(FakeHTTPResponse(200, {"temp": 21}))
    client = ExternalAPIClient(session=session)

    result = client.call({"url": "https://weather.test", "method": "get"}, {"city": "Paris"})

    method, url, kwargs = session.calls[0]
    assert result == {"temp": 21}
    assert (method, url) == ("GET", "https://weather.test")
    assert kwargs["params"] == {"city": "Paris"}


def test_external_post_merges_body_and_returns_text():
    session = FakeSession(FakeHTTPResponse(200, text="accepted"))
    client = ExternalAPIClient(session=session)

    result = client.call({"url": "https://hooks.test", "body": {"source": "cosmo"}}, {"id": "7"})

    assert result == "accepted"
    assert session.calls[0][2]["json"] == {"source": "cosmo", "id": "7"}


@pytest.mark.parametrize("status_code", [429, 502])
def test_external_retryable_statuses(status_code):
    client = ExternalAPIClient(session=FakeSession(FakeHTTPResponse(status_code)))

    with pytest.raises(TransientUpstreamError):
        client.call({"url": "https://api.test"})


def test_external_client_error_status():
    client = ExternalAPIClient(session=FakeSession(FakeHTTPResponse(404, text="missing")))

    with pytest.raises(UpstreamError) as excinfo:
        client.call({"url": "https://api.test"})

    assert not excinfo.value.retryable


def test_external_timeout_is_transient():
    client = ExternalAPIClient(session=FakeSession(error=requests.exceptions.Timeout()))

    with pytest.raises(TransientUpstreamError):
        client.call({"url": "https://api.test"})


def test_external_call_requires_url():
    with pytest.raises(ConfigurationError):
        ExternalAPIClient(session=FakeSession()).call({})
