"""
Upstream interfaces: the OpenAI-compatible model API and external HTTP APIs.
"""

import time
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Any, List, Iterator

import openai
import requests
from openai import OpenAI

from ..models import UpstreamResponse
from ..models.config import UpstreamConfig
from ..utils import get_logger
from ..utils.error_handling import (
    ConfigurationError, UpstreamError, TransientUpstreamError,
)


class ModelClient:
    """
    Client for an OpenAI-compatible chat completion API.

    Works against any base URL that speaks the OpenAI protocol (OpenRouter by
    default). Rate limits, timeouts and connection failures are raised as
    TransientUpstreamError so the scheduler can retry them; every other API
    failure is an UpstreamError.
    """

    def __init__(self, config: Optional[UpstreamConfig] = None, client: Optional[Any] = None):
        self.config = config or UpstreamConfig()
        self.logger = get_logger(__name__)

        if client is not None:
            self._client = client
        elif not self.config.api_key:
            self.logger.warning("Upstream API key not provided")
            self._client = None
        else:
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )

        # Rate limiting tracking, per model
        self._request_times: Dict[str, List[datetime]] = {}
        self._rate_limit_lock = threading.Lock()

        # Performance tracking
        self._response_times: List[float] = []
        self._max_response_time_samples = 100
        self._consecutive_failures = 0

        self.logger.info(f"Initialized ModelClient for {self.config.base_url}")

    def complete(self, model_id: str, prompt: str, system_prompt: Optional[str] = None,
                 max_tokens: Optional[int] = None, temperature: Optional[float] = None,
                 rate_limit_rpm: Optional[int] = None) -> UpstreamResponse:
        """
        Send a single chat completion request.

        Args:
            model_id: Upstream model identifier
            prompt: User prompt
            system_prompt: Optional system message
            max_tokens: Completion token limit (defaults to config)
            temperature: Sampling temperature (defaults to config)
            rate_limit_rpm: Per-minute request limit of the model, if any

        Returns:
            UpstreamResponse with content and token usage

        Raises:
            TransientUpstreamError: Rate limit, timeout or connection failure
            UpstreamError: Any other API failure
        """
        self._ensure_client()
        self._check_rate_limits(model_id, rate_limit_rpm)

        api_params = self._build_params(model_id, prompt, system_prompt, max_tokens, temperature)
        start_time = time.time()

        try:
            response = self._client.chat.completions.create(**api_params)
        except openai.APIError as e:
            self._consecutive_failures += 1
            raise self._translate_error(e, model_id) from e

        latency_ms = (time.time() - start_time) * 1000
        self._track_request(model_id)
        self._track_response_time(latency_ms)
        self._consecutive_failures = 0

        choice = response.choices[0] if response.choices else None
        usage = getattr(response, "usage", None)

        return UpstreamResponse(
            content=(choice.message.content or "") if choice else "",
            model_id=model_id,
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            latency_ms=latency_ms,
            finish_reason=getattr(choice, "finish_reason", None),
        )

    def stream(self, model_id: str, prompt: str, system_prompt: Optional[str] = None,
               max_tokens: Optional[int] = None, temperature: Optional[float] = None,
               rate_limit_rpm: Optional[int] = None) -> Iterator[str]:
        """
        Stream a chat completion, yielding content deltas in order.

        Raises:
            TransientUpstreamError: Rate limit, timeout or connection failure
            UpstreamError: Any other API failure
        """
        self._ensure_client()
        self._check_rate_limits(model_id, rate_limit_rpm)

        api_params = self._build_params(model_id, prompt, system_prompt, max_tokens, temperature)
        api_params["stream"] = True
        start_time = time.time()

        try:
            for chunk in self._client.chat.completions.create(**api_params):
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIError as e:
            self._consecutive_failures += 1
            raise self._translate_error(e, model_id) from e

        self._track_request(model_id)
        self._track_response_time((time.time() - start_time) * 1000)
        self._consecutive_failures = 0

    def _ensure_client(self) -> None:
        if self._client is None:
            raise ConfigurationError("Upstream API client not initialized: API key not provided",
                                     config_key="upstream_config.api_key")

    def _build_params(self, model_id: str, prompt: str, system_prompt: Optional[str],
                      max_tokens: Optional[int], temperature: Optional[float]) -> Dict[str, Any]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        return {
            "model": model_id,
            "messages": messages,
            "temperature": self.config.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }

    def _translate_error(self, error: "openai.APIError", model_id: str) -> UpstreamError:
        """Map an openai SDK exception onto the engine's error taxonomy."""
        transient_types = (
            openai.RateLimitError,
            openai.APIConnectionError,
            openai.InternalServerError,
        )
        status_code = getattr(error, "status_code", None)

        if isinstance(error, transient_types):
            self.logger.warning(f"Transient upstream error for {model_id}: {str(error)}")
            if isinstance(error, openai.RateLimitError):
                error_code = "RATE_LIMITED"
            elif isinstance(error, openai.APITimeoutError):
                error_code = "TIMEOUT"
            else:
                error_code = "MODEL_UNAVAILABLE"
            return TransientUpstreamError(
                str(error), api_name=model_id, status_code=status_code, error_code=error_code
            )

        self.logger.error(f"Upstream API error for {model_id}: {str(error)}")
        return UpstreamError(str(error), api_name=model_id, status_code=status_code)

    def _check_rate_limits(self, model_id: str, rate_limit_rpm: Optional[int]) -> None:
        """Raise a transient error when the model's per-minute limit is reached."""
        if not rate_limit_rpm:
            return

        with self._rate_limit_lock:
            now = datetime.now()
            recent = [
                req_time for req_time in self._request_times.get(model_id, [])
                if now - req_time < timedelta(minutes=1)
            ]
            self._request_times[model_id] = recent

            if len(recent) >= rate_limit_rpm:
                self.logger.warning(f"Per-minute rate limit reached for {model_id}")
                raise TransientUpstreamError(
                    f"Rate limit of {rate_limit_rpm} rpm reached for {model_id}",
                    api_name=model_id, error_code="RATE_LIMITED"
                )

    def _track_request(self, model_id: str) -> None:
        """Track a successful request for rate limiting."""
        with self._rate_limit_lock:
            self._request_times.setdefault(model_id, []).append(datetime.now())

    def _track_response_time(self, response_time_ms: float) -> None:
        self._response_times.append(response_time_ms)
        if len(self._response_times) > self._max_response_time_samples:
            self._response_times = self._response_times[-self._max_response_time_samples:]

    def get_performance_stats(self) -> Dict[str, Any]:
        """Get response time statistics."""
        if not self._response_times:
            return {
                'avg_response_time_ms': 0.0,
                'max_response_time_ms': 0.0,
                'total_requests': 0,
                'consecutive_failures': self._consecutive_failures,
            }

        return {
            'avg_response_time_ms': sum(self._response_times) / len(self._response_times),
            'max_response_time_ms': max(self._response_times),
            'total_requests': len(self._response_times),
            'consecutive_failures': self._consecutive_failures,
        }

    def is_healthy(self) -> bool:
        """The client is usable when configured and not failing repeatedly."""
        return self._client is not None and self._consecutive_failures < 3


class ExternalAPIClient:
    """
    Performs external_api actions over HTTP with requests.

    The action's configuration supplies ``url`` and optionally ``method``,
    ``headers``, ``body`` and ``timeout``. Extracted parameters are merged into
    the body (or query string for GET).
    """

    def __init__(self, config: Optional[UpstreamConfig] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or UpstreamConfig()
        self.logger = get_logger(__name__)
        self._session = session or requests.Session()

    def call(self, action_config: Dict[str, Any],
             parameters: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call the configured HTTP endpoint.

        Args:
            action_config: The action mapping's configuration
            parameters: Parameters extracted from the request

        Returns:
            Decoded JSON body, or the raw text when the body is not JSON

        Raises:
            ConfigurationError: If no url is configured
            TransientUpstreamError: Timeout, connection failure, HTTP 429 or 5xx
            UpstreamError: Other HTTP error statuses
        """
        url = action_config.get("url")
        if not url:
            raise ConfigurationError("external_api action has no url", config_key="url")

        method = str(action_config.get("method", "POST")).upper()
        timeout = action_config.get("timeout", self.config.external_timeout_seconds)
        payload = {**action_config.get("body", {}), **(parameters or {})}

        request_kwargs: Dict[str, Any] = {
            "headers": action_config.get("headers", {}),
            "timeout": timeout,
        }
        if method == "GET":
            request_kwargs["params"] = payload
        else:
            request_kwargs["json"] = payload

        try:
            response = self._session.request(method, url, **request_kwargs)
        except requests.exceptions.Timeout as e:
            self.logger.error(f"Request timeout after {timeout} seconds: {url}")
            raise TransientUpstreamError(f"Timeout calling {url}", api_name=url,
                                         error_code="TIMEOUT") from e
        except requests.exceptions.ConnectionError as e:
            self.logger.error(f"Connection failed: {url}: {str(e)}")
            raise TransientUpstreamError(f"Connection failed for {url}", api_name=url) from e

        if response.status_code == 429 or response.status_code >= 500:
            self.logger.warning(f"External API {url} returned {response.status_code}")
            raise TransientUpstreamError(
                f"External API returned {response.status_code}",
                api_name=url, status_code=response.status_code
            )
        if response.status_code >= 400:
            self.logger.error(f"External API error: {response.status_code} - {response.text}")
            raise UpstreamError(
                f"External API returned {response.status_code}",
                api_name=url, status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError:
            return response.text
