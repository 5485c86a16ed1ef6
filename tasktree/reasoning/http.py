"""
HTTP Reasoning Provider

Talks to a remote reasoning service over JSON/HTTP with httpx.

Wire format (POST {base_url}/v1/turns):
    request:  ReasoningRequest.to_dict() plus "model"
    response: {"kind": "final_answer" | "capability_requests",
               "conversation_handle": str,
               "payload": any,
               "requests": [{"call_id", "name", "arguments"}],
               "cost": float | null,
               "usage": {"input_tokens", "output_tokens", ...} | null}

429 and 5xx map to ProviderUnavailableError (retried by the base class);
other 4xx and malformed bodies map to ProviderResponseError.
"""

from typing import Any

import httpx
from pydantic import SecretStr

from tasktree.budget.pricing import calculate_cost
from tasktree.core.exceptions import ProviderResponseError, ProviderUnavailableError
from tasktree.core.types import (
    CapabilityRequest,
    ProviderResponse,
    ReasoningRequest,
    ResponseKind,
    new_id,
)
from tasktree.reasoning.provider import BaseReasoningProvider

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class HttpReasoningProvider(BaseReasoningProvider):
    """Reasoning provider backed by a remote HTTP service."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: SecretStr | str | None = None,
        model: str = "claude-sonnet-4-6",
        timeout: float = 120.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(max_retries=max_retries, retry_delay=retry_delay, timeout=None)
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._request_timeout = timeout
        self._api_key = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        self._client = client
        self._owns_client = client is None

    @property
    def provider_name(self) -> str:
        return "http"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._request_timeout,
            )
        return self._client

    async def _do_submit(self, request: ReasoningRequest) -> ProviderResponse:
        body = {**request.to_dict(), "model": self._model}

        try:
            response = await self._get_client().post("/v1/turns", json=body)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError("Reasoning service timed out", cause=e) from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError("Reasoning service unreachable", cause=e) from e

        if response.status_code in _RETRYABLE_STATUS:
            retry_after = response.headers.get("retry-after")
            raise ProviderUnavailableError(
                f"Reasoning service returned {response.status_code}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                context={"status": response.status_code},
            )
        if response.status_code >= 400:
            raise ProviderResponseError(
                f"Reasoning service rejected the request ({response.status_code})",
                context={"status": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderResponseError("Reasoning service returned invalid JSON", cause=e) from e

        return self._parse(data, request)

    def _parse(self, data: dict[str, Any], request: ReasoningRequest) -> ProviderResponse:
        try:
            kind = ResponseKind(data["kind"])
        except (KeyError, ValueError, TypeError) as e:
            raise ProviderResponseError("Response is missing a valid 'kind'", cause=e) from e

        handle = data.get("conversation_handle") or request.conversation_handle
        cost = data.get("cost")
        if cost is None:
            cost = calculate_cost(data.get("model", self._model), data.get("usage") or {})

        if kind == ResponseKind.FINAL_ANSWER:
            return ProviderResponse.final(data.get("payload"), conversation_handle=handle, cost=float(cost))

        raw_requests = data.get("requests") or []
        if not isinstance(raw_requests, list) or not raw_requests:
            raise ProviderResponseError("capability_requests response has no requests")

        requests = []
        for item in raw_requests:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                raise ProviderResponseError("Malformed capability request in response")
            arguments = item.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise ProviderResponseError("Capability arguments must be an object")
            requests.append(
                CapabilityRequest(
                    name=item["name"],
                    arguments=arguments,
                    call_id=item.get("call_id") or new_id("call"),
                )
            )
        return ProviderResponse.calls(requests, conversation_handle=handle, cost=float(cost))

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
