"""GraphQL over HTTP using httpx.

Failure mapping:

- connection refused/reset, timeouts: ``TransportFailure(status=None)``
- HTTP status >= 400: ``TransportFailure(status=...)`` with headers and body
- a body that is not a GraphQL response: ``ProtocolFailure``
  (``INTERNAL_SERVER_ERROR``)
- an expired access token: ``ProtocolFailure`` (``TOKEN_EXPIRED``) raised
  before sending, so recovery refreshes without a wasted round trip
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx

from querypipe import __version__
from querypipe.core.config import TransportConfig
from querypipe.core.errors import FailureError, ProtocolFailure, TransportFailure
from querypipe.core.logging import get_logger
from querypipe.execution.recovery import TokenProvider
from querypipe.operations.request import ExecutionResult, GraphQLRequest

_logger = get_logger("transport.http")

# Bytes of an error body kept on the failure
_BODY_PREVIEW_CHARS = 500


class HttpTransport:
    """POSTs operations to a GraphQL endpoint.

    Args:
        config: Endpoint, timeout, extra headers and wire batching flag.
        token_provider: Supplies the bearer credential, if any.
        client: Pre-built client (tests pass one with ``httpx.MockTransport``).
            A client created here is closed by :meth:`aclose`.
    """

    def __init__(
        self,
        config: TransportConfig | None = None,
        token_provider: TokenProvider | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or TransportConfig()
        self.token_provider = token_provider
        self._client = client
        self._owns_client = client is None

    @property
    def supports_batching(self) -> bool:
        return self.config.wire_batching

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                headers={"User-Agent": f"querypipe/{__version__}"},
            )
            self._owns_client = True
        return self._client

    async def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **self.config.headers,
        }
        if self.token_provider is None:
            return headers
        credential = await self.token_provider.get_access_token()
        if credential:
            if self.token_provider.is_expired(credential):
                raise FailureError(
                    ProtocolFailure(code="TOKEN_EXPIRED", message="Access token has expired")
                )
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    async def _post(self, body: Any, operation_name: str | None) -> httpx.Response:
        headers = await self._headers()
        client = self._get_client()
        try:
            response = await client.post(self.config.endpoint, json=body, headers=headers)
        except httpx.TimeoutException as e:
            _logger.debug("transport.timeout", operation_name=operation_name)
            raise FailureError(
                TransportFailure(message=f"Request timed out: {e}", status=None)
            ) from e
        except httpx.RequestError as e:
            _logger.debug(
                "transport.request_error",
                operation_name=operation_name,
                error=str(e),
            )
            raise FailureError(
                TransportFailure(message=f"Network request failed: {e}", status=None)
            ) from e

        if response.status_code >= 400:
            _logger.debug(
                "transport.http_error",
                operation_name=operation_name,
                status_code=response.status_code,
            )
            raise FailureError(
                TransportFailure(
                    message=f"HTTP {response.status_code}: {response.reason_phrase}",
                    status=response.status_code,
                    headers=dict(response.headers),
                    body=response.text[:_BODY_PREVIEW_CHARS],
                )
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise FailureError(
                ProtocolFailure(
                    code="INTERNAL_SERVER_ERROR",
                    message=f"Malformed response body: {e}",
                )
            ) from e

    @staticmethod
    def _to_result(payload: Any) -> ExecutionResult:
        try:
            return ExecutionResult.from_payload(payload)
        except ValueError as e:
            raise FailureError(
                ProtocolFailure(
                    code="INTERNAL_SERVER_ERROR",
                    message=f"Malformed response body: {e}",
                )
            ) from e

    async def execute(self, request: GraphQLRequest) -> ExecutionResult:
        response = await self._post(request.to_payload(), request.name)
        return self._to_result(self._decode(response))

    async def execute_batch(
        self, requests: Sequence[GraphQLRequest]
    ) -> list[ExecutionResult]:
        """Send ``requests`` as one JSON array; results come back in order."""
        if not requests:
            return []
        response = await self._post(
            [r.to_payload() for r in requests],
            ",".join(r.name or "anonymous" for r in requests),
        )
        payload = self._decode(response)
        if not isinstance(payload, list) or len(payload) != len(requests):
            raise FailureError(
                ProtocolFailure(
                    code="INTERNAL_SERVER_ERROR",
                    message=f"Expected {len(requests)} batched results from the server",
                )
            )
        _logger.debug("transport.batch_sent", size=len(requests))
        return [self._to_result(item) for item in payload]

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


__all__ = ["HttpTransport"]
