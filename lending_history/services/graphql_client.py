"""
GraphQL transport for subgraph endpoints.

Every introspection and data query goes through SubgraphClient.execute, which
turns a non-2xx status, an unparseable body or a missing `data` field into a
TransportError carrying the first GraphQL error message.
"""
import httpx
from typing import Any, Dict, Optional
import logging

from lending_history.core.config import settings
from lending_history.core.errors import TransportError
from lending_history.core.retry import retry_on_network_error

logger = logging.getLogger(__name__)


class SubgraphClient:
    """Async GraphQL client shared by schema discovery and pagination"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None
    ):
        self._client = http_client
        self._owns_client = http_client is None
        self.timeout = timeout if timeout is not None else settings.subgraph_timeout
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.subgraph_retry_attempts
        self._post = retry_on_network_error(self.retry_attempts)(self._post_once)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _post_once(self, url: str, body: Dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            url,
            json=body,
            headers={"content-type": "application/json"}
        )

    async def execute(
        self,
        url: str,
        query: str,
        variables: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a GraphQL query and return its `data` object.

        Raises:
            TransportError: network failure, non-2xx status, malformed JSON or no data
        """
        try:
            response = await self._post(url, {"query": query, "variables": variables or {}})
        except httpx.HTTPError as e:
            logger.error(f"Subgraph request to {redact_url(url)} failed: {e}")
            raise TransportError(url, str(e) or e.__class__.__name__)

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            payload = {}
        errors = payload.get("errors") or []
        data = payload.get("data")

        if not response.is_success or not isinstance(data, dict):
            message = _first_error_message(errors)
            if not message:
                message = (
                    f"HTTP {response.status_code}" if not response.is_success
                    else "Subgraph response had no data"
                )
            logger.error(f"Subgraph query failed ({response.status_code}) at {redact_url(url)}: {message}")
            raise TransportError(url, message, response.status_code)

        if errors:
            # Partial results are usable; keep the messages visible
            logger.warning(f"Subgraph returned data with errors: {_first_error_message(errors)}")
        return data


def _first_error_message(errors) -> Optional[str]:
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict) and first.get("message"):
            return str(first["message"])
    return None


def redact_url(url: str) -> str:
    # Gateway URLs embed the API key in the path
    return url.split("/api/")[0] if "/api/" in url else url
