"""Slippi rating client (GraphQL over httpx)."""

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.core.errors import ApiError

logger = structlog.get_logger()

CONNECT_CODE_QUERY = """query GetConnectCode($cc: String!) {
  getConnectCode(code: $cc) {
    user {
      displayName
      connectCode {
        code
        __typename
      }
      rankedNetplayProfile {
        id
        ratingOrdinal
        wins
        losses
        __typename
      }
      __typename
    }
    __typename
  }
}
"""


def build_payload(connect_code: str) -> dict[str, Any]:
    return {
        "operationName": "GetConnectCode",
        "variables": {"cc": connect_code, "uid": connect_code},
        "query": CONNECT_CODE_QUERY,
    }


def extract_rating(data: Any) -> float:
    """Pull ``ratingOrdinal`` out of a GetConnectCode response, rounded to 0.1."""
    try:
        profile = data["data"]["getConnectCode"]["user"]["rankedNetplayProfile"]
        rating = profile["ratingOrdinal"]
    except (KeyError, TypeError) as e:
        raise ApiError("Invalid response structure from Slippi API") from e
    if not isinstance(rating, (int, float)) or isinstance(rating, bool):
        raise ApiError("Invalid response structure from Slippi API")
    return round(float(rating), 1)


class RatingClient:
    """Async client for the Slippi ranked profile API."""

    def __init__(
        self,
        api_url: str,
        connect_code: str | None = None,
        timeout: float = 30.0,
    ):
        self.api_url = api_url
        self.connect_code = connect_code
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "RatingClient":
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("RatingClient must be used as async context manager")
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        return await self.client.post(self.api_url, json=payload)

    async def fetch_rating(self, connect_code: str | None = None) -> float:
        """Fetch the current ranked rating for ``connect_code``.

        Raises ApiError on HTTP errors or a malformed response.
        """
        code = connect_code or self.connect_code
        if not code:
            raise ApiError("Connect code not configured")

        logger.info("rating_fetching", connect_code=code)
        try:
            response = await self._post(build_payload(code))
        except httpx.TransportError as e:
            logger.error("rating_fetch_failed", error=str(e))
            raise ApiError(f"Slippi API unreachable: {e}") from e
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("rating_fetch_failed", status=e.response.status_code)
            raise ApiError(f"Slippi API returned HTTP {e.response.status_code}") from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error("rating_fetch_failed", error="non-JSON response")
            raise ApiError("Slippi API returned a non-JSON response") from e

        rating = extract_rating(data)
        logger.info("rating_fetched", connect_code=code, rating=rating)
        return rating
