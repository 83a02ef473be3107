"""Async client for the third-party directions provider."""

import asyncio
import logging

import httpx

from matatu_tracker.config import settings
from matatu_tracker.core import polyline
from matatu_tracker.core.exceptions import MalformedEncoding, ProviderUnavailable
from matatu_tracker.schemas.geo import Coordinate

logger = logging.getLogger(__name__)

# Seconds to wait before each retry
RETRY_BACKOFF = [1, 2, 4]

STATUS_OK = "OK"


class DirectionsClient:
    """Fetches an encoded overview polyline between two places."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        mode: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.directions_api_key if api_key is None else api_key
        self.base_url = base_url or settings.directions_base_url
        self.mode = mode or settings.directions_mode
        self.max_retries = settings.directions_max_retries if max_retries is None else max_retries
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.directions_timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        """True when a credential is available; checked before any network call."""
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, params: dict, label: str) -> httpx.Response:
        """GET with retry on timeouts, connection errors and 5xx."""
        for attempt in range(self.max_retries + 1):
            can_retry = attempt < self.max_retries
            try:
                resp = await self._client.get(self.base_url, params=params)
                resp.raise_for_status()
                return resp
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                if can_retry:
                    wait = RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)]
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ds",
                        label, attempt + 1, self.max_retries + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                raise ProviderUnavailable(f"{label} failed: {type(e).__name__}") from e
            except httpx.HTTPStatusError as e:
                code = e.response.status_code
                if code >= 500 and can_retry:
                    wait = RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)]
                    logger.warning(
                        "%s attempt %d/%d got HTTP %d, retrying in %ds",
                        label, attempt + 1, self.max_retries + 1, code, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                raise ProviderUnavailable(f"{label} got HTTP {code}", status=str(code)) from e
            except httpx.HTTPError as e:
                raise ProviderUnavailable(f"{label} failed: {e}") from e
        raise ProviderUnavailable(f"{label} failed")

    async def fetch_path(self, origin: str, destination: str) -> list[Coordinate]:
        """Decoded overview polyline from ``origin`` to ``destination``.

        Both are ``"lat,lng"`` or free place text. Raises ProviderUnavailable
        for transport errors or a non-OK status, MalformedEncoding for an
        undecodable polyline.
        """
        if not self.configured:
            raise ProviderUnavailable("Directions provider not configured", status="NOT_CONFIGURED")

        params = {
            "origin": origin,
            "destination": destination,
            "mode": self.mode,
            "key": self.api_key,
        }
        resp = await self._get_with_retry(params, "directions")
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderUnavailable("Directions response is not JSON") from e

        status = str(data.get("status", "")) if isinstance(data, dict) else ""
        routes = data.get("routes") if isinstance(data, dict) else None
        if status != STATUS_OK or not routes:
            raise ProviderUnavailable(f"Directions status {status or 'missing'}", status=status)

        try:
            encoded = routes[0]["overview_polyline"]["points"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedEncoding("Response has no overview_polyline.points") from e

        points = polyline.decode(encoded)
        logger.debug("Directions %s -> %s: %d points", origin, destination, len(points))
        return points
