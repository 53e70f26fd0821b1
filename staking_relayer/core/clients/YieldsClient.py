from __future__ import annotations

import time
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from staking_relayer.core.constants.base import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_YIELDS_API_URL,
)


class YieldPool(BaseModel):
    chain: str
    project: str
    symbol: str
    tvl_usd: float = Field(alias="tvlUsd")
    apy: float | None = None


class YieldsClient:
    """Read-only client for the DefiLlama yields aggregator."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_YIELDS_API_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        await self.client.aclose()

    async def get_pools(self) -> list[YieldPool]:
        """Fetch every pool in one round trip.

        Raises ``httpx.HTTPError`` on transport or status failures and
        ``ValueError`` when the payload is not the expected shape. Individual
        pools that fail validation are skipped.
        """
        url = f"{self.base_url}/pools"
        logger.debug(f"Making GET request to {url}")
        start_time = time.time()
        resp = await self.client.get(url)
        elapsed = time.time() - start_time
        if resp.status_code >= 400:
            logger.warning(
                f"HTTP {resp.status_code} response for GET {url} after {elapsed:.2f}s"
            )
        else:
            logger.debug(
                f"HTTP {resp.status_code} response for GET {url} after {elapsed:.2f}s"
            )
        resp.raise_for_status()

        body: Any = resp.json()
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise ValueError("Yields API returned unexpected response type")

        pools: list[YieldPool] = []
        skipped = 0
        for item in data:
            if not isinstance(item, dict):
                skipped += 1
                continue
            try:
                pools.append(YieldPool.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.debug(f"Skipped {skipped} malformed pools from {url}")
        return pools
