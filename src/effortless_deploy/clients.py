"""Shared aioboto3 client pool."""

from __future__ import annotations

import logging
from typing import Any

import aioboto3

logger = logging.getLogger(__name__)

GLOBAL_REGION = "us-east-1"
"""Region hosting global services (CloudFront, ACM certificates for CloudFront)."""


class AwsClients:
    """
    Lazily opened aioboto3 clients keyed by (service, region).

    One session backs every client. Clients are entered on first use and
    exited together in :meth:`close`, so a deploy opens each service
    connection once no matter how many handlers use it.

    Supports both AWS and LocalStack environments. When endpoint_url is
    provided, every client is created against that endpoint.
    """

    def __init__(
        self,
        region: str | None = None,
        endpoint_url: str | None = None,
        session: aioboto3.Session | None = None,
    ) -> None:
        self.region = region
        self.endpoint_url = endpoint_url
        self._session = session
        self._clients: dict[tuple[str, str | None], Any] = {}

    async def get(self, service: str, region: str | None = None) -> Any:
        """Get or create the client for ``service`` in ``region``."""
        region = region or self.region
        key = (service, region)
        client = self._clients.get(key)
        if client is not None:
            return client

        if self._session is None:
            self._session = aioboto3.Session()

        kwargs: dict[str, Any] = {}
        if region:
            kwargs["region_name"] = region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url

        logger.debug("Opening %s client (region=%s)", service, region or "default")
        client = await self._session.client(service, **kwargs).__aenter__()
        self._clients[key] = client
        return client

    async def resolved_region(self) -> str:
        """Region the regional clients actually talk to."""
        if self.region:
            return self.region
        client = await self.get("lambda")
        return str(client.meta.region_name)

    async def close(self) -> None:
        """Close every open client."""
        clients, self._clients = self._clients, {}
        for (service, _), client in clients.items():
            try:
                await client.__aexit__(None, None, None)
            except Exception:
                logger.debug("Error closing %s client", service, exc_info=True)
        self._session = None

    async def __aenter__(self) -> AwsClients:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()
