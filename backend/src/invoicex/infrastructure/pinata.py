"""
Remote storage backend on the Pinata IPFS pinning service.

Pinata assigns its own CID to pinned content. Our locator is pinned as the
pin name, so any instance can resolve locator -> CID through the pin list
and dereference the CID on the gateway.

Handles:
- File and manifest upload via /pinning/pinFileToIPFS
- Locator resolution via /data/pinList
- Gateway download with digest re-verification
- Credential check via /data/testAuthentication at startup
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from invoicex.domain.addressing import address, ensure_locator
from invoicex.domain.errors import BackendUnavailable, ContentNotFound, DecodeError
from invoicex.infrastructure.storage import StorageBackend, StorageStatus

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.pinata.cloud"
DEFAULT_GATEWAY = "https://gateway.pinata.cloud"


class PinataBackend(StorageBackend):
    """
    Storage backend delegating to Pinata over async HTTP.

    Every network, auth or timeout failure surfaces as BackendUnavailable.
    Requests are bounded by a semaphore so a slow pinning service cannot
    absorb every connection the process has.

    Example:
        backend = PinataBackend(jwt="eyJ...")
        locator = await backend.put(pdf_bytes, name="registration.pdf")
        url = await backend.url_for(locator)
    """

    provider = "pinata"

    def __init__(
        self,
        jwt: str,
        api_url: str = DEFAULT_API_URL,
        gateway: str = DEFAULT_GATEWAY,
        timeout_seconds: float = 30.0,
        max_concurrency: int = 4,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize Pinata backend.

        Args:
            jwt: Pinata API JWT
            api_url: Pinata API base URL
            gateway: IPFS gateway base URL used for downloads
            timeout_seconds: Per-request timeout
            max_concurrency: Maximum in-flight requests
            client: Preconfigured HTTP client (for testing)
        """
        self.api_url = api_url.rstrip("/")
        self.gateway = gateway.rstrip("/")
        self._auth_headers = {"Authorization": f"Bearer {jwt}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._cids: dict[str, str] = {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with self._semaphore:
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                raise BackendUnavailable(f"Pinata request timed out: {method} {url}") from e
            except httpx.HTTPError as e:
                raise BackendUnavailable(f"Pinata request failed: {e}") from e

        if response.status_code in (401, 403):
            raise BackendUnavailable(f"Pinata authentication failed ({response.status_code})")
        return response

    @staticmethod
    def _field(response: httpx.Response, operation: str, *path: str | int) -> Any:
        """Pull a value out of a successful JSON reply, or report the reply as unusable."""
        try:
            value = response.json()
            for key in path:
                value = value[key]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendUnavailable(
                f"Unexpected Pinata {operation} response: {response.text[:200]}"
            ) from e
        return value

    async def _lookup_cid(self, locator: str) -> str | None:
        """Resolve a locator to the CID Pinata assigned when it was pinned."""
        if locator in self._cids:
            return self._cids[locator]

        response = await self._request(
            "GET",
            f"{self.api_url}/data/pinList",
            headers=self._auth_headers,
            params={"status": "pinned", "metadata[name]": locator, "pageLimit": 1},
        )
        if response.status_code >= 400:
            raise BackendUnavailable(
                f"Pinata pin lookup failed ({response.status_code}): {response.text[:200]}"
            )

        rows = self._field(response, "pin lookup", "rows") or []
        if not rows:
            return None

        cid = self._field(response, "pin lookup", "rows", 0, "ipfs_pin_hash")
        self._cids[locator] = cid
        return cid

    async def put(
        self,
        content: bytes,
        name: str | None = None,
        content_type: str | None = None,
    ) -> str:
        locator = address(content)

        if await self._lookup_cid(locator) is not None:
            logger.debug(f"Content already pinned: {locator}")
            return locator

        metadata = {
            "name": locator,
            "keyvalues": {"locator": locator, "filename": name or locator},
        }
        logger.info(f"Uploading {name or locator} to Pinata ({len(content)} bytes)")

        response = await self._request(
            "POST",
            f"{self.api_url}/pinning/pinFileToIPFS",
            headers=self._auth_headers,
            files={"file": (name or locator, content, content_type or "application/octet-stream")},
            data={
                "pinataMetadata": json.dumps(metadata),
                "pinataOptions": json.dumps({"cidVersion": 1}),
            },
        )
        if response.status_code >= 400:
            raise BackendUnavailable(
                f"Pinata upload failed ({response.status_code}): {response.text[:200]}"
            )

        cid = self._field(response, "upload", "IpfsHash")
        self._cids[locator] = cid
        logger.info(f"Pinned {locator} as {cid}")
        return locator

    async def get(self, locator: str) -> bytes:
        ensure_locator(locator)
        cid = await self._lookup_cid(locator)
        if cid is None:
            raise ContentNotFound(locator)

        response = await self._request("GET", f"{self.gateway}/ipfs/{cid}")
        if response.status_code == 404:
            raise ContentNotFound(locator)
        if response.status_code >= 400:
            raise BackendUnavailable(
                f"Gateway fetch of {cid} failed ({response.status_code})"
            )

        content = response.content
        if address(content) != locator:
            logger.error(f"Digest mismatch for {locator} (cid {cid})")
            raise DecodeError(f"Content returned for {locator} does not match its locator")
        return content

    async def exists(self, locator: str) -> bool:
        return await self._lookup_cid(ensure_locator(locator)) is not None

    async def url_for(self, locator: str) -> str:
        cid = await self._lookup_cid(ensure_locator(locator))
        if cid is None:
            raise ContentNotFound(locator)
        return f"{self.gateway}/ipfs/{cid}"

    def status(self) -> StorageStatus:
        return StorageStatus(
            provider=self.provider,
            configured=True,
            message="Connected to Pinata IPFS",
        )

    async def check_connection(self) -> bool:
        """True if the configured JWT is accepted by Pinata."""
        try:
            response = await self._request(
                "GET",
                f"{self.api_url}/data/testAuthentication",
                headers=self._auth_headers,
            )
        except BackendUnavailable as e:
            logger.warning(f"Pinata authentication check failed: {e}")
            return False
        return response.is_success

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
