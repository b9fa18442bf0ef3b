# src/bavard/services/storage.py
"""Object storage gateway for message media and stories.

Uploaded bytes are stored once and addressed by content. Two backends exist:
an in-process BLAKE3-addressed store for development and tests, and Pinata
IPFS pinning for deployments.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import threading
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import unquote_to_bytes

import blake3
import httpx

from bavard.core.errors import InvalidRequestError, NotFoundError, TransientIOError
from bavard.core.settings import settings

logger = logging.getLogger(__name__)

_DATA_URI_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?"
    r"(?P<params>(;[\w-]+=[^;,]*)*)"
    r"(?P<b64>;base64)?,(?P<data>.*)$",
    re.DOTALL,
)

DEFAULT_MIME_TYPE = "application/octet-stream"


class StorageError(TransientIOError):
    """Raised when an upload could not be completed."""


@dataclass(frozen=True)
class DecodedUpload:
    """Raw bytes and MIME type recovered from a data URI."""

    content: bytes
    mime_type: str


@dataclass(frozen=True)
class StoredObject:
    """Result of a successful upload."""

    address: str
    url: str
    mime_type: str
    size: int


def decode_data_uri(data_uri: str) -> DecodedUpload:
    """Decode a ``data:`` URI into bytes.

    Raises:
        InvalidRequestError: If the URI is malformed or empty.
    """
    match = _DATA_URI_RE.match(data_uri.strip())
    if match is None:
        raise InvalidRequestError("Upload must be a data URI")

    mime_type = match.group("mime") or DEFAULT_MIME_TYPE
    data = match.group("data")
    if match.group("b64"):
        try:
            content = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidRequestError("Upload is not valid base64") from exc
    else:
        content = unquote_to_bytes(data)

    if not content:
        raise InvalidRequestError("Upload is empty")
    return DecodedUpload(content=content, mime_type=mime_type)


def content_address(content: bytes) -> str:
    """Return the BLAKE3 hex digest used as the in-memory content address."""
    return blake3.blake3(content).hexdigest()


class ObjectStorage(Protocol):
    """Interface implemented by storage backends."""

    async def store(self, content: bytes, file_name: str | None, mime_type: str) -> StoredObject:
        ...

    def public_url(self, address: str) -> str:
        ...


class InMemoryObjectStorage:
    """Content-addressed store held in process memory.

    Identical uploads share one address. Objects are served back through the
    media endpoint under ``public_base_url``.
    """

    def __init__(self, public_base_url: str | None = None) -> None:
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    async def store(self, content: bytes, file_name: str | None, mime_type: str) -> StoredObject:
        address = content_address(content)
        with self._lock:
            self._objects.setdefault(address, (content, mime_type))
        logger.debug("Stored %d bytes as %s (%s)", len(content), address, file_name)
        return StoredObject(
            address=address,
            url=self.public_url(address),
            mime_type=mime_type,
            size=len(content),
        )

    def public_url(self, address: str) -> str:
        return f"{self.public_base_url}/api/v1/media/{address}"

    def load(self, address: str) -> tuple[bytes, str]:
        """Return stored bytes and MIME type for ``address``."""
        with self._lock:
            stored = self._objects.get(address)
        if stored is None:
            raise NotFoundError("Media not found")
        return stored

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._objects


class PinataStorage:
    """Pins uploads to IPFS through the Pinata API."""

    def __init__(
        self,
        jwt: str | None = None,
        api_url: str | None = None,
        gateway_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._jwt = jwt or settings.pinata_jwt
        self.api_url = (api_url or settings.pinata_api_url).rstrip("/")
        self.gateway_url = (gateway_url or settings.pinata_gateway_url).rstrip("/")
        self._timeout = timeout_seconds or settings.storage_timeout_seconds
        self._transport = transport

    async def store(self, content: bytes, file_name: str | None, mime_type: str) -> StoredObject:
        if not self._jwt:
            raise StorageError("Pinata credentials are not configured")

        name = file_name or content_address(content)
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Authorization": f"Bearer {self._jwt}"},
                transport=self._transport,
            ) as client:
                response = await client.post(
                    "/pinning/pinFileToIPFS",
                    files={"file": (name, content, mime_type)},
                )
        except httpx.HTTPError as exc:
            logger.warning("Pinata upload of %s failed: %s", name, exc)
            raise StorageError(f"Upload failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning("Pinata rejected upload of %s with %s", name, response.status_code)
            raise StorageError(f"Upload rejected ({response.status_code})")

        try:
            address = response.json()["IpfsHash"]
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError("Upload response had no content address") from exc

        logger.info("Pinned %s (%d bytes) as %s", name, len(content), address)
        return StoredObject(
            address=address,
            url=self.public_url(address),
            mime_type=mime_type,
            size=len(content),
        )

    def public_url(self, address: str) -> str:
        return f"{self.gateway_url}/{address}"


async def store_data_uri(
    storage: ObjectStorage,
    data_uri: str,
    file_name: str | None = None,
) -> StoredObject:
    """Decode and upload a data URI in one step."""
    upload = decode_data_uri(data_uri)
    return await storage.store(upload.content, file_name, upload.mime_type)


class _ObjectStorageSingleton:
    """Singleton wrapper for the configured storage backend."""

    _instance: ObjectStorage | None = None

    @classmethod
    def get_instance(cls) -> ObjectStorage:
        if cls._instance is None:
            if settings.storage_backend == "pinata":
                cls._instance = PinataStorage()
            else:
                cls._instance = InMemoryObjectStorage()
        return cls._instance


def get_object_storage() -> ObjectStorage:
    """Return the process-wide storage backend selected by settings."""
    return _ObjectStorageSingleton.get_instance()
