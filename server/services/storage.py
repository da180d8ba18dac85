"""Artifact storage for node results.

Uploads go through three tiers, each falling through to the next on failure:

1. A CDN storage handler (BunnyCDN-style storage zone, can also copy remote URLs)
2. HTTP PUT to object storage, served from the CDN base URL
3. The local upload directory, served from ``app_url``

Tiers 2 and 3 need the bytes, so they only apply to ``data:`` URLs. A remote
URL that no handler accepts yields None and the caller keeps the provider URL.
"""

import asyncio
import base64
import binascii
import re
import secrets
from pathlib import Path
from typing import Optional, Protocol, Tuple

import httpx

from constants import MIME_EXTENSIONS
from core.config import Settings
from core.logging import get_logger
from models.database import utcnow

logger = get_logger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


class StorageHandler(Protocol):
    """CDN storage plugin contract."""

    def is_configured(self) -> bool:
        ...

    async def upload(self, source: str, filename: str) -> Optional[str]:
        """Store ``source`` (remote URL or data URL); return its public URL or None."""
        ...


def parse_data_url(source: str) -> Optional[Tuple[str, bytes]]:
    """Split a base64 data URL into (mime type, bytes)."""
    match = _DATA_URL_RE.match(source or "")
    if not match:
        return None
    try:
        data = base64.b64decode(match.group(2), validate=False)
    except (binascii.Error, ValueError):
        return None
    if not data:
        return None
    return match.group(1).lower(), data


def pick_extension(filename: str, mime_type: str) -> str:
    """Extension from the filename, else from the MIME type, else ``bin``."""
    name = filename.rsplit('/', 1)[-1]
    ext = name.rsplit('.', 1)[-1].lower() if '.' in name else ''
    if ext and ext != 'bin':
        return ext
    return MIME_EXTENSIONS.get(mime_type, 'bin')


def dated_path(ext: str) -> str:
    return f"uploads/{utcnow():%Y/%m/%d}/{secrets.token_hex(16)}.{ext}"


def public_url(cdn_url: str, relative: str) -> str:
    """CDN base URL (https forced) joined with the stored path."""
    host = re.sub(r"^https?://", "", cdn_url.strip(), flags=re.IGNORECASE).rstrip('/')
    return f"https://{host}/{relative}"


async def put_to_zone(
    client: httpx.AsyncClient,
    storage_url: str,
    zone: str,
    access_key: str,
    relative: str,
    data: bytes,
    mime_type: str,
) -> bool:
    """PUT ``data`` into a storage zone. Returns True on a 2xx answer."""
    endpoint = "/".join([storage_url.rstrip('/'), zone.strip('/'), relative])
    try:
        response = await client.put(
            endpoint,
            content=data,
            headers={'AccessKey': access_key, 'Content-Type': mime_type},
        )
    except httpx.HTTPError as e:
        logger.warning("[Storage] Upload failed", zone=zone, error=str(e))
        return False
    if not 200 <= response.status_code < 300:
        logger.warning("[Storage] Upload rejected", zone=zone, status=response.status_code)
        return False
    return True


class CdnStorageHandler:
    """BunnyCDN storage zone configured through ``integration_keys``.

    Keys: ``bunnycdn_storageZone``, ``bunnycdn_accessKey``, ``bunnycdn_cdnUrl``
    and optionally ``bunnycdn_storageUrl``.
    """

    DEFAULT_STORAGE_URL = "https://storage.bunnycdn.com"

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        keys = settings.integration_keys
        self.storage_zone = keys.get('bunnycdn_storageZone', '')
        self.access_key = keys.get('bunnycdn_accessKey', '')
        self.cdn_url = keys.get('bunnycdn_cdnUrl', '')
        self.storage_url = keys.get('bunnycdn_storageUrl') or self.DEFAULT_STORAGE_URL
        self.timeout = settings.storage_timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.storage_zone and self.access_key and self.cdn_url)

    async def upload(self, source: str, filename: str) -> Optional[str]:
        if not self.is_configured():
            return None
        parsed = parse_data_url(source)
        if parsed is not None:
            mime_type, data = parsed
            return await self.upload_data(data, mime_type, filename)
        if re.match(r"^https?://", source or "", re.IGNORECASE):
            return await self.upload_from_url(source, filename)
        return None

    async def upload_data(self, data: bytes, mime_type: str, filename: str) -> Optional[str]:
        relative = dated_path(pick_extension(filename, mime_type))
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            stored = await put_to_zone(client, self.storage_url, self.storage_zone,
                                       self.access_key, relative, data, mime_type)
        return public_url(self.cdn_url, relative) if stored else None

    async def upload_from_url(self, source_url: str, filename: str) -> Optional[str]:
        """Download a remote artifact and copy it into the storage zone."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport,
                                     follow_redirects=True) as client:
            try:
                response = await client.get(source_url, headers={'Accept': '*/*'})
            except httpx.HTTPError as e:
                logger.warning("[Storage] Download failed", url=source_url, error=str(e))
                return None
            if response.status_code != 200 or not response.content:
                logger.warning("[Storage] Download failed", url=source_url, status=response.status_code)
                return None

            mime_type = response.headers.get('content-type', '').split(';')[0].strip() or 'application/octet-stream'
            url_name = httpx.URL(source_url).path.rsplit('/', 1)[-1]
            ext = pick_extension(url_name if '.' in url_name else filename, mime_type)
            relative = dated_path(ext)
            stored = await put_to_zone(client, self.storage_url, self.storage_zone,
                                       self.access_key, relative, response.content, mime_type)
        return public_url(self.cdn_url, relative) if stored else None


class ArtifactStorage:
    """Persists node artifacts and reports whether storage is durable."""

    def __init__(self, settings: Settings, handler: Optional[StorageHandler] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.handler = handler
        self._transport = transport

    @property
    def is_durable(self) -> bool:
        """Whether uploads land on a CDN (vs. the provider's temporary URL)."""
        handler_ready = self.handler is not None and self.handler.is_configured()
        return handler_ready or self.settings.object_storage_enabled

    async def upload(self, source: str, filename: str) -> Optional[str]:
        """Store an artifact and return its public URL, or None if every tier failed."""
        if self.handler is not None and self.handler.is_configured():
            try:
                url = await self.handler.upload(source, filename)
            except Exception as e:
                logger.warning("[Storage] CDN handler failed", error=str(e))
                url = None
            if url:
                return url

        parsed = parse_data_url(source)
        if parsed is None:
            return None
        mime_type, data = parsed

        ext = pick_extension(filename, mime_type)
        relative = dated_path(ext)

        if self.settings.object_storage_enabled:
            url = await self._put_object(relative, data, mime_type)
            if url:
                return url

        return await self._write_local(relative, data)

    async def _put_object(self, relative: str, data: bytes, mime_type: str) -> Optional[str]:
        async with httpx.AsyncClient(timeout=self.settings.storage_timeout,
                                     transport=self._transport) as client:
            stored = await put_to_zone(
                client,
                self.settings.object_storage_url,
                self.settings.object_storage_zone,
                self.settings.object_storage_access_key,
                relative,
                data,
                mime_type,
            )
        return public_url(self.settings.cdn_url, relative) if stored else None

    async def _write_local(self, relative: str, data: bytes) -> Optional[str]:
        target = Path(self.settings.upload_dir) / relative[len("uploads/"):]
        try:
            await asyncio.to_thread(self._write_file, target, data)
        except OSError as e:
            logger.error("[Storage] Local write failed", path=str(target), error=str(e))
            return None
        return f"{self.settings.app_url.rstrip('/')}/{relative}"

    @staticmethod
    def _write_file(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
