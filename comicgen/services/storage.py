from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx

from comicgen.core.exceptions import GenerationError

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)
_SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_-]+")
META_SUFFIX = ".meta.json"


def _ext_from_mime(mime_type: str) -> str:
    mime = (mime_type or "").lower().split(";")[0].strip()
    if mime == "image/png":
        return ".png"
    if mime in {"image/jpeg", "image/jpg"}:
        return ".jpg"
    if mime == "image/webp":
        return ".webp"
    return ".bin"


@dataclass(frozen=True)
class ArtifactContext:
    script_id: str = "unknown"
    segment_id: int | str = 0


@dataclass(frozen=True)
class SavedArtifact:
    url: str
    path: str
    expires_at: datetime


class ArtifactStore(Protocol):
    async def save(
        self,
        image: bytes | str,
        page_number: int,
        context: ArtifactContext,
        mime_type: str | None = None,
    ) -> SavedArtifact: ...


class LocalArtifactStore:
    """Write rendered pages under a media root with a sidecar expiry record."""

    def __init__(
        self,
        root_dir: str,
        url_prefix: str,
        ttl_days: int = 7,
        http_client: httpx.AsyncClient | None = None,
        download_timeout_seconds: float = 30.0,
    ):
        self.root_dir = root_dir
        self.url_prefix = url_prefix.rstrip("/")
        self.ttl = timedelta(days=ttl_days)
        self._http_client = http_client
        self._download_timeout_seconds = download_timeout_seconds

    async def _download(self, url: str) -> tuple[bytes, str]:
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, timeout=self._download_timeout_seconds)
            else:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self._download_timeout_seconds), follow_redirects=True
                ) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise GenerationError(f"failed to download generated image: {exc!r}") from exc
        return response.content, response.headers.get("content-type", "image/png")

    async def _resolve_bytes(self, image: bytes | str, mime_type: str | None) -> tuple[bytes, str]:
        if isinstance(image, bytes):
            return image, mime_type or "image/png"
        match = _DATA_URL.match(image)
        if match:
            try:
                return base64.b64decode("".join(match.group("data").split()), validate=True), match.group("mime")
            except binascii.Error as exc:
                raise GenerationError(f"malformed data url: {exc}") from exc
        return await self._download(image)

    async def save(
        self,
        image: bytes | str,
        page_number: int,
        context: ArtifactContext,
        mime_type: str | None = None,
    ) -> SavedArtifact:
        image_bytes, resolved_mime = await self._resolve_bytes(image, mime_type)

        now = datetime.now(timezone.utc)
        script_id = _SAFE_SEGMENT.sub("_", str(context.script_id)) or "unknown"
        segment_id = _SAFE_SEGMENT.sub("_", str(context.segment_id)) or "0"
        filename = f"{script_id}_{segment_id}_{page_number}_{int(now.timestamp() * 1000)}{_ext_from_mime(resolved_mime)}"
        file_path = os.path.join(self.root_dir, filename)

        expires_at = now + self.ttl
        meta = {
            "expires_at": expires_at.isoformat(),
            "created_at": now.isoformat(),
            "page_number": page_number,
            "script_id": str(context.script_id),
            "segment_id": str(context.segment_id),
            "mime_type": resolved_mime,
        }
        await asyncio.to_thread(self._write, file_path, image_bytes, meta)

        return SavedArtifact(url=f"{self.url_prefix}/{filename}", path=file_path, expires_at=expires_at)

    def _write(self, file_path: str, image_bytes: bytes, meta: dict) -> None:
        os.makedirs(self.root_dir, exist_ok=True)
        with open(file_path, "wb") as f:
            f.write(image_bytes)
        with open(file_path + META_SUFFIX, "w", encoding="utf-8") as f:
            json.dump(meta, f)

    def cleanup_expired(self, now: datetime | None = None) -> int:
        """Delete images whose metadata says they expired; returns the number removed."""
        if not os.path.isdir(self.root_dir):
            return 0
        now = now or datetime.now(timezone.utc)
        deleted = 0
        for name in os.listdir(self.root_dir):
            if not name.endswith(META_SUFFIX):
                continue
            meta_path = os.path.join(self.root_dir, name)
            try:
                with open(meta_path, "r", encoding="utf-8") as f:
                    expires_at = datetime.fromisoformat(json.load(f)["expires_at"])
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("artifact.meta_unreadable path=%s error=%s", meta_path, exc)
                continue
            if expires_at > now:
                continue
            image_path = meta_path[: -len(META_SUFFIX)]
            for path in (image_path, meta_path):
                if os.path.exists(path):
                    os.remove(path)
            deleted += 1
        if deleted:
            logger.info("artifact.cleanup deleted=%s root=%s", deleted, self.root_dir)
        return deleted
