"""Tests for the local artifact store."""

import base64
import json
import os
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from comicgen.core.exceptions import GenerationError
from comicgen.services.storage import META_SUFFIX, ArtifactContext, LocalArtifactStore

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


class TestLocalArtifactStore:
    @pytest.mark.anyio
    async def test_saves_bytes_with_metadata(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path), "/media/", ttl_days=7)

        saved = await store.save(PNG_BYTES, 3, ArtifactContext(script_id="story/42", segment_id=1))

        name = os.path.basename(saved.path)
        assert name.startswith("story_42_1_3_")
        assert name.endswith(".png")
        assert saved.url == f"/media/{name}"
        with open(saved.path, "rb") as f:
            assert f.read() == PNG_BYTES
        with open(saved.path + META_SUFFIX, encoding="utf-8") as f:
            meta = json.load(f)
        assert meta["page_number"] == 3
        assert meta["script_id"] == "story/42"
        assert datetime.fromisoformat(meta["expires_at"]) == saved.expires_at

    @pytest.mark.anyio
    async def test_saves_data_url(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path), "/media")
        data_url = "data:image/jpeg;base64," + base64.b64encode(b"jpeg-bytes").decode()

        saved = await store.save(data_url, 1, ArtifactContext())

        assert saved.path.endswith(".jpg")
        with open(saved.path, "rb") as f:
            assert f.read() == b"jpeg-bytes"

    @pytest.mark.anyio
    async def test_downloads_remote_url(self, tmp_path):
        def handler(request):
            return httpx.Response(200, content=b"webp-bytes", headers={"content-type": "image/webp"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = LocalArtifactStore(str(tmp_path), "/media", http_client=client)

        saved = await store.save("https://provider/img", 2, ArtifactContext(script_id="s", segment_id=0))

        assert saved.path.endswith(".webp")

    @pytest.mark.anyio
    async def test_failed_download_raises_generation_error(self, tmp_path):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        store = LocalArtifactStore(str(tmp_path), "/media", http_client=client)
        with pytest.raises(GenerationError):
            await store.save("https://provider/missing", 1, ArtifactContext())

    @pytest.mark.anyio
    async def test_malformed_data_url_raises_generation_error(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path), "/media")
        with pytest.raises(GenerationError):
            await store.save("data:image/png;base64,@@not-base64@@", 1, ArtifactContext())
        assert os.listdir(tmp_path) == []

    @pytest.mark.anyio
    async def test_cleanup_removes_only_expired(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path), "/media", ttl_days=1)
        old = await store.save(PNG_BYTES, 1, ArtifactContext(script_id="old"))
        fresh = await store.save(PNG_BYTES, 2, ArtifactContext(script_id="fresh"))
        with open(old.path + META_SUFFIX, "w", encoding="utf-8") as f:
            json.dump({"expires_at": (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()}, f)

        deleted = store.cleanup_expired()

        assert deleted == 1
        assert not os.path.exists(old.path)
        assert not os.path.exists(old.path + META_SUFFIX)
        assert os.path.exists(fresh.path)

    def test_cleanup_on_missing_root(self, tmp_path):
        assert LocalArtifactStore(str(tmp_path / "absent"), "/media").cleanup_expired() == 0
