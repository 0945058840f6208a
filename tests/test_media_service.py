import asyncio
import time
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from enquirybot.config import settings
from enquirybot.main import app
from enquirybot.services.media_service import (
    build_signed_media_url,
    guess_extension,
    media_type_for,
    resolve_media_path,
    store_inbound_media,
    verify_signed_media_path,
)

from conftest import BUSINESS_ID


@pytest.fixture
def media_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "media_storage_dir", str(tmp_path))
    monkeypatch.setattr(settings, "public_base_url", "https://bot.example")
    return tmp_path


def _split(url: str) -> tuple[str, int, str]:
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    return parsed.path.removeprefix("/media/"), int(query["expires"][0]), query["sig"][0]


class TestGuessExtension:
    def test_file_name_wins(self):
        assert guess_extension("application/pdf", "Brochure.PDF") == "pdf"

    def test_known_and_unknown_mime(self):
        assert guess_extension("audio/ogg; codecs=opus") == "ogg"
        assert guess_extension("image/jpeg") == "jpg"
        assert guess_extension("application/pdf") == "pdf"
        assert guess_extension("image/heic") == "heic"
        assert guess_extension(None) == "bin"

    def test_media_type_for_stored_file(self):
        assert media_type_for("media-7.jpg") == "image/jpeg"
        assert media_type_for("voice.ogg") == "audio/ogg"
        assert media_type_for("brochure.pdf") == "application/pdf"
        assert media_type_for("blob.zzq") == "application/octet-stream"


class TestSignedUrls:
    def test_signed_url_verifies(self, media_dir):
        url = build_signed_media_url("1001/photo.jpg")

        assert url.startswith("https://bot.example/media/1001/photo.jpg?")
        path, expires, sig = _split(url)
        assert verify_signed_media_path(path, expires, sig) is True

    def test_tampered_path_fails(self, media_dir):
        _, expires, sig = _split(build_signed_media_url("1001/photo.jpg"))

        assert verify_signed_media_path("1001/other.jpg", expires, sig) is False

    def test_expired_signature_fails(self, media_dir):
        path, _, sig = _split(build_signed_media_url("1001/photo.jpg"))

        assert verify_signed_media_path(path, int(time.time()) - 10, sig) is False

    def test_path_escape_is_refused(self, media_dir):
        assert resolve_media_path("../secrets.txt") is None
        assert resolve_media_path("1001/photo.jpg") == (media_dir / "1001" / "photo.jpg").resolve()


class TestStoreInboundMedia:
    def test_download_is_stored_under_business_number(self, media_dir, fake_client):
        fake_client.media["media-7"] = b"jpeg-bytes"

        result = asyncio.run(
            store_inbound_media(
                fake_client,
                media_id="media-7",
                mime_type="image/jpeg",
                file_name=None,
                access_token="token-1",
                recipient_id=BUSINESS_ID,
            )
        )

        assert result.ok is True
        assert (media_dir / BUSINESS_ID / "media-7.jpg").read_bytes() == b"jpeg-bytes"
        assert "/media/1001/media-7.jpg?expires=" in result.value

    def test_lookup_failure_is_a_result(self, media_dir, fake_client):
        result = asyncio.run(
            store_inbound_media(
                fake_client,
                media_id="missing",
                mime_type="image/jpeg",
                file_name=None,
                access_token="token-1",
                recipient_id=BUSINESS_ID,
            )
        )

        assert result.ok is False
        assert result.error_code == "media_lookup_failed"


class TestServeMedia:
    def test_signed_file_is_served(self, media_dir):
        (media_dir / "1001").mkdir()
        (media_dir / "1001" / "photo.jpg").write_bytes(b"jpeg-bytes")
        path, expires, sig = _split(build_signed_media_url("1001/photo.jpg"))

        response = TestClient(app).get(f"/media/{path}", params={"expires": expires, "sig": sig})

        assert response.status_code == 200
        assert response.content == b"jpeg-bytes"
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["cache-control"].startswith("private, max-age=")

    def test_bad_signature_is_forbidden(self, media_dir):
        (media_dir / "1001").mkdir()
        (media_dir / "1001" / "photo.jpg").write_bytes(b"jpeg-bytes")

        response = TestClient(app).get("/media/1001/photo.jpg", params={"expires": int(time.time()) + 60, "sig": "bad"})

        assert response.status_code == 403
