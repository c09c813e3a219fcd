"""Tests for artifact uploads and frame staging."""

from unittest.mock import AsyncMock, patch

import pytest

from fakes import FakeStorage
from worker.exceptions import StorageError, StorageThrottled, StorageUnavailable, UploadFailed
from worker.uploader import ArtifactUploader, FrameStaging, storage_key_for


class TestStorageKey:
    def test_with_prefix(self):
        assert storage_key_for("vid-1", "abc", "video-thumbnails") == "video-thumbnails/vid-1/abc.jpg"

    def test_without_prefix(self):
        assert storage_key_for("vid-1", "abc", "") == "vid-1/abc.jpg"


class TestArtifactUploader:
    """Tests for ArtifactUploader retry behaviour."""

    @pytest.mark.asyncio
    async def test_upload_success(self):
        storage = FakeStorage()
        uploader = ArtifactUploader(storage, key_prefix="thumbs")

        url = await uploader.upload("vid-1", "abc", b"jpeg")

        assert url == "https://cdn.test/thumbs/vid-1/abc.jpg"
        assert storage.objects == {"thumbs/vid-1/abc.jpg": b"jpeg"}

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self):
        storage = FakeStorage()
        storage.errors = [StorageThrottled("SlowDown"), StorageUnavailable("503")]
        uploader = ArtifactUploader(storage, max_attempts=3, key_prefix="")

        with patch("worker.uploader.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            url = await uploader.upload("vid-1", "abc", b"jpeg")

        assert url == "https://cdn.test/vid-1/abc.jpg"
        assert storage.put_calls == 3
        assert mock_sleep.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        storage = FakeStorage()
        storage.fail_always = True
        uploader = ArtifactUploader(storage, max_attempts=3, key_prefix="thumbs")

        with patch("worker.uploader.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(UploadFailed) as exc_info:
                await uploader.upload("vid-1", "abc", b"jpeg")

        assert exc_info.value.attempts == 3
        assert exc_info.value.key == "thumbs/vid-1/abc.jpg"
        assert storage.put_calls == 3

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        storage = FakeStorage()
        storage.errors = [StorageError("AccessDenied: nope")]
        uploader = ArtifactUploader(storage, max_attempts=5)

        with patch("worker.uploader.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(UploadFailed) as exc_info:
                await uploader.upload("vid-1", "abc", b"jpeg")

        assert exc_info.value.attempts == 1
        assert storage.put_calls == 1
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        storage = FakeStorage()
        storage.fail_always = True
        uploader = ArtifactUploader(storage, max_attempts=4, base_delay=1.0, max_delay=2.5)

        with patch("worker.uploader.random.random", return_value=0.5):
            with patch("worker.uploader.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
                with pytest.raises(UploadFailed):
                    await uploader.upload("vid-1", "abc", b"jpeg")

        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0, 2.5]


class TestFrameStaging:
    """Tests for FrameStaging."""

    @pytest.mark.asyncio
    async def test_stage_load_discard(self, tmp_path):
        staging = FrameStaging(tmp_path)

        path = await staging.stage("vid-1", "abc", b"jpeg")
        assert path == tmp_path / "vid-1" / "abc.jpg"
        assert await staging.load("vid-1", "abc") == b"jpeg"

        await staging.discard("vid-1", "abc")
        assert await staging.load("vid-1", "abc") is None

    @pytest.mark.asyncio
    async def test_missing_frame(self, tmp_path):
        staging = FrameStaging(tmp_path)
        assert await staging.load("vid-1", "missing") is None
        await staging.discard("vid-1", "missing")  # no error
