"""Tests for the thumbpick CLI."""

from unittest.mock import patch

import httpx
import pytest

from cli.main import API_BASE, CLIError, build_parser, main, safe_json_response


def api_response(status_code: int, json=None, method: str = "GET", path: str = "/thumbnails/vid-1", **kwargs):
    return httpx.Response(status_code, json=json, request=httpx.Request(method, f"{API_BASE}{path}"), **kwargs)


def thumbnail_set(**overrides):
    data = {
        "videoKey": "vid-1",
        "selectionMode": "auto",
        "selectedCandidateId": "c2",
        "candidates": [
            {
                "id": "c1",
                "seekTimeSeconds": 5,
                "pixelScore": 55.0,
                "aiScore": 40.0,
                "combinedScore": 46.0,
                "scoringMethod": "hybrid",
                "uploadStatus": "uploaded",
                "storageUrl": "https://cdn.test/c1.jpg",
                "selected": False,
            },
            {
                "id": "c2",
                "seekTimeSeconds": 2,
                "pixelScore": 60.0,
                "aiScore": 80.0,
                "combinedScore": 72.0,
                "scoringMethod": "hybrid",
                "uploadStatus": "uploaded",
                "storageUrl": "https://cdn.test/c2.jpg",
                "selected": True,
            },
        ],
    }
    data.update(overrides)
    return data


class TestSafeJsonResponse:
    def test_success(self):
        assert safe_json_response(api_response(200, json={"ok": True})) == {"ok": True}

    def test_error_detail(self):
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(api_response(404, json={"detail": "Thumbnail set not found"}))
        assert str(exc_info.value) == "API error (404): Thumbnail set not found"

    def test_error_without_json(self):
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(api_response(502, content=b"Bad Gateway"))
        assert "Bad Gateway" in str(exc_info.value)

    def test_invalid_json(self):
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(api_response(200, content=b"<html>"))
        assert "Invalid JSON response" in str(exc_info.value)


class TestParser:
    def test_generate_args(self):
        args = build_parser().parse_args(["generate", "vid-1", "-s", "2", "--seek", "10", "--force"])
        assert args.video_key == "vid-1"
        assert args.seek == [2, 10]
        assert args.force is True
        assert args.replace is False

    def test_negative_seek_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["generate", "vid-1", "-s", "-3"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    def test_generate_posts_camel_case(self, capsys):
        result = thumbnail_set(
            outcomes=[
                {"seekTimeSeconds": 2, "state": "persisted"},
                {"seekTimeSeconds": 5, "state": "persisted", "aiError": "AI scoring unavailable"},
                {"seekTimeSeconds": 900, "state": "skipped", "error": "Seek time is beyond the end of the video."},
            ],
            deadlineExceeded=False,
        )
        with patch("cli.main.httpx.post", return_value=api_response(200, json=result, method="POST")) as mock_post:
            main(["generate", "vid-1", "-s", "2", "-s", "5", "-s", "900", "--replace"])

        payload = mock_post.call_args.kwargs["json"]
        assert payload == {"videoKey": "vid-1", "replace": True, "force": False, "seekTimes": [2, 5, 900]}

        out = capsys.readouterr().out
        assert "900s: skipped (Seek time is beyond the end of the video.)" in out
        assert "5s: pixel score only (AI scoring unavailable)" in out
        assert "Selected thumbnail: https://cdn.test/c2.jpg" in out

    def test_generate_without_seek_times_uses_server_defaults(self):
        with patch("cli.main.httpx.post", return_value=api_response(200, json=thumbnail_set(), method="POST")) as mock_post:
            main(["generate", "vid-1"])
        assert "seekTimes" not in mock_post.call_args.kwargs["json"]

    def test_generate_deadline_warning(self, capsys):
        result = thumbnail_set(outcomes=[], deadlineExceeded=True)
        with patch("cli.main.httpx.post", return_value=api_response(200, json=result, method="POST")):
            main(["generate", "vid-1"])
        assert "deadline exceeded" in capsys.readouterr().out

    def test_show_not_found(self, capsys):
        with patch("cli.main.httpx.get", return_value=api_response(404, json={"detail": "Thumbnail set not found"})):
            with pytest.raises(SystemExit) as exc_info:
                main(["show", "vid-1"])
        assert exc_info.value.code == 1
        assert "Thumbnail set not found" in capsys.readouterr().out

    def test_show_empty_set(self, capsys):
        with patch("cli.main.httpx.get", return_value=api_response(200, json=thumbnail_set(candidates=[]))):
            main(["show", "vid-1"])
        assert "No candidates." in capsys.readouterr().out

    def test_select(self, capsys):
        result = thumbnail_set(selectionMode="manual", selectedCandidateId="c1")
        with patch("cli.main.httpx.put", return_value=api_response(200, json=result, method="PUT")) as mock_put:
            main(["select", "vid-1", "c1"])
        assert mock_put.call_args.kwargs["json"] == {"candidateId": "c1"}
        assert "set to c1 (manual)" in capsys.readouterr().out

    def test_retry_uploads_reports_pending(self, capsys):
        result = thumbnail_set()
        result["candidates"][0]["uploadStatus"] = "failed"
        with patch("cli.main.httpx.post", return_value=api_response(200, json=result, method="POST")):
            main(["retry-uploads", "vid-1"])
        assert "1 candidate(s) still not uploaded." in capsys.readouterr().out

    def test_connection_error(self, capsys):
        with patch("cli.main.httpx.get", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(SystemExit) as exc_info:
                main(["show", "vid-1"])
        assert exc_info.value.code == 1
        assert "Could not connect" in capsys.readouterr().out
