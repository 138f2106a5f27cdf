import json
from pathlib import Path

import pytest

from sdmm_backend.adapters.tools import FFmpeg, FFProbe
from sdmm_backend.adapters.tools.executables import is_safe_executable_token, resolve_executable


def test_executable_tokens():
    assert is_safe_executable_token("ffmpeg")
    assert not is_safe_executable_token("ffmpeg; rm -rf /")
    assert not is_safe_executable_token("")


def test_resolve_executable_checks_prefix(tmp_path: Path):
    fake = tmp_path / "notffmpeg"
    fake.write_text("", encoding="utf-8")
    assert resolve_executable(str(fake), "ffmpeg") is None
    assert resolve_executable("definitely-not-a-real-binary-xyz", "ffmpeg") is None


@pytest.mark.asyncio
async def test_missing_tools_report_tool_missing(tmp_path: Path):
    probe = FFProbe(bin_name="ffprobe-missing-xyz")
    ffmpeg = FFmpeg(bin_name="ffmpeg-missing-xyz")

    assert not probe.is_available()
    assert (await probe.ahas_video_stream(str(tmp_path / "a.mp4"))).code == "TOOL_MISSING"
    assert (await ffmpeg.extract_frame(tmp_path / "a.mp4", tmp_path / "a.jpeg")).code == "TOOL_MISSING"


def test_parse_output_finds_video_stream_and_skips_cover_art():
    probe = FFProbe(bin_name="ffprobe-missing-xyz")
    out = json.dumps(
        {
            "format": {"format_name": "mov,mp4"},
            "streams": [
                {"codec_type": "video", "disposition": {"attached_pic": 1}},
                {"codec_type": "video", "codec_name": "h264"},
            ],
        }
    )
    res = probe._parse_output(out, "", 0, "a.mp4")
    assert res.ok
    assert res.data["video_stream"]["codec_name"] == "h264"

    assert probe._parse_output("", "bad", 1, "a.mp4").code == "FFPROBE_ERROR"
    assert probe._parse_output("[1]", "", 0, "a.mp4").code == "PARSE_ERROR"


@pytest.mark.asyncio
async def test_still_image_formats_are_not_video(monkeypatch):
    from sdmm_backend.shared import Result

    probe = FFProbe(bin_name="ffprobe-missing-xyz")

    async def _aread(_path):
        return Result.Ok({"format": {"format_name": "png_pipe"}, "streams": [], "video_stream": {"codec_type": "video"}})

    monkeypatch.setattr(probe, "aread", _aread)
    res = await probe.ahas_video_stream("x.png")
    assert res.ok and res.data is False


def test_extract_command_takes_one_frame():
    cmd = FFmpeg(bin_name="ffmpeg-missing-xyz")._build_extract_cmd(Path("in.mp4"), Path("out.jpeg"))
    assert cmd[-1] == "out.jpeg"
    assert cmd[cmd.index("-frames:v") + 1] == "1"
    assert cmd[cmd.index("-i") + 1] == "in.mp4"
