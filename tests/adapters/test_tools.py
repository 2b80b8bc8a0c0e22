import json
import subprocess

import pytest

from mmc_backend.adapters.tools import exiftool as exiftool_mod
from mmc_backend.adapters.tools.exiftool import (
    ExifTool,
    decode_bytes_best_effort,
    is_safe_executable_token,
    is_safe_tag,
    resolve_executable,
)
from mmc_backend.adapters.tools.ffprobe import FFProbe
from mmc_backend.features.metadata import MediaExtractor
from mmc_backend.shared import ErrorCode


def _fake_bin(tmp_path, name):
    p = tmp_path / "bin" / name
    p.parent.mkdir(exist_ok=True)
    p.write_text("#!/bin/sh\n")
    return str(p)


def _completed(stdout=b"", stderr=b"", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def media(tmp_path):
    img = tmp_path / "a.jpg"
    img.write_bytes(b"jpeg")
    vid = tmp_path / "b.mp4"
    vid.write_bytes(b"mp4")
    return str(img), str(vid)


@pytest.fixture
def tools(tmp_path):
    return ExifTool(_fake_bin(tmp_path, "exiftool")), FFProbe(_fake_bin(tmp_path, "ffprobe"))


def test_decode_bytes_best_effort():
    assert decode_bytes_best_effort(None) == ("", False)
    assert decode_bytes_best_effort("café".encode("utf-8")) == ("café", False)
    assert decode_bytes_best_effort(b"caf\xe9")[0] == "café"


def test_tag_and_token_safety():
    assert is_safe_tag("EXIF:Model")
    assert not is_safe_tag("-overwrite_original")
    assert not is_safe_tag("Model\n")
    assert is_safe_executable_token("exiftool")
    assert not is_safe_executable_token("exiftool; rm -rf /")


def test_resolve_executable_rules(tmp_path):
    exe = _fake_bin(tmp_path, "exiftool")
    assert resolve_executable(exe, "exiftool") is not None
    assert resolve_executable(exe, "ffprobe") is None
    assert resolve_executable("mmc-missing-exiftool", "exiftool") is None
    other = tmp_path / "elsewhere"
    other.mkdir()
    assert resolve_executable(exe, "exiftool", trusted_dirs=[str(other)]) is None
    assert resolve_executable(exe, "exiftool", trusted_dirs=[str(tmp_path / "bin")]) is not None


def test_missing_tool_reports_tool_missing(media):
    img, vid = media
    assert ExifTool("mmc-missing-exiftool").read(img).code == ErrorCode.TOOL_MISSING.value
    assert FFProbe("mmc-missing-ffprobe").read(vid).code == ErrorCode.TOOL_MISSING.value


def test_exiftool_read_parses_json(tools, media, monkeypatch):
    exif, _ = tools
    img, _ = media
    seen = {}

    def _run(cmd, **kwargs):
        seen["cmd"] = cmd
        seen["shell"] = kwargs.get("shell")
        return _completed(json.dumps([{"SourceFile": img, "EXIF:Model": "X100"}]).encode())

    monkeypatch.setattr(exiftool_mod.subprocess, "run", _run)
    res = exif.read(img, tags=["EXIF:Model"])
    assert res.ok
    assert res.data["EXIF:Model"] == "X100"
    assert seen["cmd"][-2:] == ["--", img]
    assert "-EXIF:Model" in seen["cmd"]
    assert seen["shell"] is False


def test_exiftool_rejects_bad_tags_and_paths(tools, media, tmp_path):
    exif, _ = tools
    img, _ = media
    assert exif.read(img, tags=["-all="]).code == ErrorCode.INVALID_INPUT.value
    assert exif.read(str(tmp_path / "nope.jpg")).code == ErrorCode.NOT_FOUND.value


def test_exiftool_failures(tools, media, monkeypatch):
    exif, _ = tools
    img, _ = media

    monkeypatch.setattr(exiftool_mod.subprocess, "run", lambda *a, **k: _completed(stderr=b"boom", returncode=1))
    assert exif.read(img).code == ErrorCode.EXIFTOOL_ERROR.value

    monkeypatch.setattr(exiftool_mod.subprocess, "run", lambda *a, **k: _completed(b"not json"))
    assert exif.read(img).code == ErrorCode.PARSE_ERROR.value

    def _timeout(*_a, **_k):
        raise subprocess.TimeoutExpired(cmd="exiftool", timeout=1)

    monkeypatch.setattr(exiftool_mod.subprocess, "run", _timeout)
    assert exif.read(img).code == ErrorCode.TIMEOUT.value


def test_ffprobe_picks_streams(tools, media, monkeypatch):
    _, probe = tools
    _, vid = media
    payload = {
        "format": {"duration": "2.0"},
        "streams": [{"codec_type": "audio", "index": 1}, {"codec_type": "video", "index": 0}],
    }
    monkeypatch.setattr(exiftool_mod.subprocess, "run", lambda *a, **k: _completed(json.dumps(payload).encode()))
    res = probe.read(vid)
    assert res.ok
    assert res.data["video_stream"]["index"] == 0
    assert res.data["audio_stream"]["index"] == 1


def test_extractor_routes_by_kind(tools, media, tmp_path, monkeypatch):
    exif, probe = tools
    img, vid = media

    def _run(cmd, **_kwargs):
        if "ffprobe" in cmd[0]:
            return _completed(json.dumps({"format": {}, "streams": []}).encode())
        return _completed(json.dumps([{"File:FileType": "JPEG"}]).encode())

    monkeypatch.setattr(exiftool_mod.subprocess, "run", _run)
    extractor = MediaExtractor(exif, probe)
    assert json.loads(extractor.extract(img).data)["source"] == "exiftool"
    assert json.loads(extractor.extract(vid).data)["source"] == "ffprobe"

    doc = tmp_path / "notes.txt"
    doc.write_text("x")
    assert extractor.extract(str(doc)).code == ErrorCode.UNSUPPORTED.value


def test_extractor_payload_is_canonical(tools, media, monkeypatch):
    exif, probe = tools
    img, _ = media
    outputs = iter([[{"b": 1, "a": 2}], [{"a": 2, "b": 1}]])
    monkeypatch.setattr(
        exiftool_mod.subprocess, "run", lambda *a, **k: _completed(json.dumps(next(outputs)).encode())
    )
    extractor = MediaExtractor(exif, probe)
    assert extractor.extract(img).data == extractor.extract(img).data


def test_video_falls_back_to_exiftool(tmp_path, media, monkeypatch):
    exif = ExifTool(_fake_bin(tmp_path, "exiftool"))
    _, vid = media
    monkeypatch.setattr(
        exiftool_mod.subprocess, "run", lambda *a, **k: _completed(json.dumps([{"QuickTime:Duration": 2}]).encode())
    )
    extractor = MediaExtractor(exif, FFProbe("mmc-missing-ffprobe"))
    res = extractor.extract(vid)
    assert res.ok
    assert json.loads(res.data)["source"] == "exiftool"


def test_video_reports_ffprobe_error_when_exiftool_missing(tmp_path, media, monkeypatch):
    probe = FFProbe(_fake_bin(tmp_path, "ffprobe"))
    _, vid = media
    monkeypatch.setattr(exiftool_mod.subprocess, "run", lambda *a, **k: _completed(stderr=b"bad", returncode=1))
    res = MediaExtractor(ExifTool("mmc-missing-exiftool"), probe).extract(vid)
    assert res.code == ErrorCode.FFPROBE_ERROR.value
