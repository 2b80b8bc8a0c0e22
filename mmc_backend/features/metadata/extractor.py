"""
Tool-backed extractor producing the cached payload for one file.

Images go through ExifTool. Videos go through ffprobe and fall back to ExifTool when
ffprobe is missing or fails. The payload is canonical JSON (sorted keys) so identical
tool output always yields identical bytes.
"""
import json
from typing import Any, Dict

from ...adapters.tools.exiftool import ExifTool
from ...adapters.tools.ffprobe import FFProbe
from ...shared import ErrorCode, Result, classify_file, get_logger

logger = get_logger(__name__)


def encode_payload(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str).encode("utf-8")


class MediaExtractor:
    def __init__(self, exiftool: ExifTool, ffprobe: FFProbe):
        self.exiftool = exiftool
        self.ffprobe = ffprobe

    def tools_status(self) -> Dict[str, bool]:
        return {"exiftool": self.exiftool.is_available(), "ffprobe": self.ffprobe.is_available()}

    def extract(self, path: str) -> Result[bytes]:
        kind = classify_file(path)
        if kind == "image":
            return self._extract_image(path)
        if kind == "video":
            return self._extract_video(path)
        return Result.Err(ErrorCode.UNSUPPORTED, f"Unsupported file type: {path}")

    def _extract_image(self, path: str) -> Result[bytes]:
        res = self.exiftool.read(path)
        if not res.ok:
            return Result.Err(res.code, res.error or "ExifTool read failed", **(res.meta or {}))
        return Result.Ok(encode_payload({"kind": "image", "source": "exiftool", "exif": res.data or {}}))

    def _extract_video(self, path: str) -> Result[bytes]:
        probe = self.ffprobe.read(path)
        if probe.ok:
            return Result.Ok(encode_payload({"kind": "video", "source": "ffprobe", "ffprobe": probe.data or {}}))
        logger.debug("ffprobe failed for %s (%s), falling back to ExifTool", path, probe.code)
        res = self.exiftool.read(path)
        if not res.ok:
            # Report the primary tool's failure unless ExifTool is simply absent.
            failed = probe if res.is_code(ErrorCode.TOOL_MISSING) else res
            return Result.Err(failed.code, failed.error or "Video metadata read failed", **(failed.meta or {}))
        return Result.Ok(encode_payload({"kind": "video", "source": "exiftool", "exif": res.data or {}}))
