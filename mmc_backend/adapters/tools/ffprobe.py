"""
FFprobe adapter for video metadata extraction.
"""
import json
import os
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from ...shared import ErrorCode, Result, get_logger
from .exiftool import decode_bytes_best_effort, resolve_executable

logger = get_logger(__name__)


class FFProbe:
    """
    FFprobe wrapper for video metadata extraction.

    Never raises exceptions - always returns Result.
    """

    def __init__(self, bin_name: str = "ffprobe", timeout: float = 15.0, trusted_dirs: Sequence[str] = ()):
        self.bin = bin_name
        self.timeout = float(timeout)
        self._resolved = resolve_executable(bin_name, "ffprobe", trusted_dirs)
        self._available = self._resolved is not None

    def is_available(self) -> bool:
        return self._available

    @property
    def resolved_path(self) -> Optional[str]:
        return self._resolved

    def _build_command(self, path: str) -> List[str]:
        return [
            self._resolved or self.bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]

    def read(self, path: str) -> Result[Dict[str, Any]]:
        """
        Read video metadata.

        Returns:
            Result with a dict containing 'format', 'streams', 'video_stream', 'audio_stream'
        """
        if not self._available:
            return Result.Err(ErrorCode.TOOL_MISSING, "ffprobe not found in PATH")
        if not path or "\x00" in str(path):
            return Result.Err(ErrorCode.INVALID_INPUT, "Invalid file path")
        if not os.path.isfile(path):
            return Result.Err(ErrorCode.NOT_FOUND, f"File not found: {os.path.basename(path)}")
        try:
            process = subprocess.run(
                self._build_command(str(path)),
                capture_output=True,
                text=False,
                check=False,
                timeout=self.timeout,
                shell=False,
                close_fds=os.name != "nt",
            )
        except subprocess.TimeoutExpired:
            logger.error("ffprobe timeout for %s", path)
            return Result.Err(ErrorCode.TIMEOUT, f"ffprobe timeout after {self.timeout}s")
        except OSError as exc:
            logger.error("ffprobe could not be started: %s", exc)
            return Result.Err(ErrorCode.FFPROBE_ERROR, str(exc))
        stdout, _ = decode_bytes_best_effort(process.stdout)
        stderr, _ = decode_bytes_best_effort(process.stderr)
        return self._parse_output(stdout, stderr, process.returncode, path)

    def _parse_output(self, stdout: str, stderr: str, returncode: Optional[int], path: str) -> Result[Dict[str, Any]]:
        if returncode != 0:
            message = stderr.strip()
            logger.warning("ffprobe error for %s: %s", path, message)
            return Result.Err(ErrorCode.FFPROBE_ERROR, message or "ffprobe command failed")
        if not stdout.strip():
            return Result.Err(ErrorCode.FFPROBE_ERROR, "No ffprobe output")
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            logger.error("ffprobe JSON parse error: %s", exc)
            return Result.Err(ErrorCode.PARSE_ERROR, f"Failed to parse ffprobe output: {exc}")
        if not isinstance(data, dict):
            return Result.Err(ErrorCode.PARSE_ERROR, "Invalid ffprobe output format")
        streams = data.get("streams") or []
        return Result.Ok(
            {
                "format": data.get("format") or {},
                "streams": streams,
                "video_stream": self._first_stream(streams, "video"),
                "audio_stream": self._first_stream(streams, "audio"),
            }
        )

    @staticmethod
    def _first_stream(streams: List[Dict[str, Any]], codec_type: str) -> Optional[Dict[str, Any]]:
        for stream in streams:
            if isinstance(stream, dict) and stream.get("codec_type") == codec_type:
                return stream
        return None
