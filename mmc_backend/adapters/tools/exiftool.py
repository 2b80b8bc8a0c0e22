"""
ExifTool adapter for reading image (and fallback video) metadata.
"""
import json
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ...shared import ErrorCode, Result, get_logger

logger = get_logger(__name__)

_TAG_SAFE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_:-]*$")
_UNSAFE_SHELL_CHARS = ("&", "|", ";", ">", "<")


def decode_bytes_best_effort(blob: Optional[bytes]) -> Tuple[str, bool]:
    """
    Decode subprocess output.

    Returns:
      (text, had_replacement_chars)
    """
    if blob is None:
        return "", False
    if not isinstance(blob, (bytes, bytearray)):
        text = str(blob)
        return text, ("�" in text)

    raw = bytes(blob)
    if not raw:
        return "", False
    for enc in ("utf-8", "utf-8-sig"):
        try:
            return raw.decode(enc, errors="strict"), False
        except UnicodeDecodeError:
            pass
    try:
        return raw.decode("cp1252", errors="strict"), False
    except UnicodeDecodeError:
        pass
    text = raw.decode("utf-8", errors="replace")
    return text, ("�" in text)


def is_safe_tag(tag: str) -> bool:
    """True if `tag` can be passed to ExifTool as `-TAG` without being read as an option."""
    if not tag or not isinstance(tag, str):
        return False
    s = tag.strip()
    if not s or s.startswith("-"):
        return False
    if any(ch in s for ch in ("\x00", "\n", "\r", "\t")):
        return False
    return bool(_TAG_SAFE_PATTERN.match(s))


def is_safe_executable_token(raw: str) -> bool:
    if not raw:
        return False
    if "\x00" in raw or "\n" in raw or "\r" in raw:
        return False
    return not any(ch in raw for ch in _UNSAFE_SHELL_CHARS)


def resolve_executable(raw: str, name_prefix: str, trusted_dirs: Sequence[str] = ()) -> Optional[str]:
    """
    Resolve a configured binary to an absolute path.

    The value must be a plain token (no shell metacharacters), resolve to a file whose
    name starts with `name_prefix`, and live under one of `trusted_dirs` when given.
    """
    raw = (raw or "").strip()
    if not is_safe_executable_token(raw):
        return None
    resolved = shutil.which(raw)
    if not resolved:
        try:
            candidate = Path(raw)
            if not candidate.is_file():
                return None
            resolved = str(candidate.resolve(strict=True))
        except (OSError, RuntimeError, ValueError):
            return None
    if not Path(resolved).name.lower().startswith(name_prefix):
        return None
    if trusted_dirs:
        try:
            real = Path(resolved).resolve(strict=True)
            roots = [Path(d).expanduser().resolve(strict=True) for d in trusted_dirs if str(d).strip()]
        except OSError:
            return None
        if roots and not any(real == r or r in real.parents for r in roots):
            return None
    return resolved


class ExifTool:
    """
    ExifTool wrapper.

    Never raises exceptions - always returns Result.
    """

    def __init__(self, bin_name: str = "exiftool", timeout: float = 15.0, trusted_dirs: Sequence[str] = ()):
        self.bin = bin_name
        self.timeout = float(timeout)
        self._resolved = resolve_executable(bin_name, "exiftool", trusted_dirs)
        self._available = self._resolved is not None

    def is_available(self) -> bool:
        return self._available

    @property
    def resolved_path(self) -> Optional[str]:
        return self._resolved

    def _build_command(self, path: str, tags: List[str]) -> List[str]:
        cmd = [self._resolved or self.bin, "-j", "-G1", "-a", "-U", "-s"]
        cmd.extend(f"-{tag}" for tag in tags)
        # "--" keeps file names that start with "-" from being read as options.
        cmd.extend(["--", path])
        return cmd

    def read(self, path: str, tags: Optional[List[str]] = None) -> Result[Dict[str, Any]]:
        """
        Read metadata from a file.

        Args:
            path: File path
            tags: Optional list of specific tags to read

        Returns:
            Result with the tag dict of the file
        """
        if not self._available:
            return Result.Err(ErrorCode.TOOL_MISSING, "ExifTool not found in PATH")
        if not path or "\x00" in str(path):
            return Result.Err(ErrorCode.INVALID_INPUT, "Invalid file path")
        if not os.path.isfile(path):
            return Result.Err(ErrorCode.NOT_FOUND, f"File not found: {Path(path).name}")
        safe_tags = [t.strip() for t in (tags or [])]
        invalid = [t for t in safe_tags if not is_safe_tag(t)]
        if invalid:
            return Result.Err(ErrorCode.INVALID_INPUT, "Invalid ExifTool tag format", invalid_tags=invalid)

        try:
            process = subprocess.run(
                self._build_command(str(path), safe_tags),
                capture_output=True,
                text=False,
                check=False,
                timeout=self.timeout,
                shell=False,
                close_fds=os.name != "nt",
            )
        except subprocess.TimeoutExpired:
            logger.error("ExifTool timeout for %s", path)
            return Result.Err(ErrorCode.TIMEOUT, f"ExifTool timeout after {self.timeout}s")
        except OSError as exc:
            logger.error("ExifTool could not be started: %s", exc)
            return Result.Err(ErrorCode.EXIFTOOL_ERROR, str(exc))
        return self._parse_output(process, path)

    def _parse_output(self, process: subprocess.CompletedProcess, path: str) -> Result[Dict[str, Any]]:
        stdout, stdout_rep = decode_bytes_best_effort(process.stdout)
        stderr, _ = decode_bytes_best_effort(process.stderr)
        if stdout_rep:
            logger.warning("ExifTool output for %s contained undecodable bytes", path)
        if not stdout.strip():
            if process.returncode != 0:
                return Result.Err(
                    ErrorCode.EXIFTOOL_ERROR,
                    stderr.strip() or f"ExifTool failed with return code {int(process.returncode)}",
                    return_code=int(process.returncode),
                )
            return Result.Err(ErrorCode.PARSE_ERROR, "ExifTool returned empty output")
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            logger.error("ExifTool JSON parse error: %s", exc)
            return Result.Err(ErrorCode.PARSE_ERROR, f"Failed to parse ExifTool output: {exc}")
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            return Result.Err(ErrorCode.PARSE_ERROR, "Unexpected ExifTool output format")
        if process.returncode != 0 and stderr.strip():
            logger.debug("ExifTool warnings for %s: %s", path, stderr.strip())
        return Result.Ok(data[0])
