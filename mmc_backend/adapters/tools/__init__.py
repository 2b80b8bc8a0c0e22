"""External metadata tool adapters."""
from .exiftool import ExifTool
from .ffprobe import FFProbe

__all__ = ["ExifTool", "FFProbe"]
