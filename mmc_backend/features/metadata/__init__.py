"""Metadata extraction through external tools."""
from .extractor import MediaExtractor, encode_payload

__all__ = ["MediaExtractor", "encode_payload"]
