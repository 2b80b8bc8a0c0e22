"""Fingerprinting and change classification."""
from .change_log import ChangeLog
from .hashing import sha256_file, stat_fingerprint
from .tracker import FingerprintTracker, TrackerRun, classify

__all__ = [
    "ChangeLog",
    "FingerprintTracker",
    "TrackerRun",
    "classify",
    "sha256_file",
    "stat_fingerprint",
]
