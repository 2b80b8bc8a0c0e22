import json
import logging

import pytest

from mmc_shared import (
    ChangeType,
    ErrorCode,
    Result,
    bind_run_id,
    classify_file,
    get_logger,
    log_structured,
    sanitize_error_message,
)
from mmc_shared.log import RunLineFormatter


def test_result_ok_and_err_shapes():
    ok = Result.Ok({"a": 1}, source="test")
    assert ok.ok and ok.code == "OK" and ok.meta == {"source": "test"}
    err = Result.Err(ErrorCode.SCHEMA_MISMATCH, "nope", persisted_version=1)
    assert not err.ok
    assert err.code == "SCHEMA_MISMATCH"
    assert err.meta["persisted_version"] == 1
    assert err.unwrap_or("fallback") == "fallback"


def test_result_forward_keeps_code_and_meta():
    err = Result.Err(ErrorCode.DB_ERROR, "locked", path="x")
    fwd = err.forward()
    assert fwd.code == "DB_ERROR" and fwd.error == "locked" and fwd.meta == {"path": "x"}


def test_result_map_only_on_success():
    assert Result.Ok(2).map(lambda v: v * 3).data == 6
    assert Result.Err(ErrorCode.IO_ERROR, "x").map(lambda v: v * 3).ok is False

def test_result_unwrap():
    assert Result.Ok(5).unwrap() == 5
    assert Result.Err(ErrorCode.NOT_FOUND, "gone").unwrap_or(7) == 7
    with pytest.raises(ValueError):
        Result.Err(ErrorCode.NOT_FOUND, "gone").unwrap()



def test_classify_file_by_extension():
    assert classify_file("/a/b/PHOTO.JPG") == "image"
    assert classify_file("clip.mov") == "video"
    assert classify_file("notes.txt") == "unknown"


def test_change_type_values():
    assert {c.value for c in ChangeType} == {"new", "modified", "deleted", "content_changed", "unchanged"}


def test_sanitize_error_message_masks_paths():
    msg = sanitize_error_message(OSError("cannot open /home/user/secret/file.jpg"), "Read failed")
    assert msg.startswith("Read failed")
    assert "/home/user" not in msg
    assert "[file.jpg]" in msg
    assert sanitize_error_message(None, "Fallback") == "Fallback"


def test_log_structured_emits_json(caplog):
    logger = logging.getLogger("mmc.test.structured")
    with caplog.at_level(logging.INFO, logger="mmc.test.structured"):
        log_structured(logger, logging.INFO, "File skipped", file_path="a.jpg", code="IO_ERROR")
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["message"] == "File skipped"
    assert payload["context"] == {"file_path": "a.jpg", "code": "IO_ERROR"}


def test_log_structured_carries_bound_run_id(caplog):
    logger = logging.getLogger("mmc.test.run_bound")
    with caplog.at_level(logging.INFO, logger="mmc.test.run_bound"):
        with bind_run_id("abc123"):
            log_structured(logger, logging.INFO, "Run finished")
        log_structured(logger, logging.INFO, "Outside")
    inside, outside = (json.loads(r.getMessage()) for r in caplog.records[-2:])
    assert inside["context"] == {"run_id": "abc123"}
    assert outside["context"] == {}


def test_run_line_format():
    record = logging.LogRecord("mmc.cache.store", logging.WARNING, __file__, 1, "disk %s", ("full",), None)
    record.run_id = "0123456789abcdef"
    line = RunLineFormatter().format(record)
    assert line.endswith("mmc.cache.store [run 01234567]: disk full")
    assert get_logger("mmc_backend.features.cache.store").name == "mmc.features.cache.store"


def test_result_code_helpers_and_wire_shape():
    err = Result.Err(ErrorCode.TIMEOUT, "slow", path="a.mov")
    assert err.is_code(ErrorCode.IO_ERROR, ErrorCode.TIMEOUT)
    assert not err.is_code("IO_ERROR")
    tagged = err.with_meta(attempt=2)
    assert tagged.meta == {"path": "a.mov", "attempt": 2}
    assert err.meta == {"path": "a.mov"}
    assert tagged.to_dict() == {
        "ok": False,
        "data": None,
        "error": "slow",
        "code": "TIMEOUT",
        "meta": {"path": "a.mov", "attempt": 2},
    }
