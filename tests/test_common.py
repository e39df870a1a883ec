import uuid

import pytest

from ekb.core.domain import Role
from ekb.core.exceptions import UpstreamError, ValidationError
from ekb.utils.common import (
    bytes_to_embedding, embedding_to_bytes, truncate_chars, validate_document_id
)


def test_validate_document_id():
    assert validate_document_id(str(uuid.uuid4()))
    assert validate_document_id(str(uuid.uuid4()).upper())
    assert not validate_document_id("")
    assert not validate_document_id("1234")


def test_embedding_bytes_are_little_endian_float64():
    data = embedding_to_bytes([1.0, -0.5])
    assert len(data) == 16
    assert data[:8] == bytes.fromhex("000000000000f03f")
    assert bytes_to_embedding(data) == [1.0, -0.5]
    assert embedding_to_bytes(None) is None
    assert bytes_to_embedding(b"") is None
    with pytest.raises(ValueError):
        bytes_to_embedding(b"\x00" * 7)


def test_truncate_chars_counts_code_points():
    assert truncate_chars("你好世界", 2) == "你好"
    assert truncate_chars("abc", 10) == "abc"
    assert truncate_chars("abc", 0) == ""


def test_unknown_role_falls_back_to_user():
    assert Role.from_string("assistant") == Role.ASSISTANT
    assert Role.from_string("tool") == Role.USER


def test_error_string_carries_code():
    assert str(ValidationError("query is empty")) == "[VALIDATION_FAILED] query is empty"
    assert str(UpstreamError("down")).startswith("[UPSTREAM_FAILED]")
