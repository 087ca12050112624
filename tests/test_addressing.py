"""
Tests for content addressing and canonical JSON.
"""

import io

import pytest

from invoicex.domain.addressing import (
    LOCATOR_PREFIX,
    address,
    address_file,
    address_stream,
    canonical_json,
    ensure_locator,
    is_locator,
    verify_locator,
)


def test_address_is_deterministic():
    assert address(b"invoice") == address(b"invoice")
    assert address(b"invoice") != address(b"invoice ")


def test_locator_shape():
    locator = address(b"registration.pdf contents")

    assert locator.startswith(LOCATOR_PREFIX)
    assert len(locator) == len(LOCATOR_PREFIX) + 52
    assert locator == locator.lower()
    assert is_locator(locator)


def test_empty_content_has_a_locator():
    assert is_locator(address(b""))
    assert address(b"") != address(b"\x00")


def test_stream_and_file_match_in_memory_address(tmp_path):
    content = b"x" * 200_000  # spans several read chunks
    path = tmp_path / "doc.bin"
    path.write_bytes(content)

    assert address_stream(io.BytesIO(content)) == address(content)
    assert address_file(path) == address(content)


@pytest.mark.parametrize(
    "value",
    [
        "",
        "0xb1",
        "sha256-",
        "sha256-" + "a" * 51,
        "sha256-" + "A" * 52,
        "sha256-" + "1" * 52,
        "md5-" + "a" * 52,
    ],
)
def test_is_locator_rejects_malformed_values(value):
    assert not is_locator(value)
    with pytest.raises(ValueError):
        ensure_locator(value)


def test_verify_locator_detects_tampering():
    locator = address(b"genuine")

    assert verify_locator(b"genuine", locator)
    assert not verify_locator(b"tampered", locator)


def test_canonical_json_ignores_key_order():
    first = {"b": 1, "a": {"y": [1, 2], "x": "é"}}
    second = {"a": {"x": "é", "y": [1, 2]}, "b": 1}

    assert canonical_json(first) == canonical_json(second)
    assert canonical_json(first) == '{"a":{"x":"é","y":[1,2]},"b":1}'.encode("utf-8")
