from __future__ import annotations

import os

from b2b_bulk.ingestion.file_scanner import FileScanner, sanitize_filename


def _scanner(**kwargs) -> FileScanner:
    kwargs.setdefault("max_bytes", 1024)
    return FileScanner(**kwargs)


def test_plain_csv_is_safe():
    result = _scanner().scan(b"sku,quantity\nA,1\n", "order.csv", "text/csv")

    assert result.safe is True
    assert result.threats == ()
    assert result.sanitized_filename == "order.csv"
    assert result.size == len(b"sku,quantity\nA,1\n")


def test_oversized_upload_is_flagged_before_content_checks():
    result = _scanner(max_bytes=8).scan(b"MZ" + b"x" * 20, "order.csv")

    assert result.safe is False
    assert result.size_exceeded is True
    assert len(result.threats) == 1
    assert "exceeds maximum of 8 bytes" in result.threats[0]


def test_empty_upload_is_rejected():
    result = _scanner().scan(b"", "order.csv")

    assert result.safe is False
    assert result.threats == ("File is empty",)


def test_disallowed_extension_and_mime_type():
    result = _scanner().scan(b"sku,quantity\n", "order.exe", "application/octet-stream")

    assert result.safe is False
    assert "File extension not allowed: .exe" in result.threats
    assert "MIME type not allowed: application/octet-stream" in result.threats


def test_executable_signature_disguised_as_csv():
    result = _scanner().scan(b"MZ\x90\x00rest-of-binary", "order.csv", "text/csv")

    assert result.safe is False
    assert result.detected_type == "application/x-msdownload"
    assert any("executable" in threat for threat in result.threats)
    assert result.warnings


def test_embedded_script_is_detected():
    result = _scanner().scan(b"sku,quantity\n<?php system($_GET['c']); ?>,1\n", "order.csv")

    assert "Embedded script content detected" in result.threats


def test_high_entropy_content_is_flagged():
    data = os.urandom(4096)

    result = _scanner(max_bytes=10_000).scan(data, "order.csv")

    assert result.safe is False
    assert any("High-entropy" in threat for threat in result.threats)


def test_sanitize_filename_strips_paths_and_unsafe_characters():
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("C:\\Users\\me\\bulk order (1).csv") == "bulk_order__1_.csv"
    assert sanitize_filename(".hidden.csv") == "hidden.csv"
    assert sanitize_filename("") == "upload"


def test_sanitize_filename_truncates_but_keeps_extension():
    name = sanitize_filename("a" * 400 + ".csv")

    assert len(name) == 255
    assert name.endswith(".csv")
