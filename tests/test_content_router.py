"""
tests/test_content_router.py

Content-Type routing for POST /import.
"""

from __future__ import annotations

import pytest

from contactflow.services.content_router import detect_content_type


class TestDetectContentType:
    """Every declared type maps to exactly one adapter."""

    @pytest.mark.parametrize(
        "declared",
        [
            "multipart/form-data; boundary=----abc",
            "MULTIPART/FORM-DATA",
            "Multipart/Form-Data; charset=utf-8",
        ],
    )
    def test_multipart(self, declared: str) -> None:
        assert detect_content_type(declared) == "multipart"

    @pytest.mark.parametrize("declared", ["application/json", "application/json; charset=utf-8", "APPLICATION/JSON"])
    def test_json(self, declared: str) -> None:
        assert detect_content_type(declared) == "json"

    @pytest.mark.parametrize("declared", ["text/plain", "application/octet-stream", "text/csv"])
    def test_everything_else_is_stream(self, declared: str) -> None:
        assert detect_content_type(declared) == "stream"

    @pytest.mark.parametrize("declared", [None, ""])
    def test_missing_content_type_defaults_to_stream(self, declared) -> None:
        assert detect_content_type(declared) == "stream"
