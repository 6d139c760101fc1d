"""Content-type routing for POST /import."""

from __future__ import annotations

from typing import Literal, Optional

InputKind = Literal["multipart", "json", "stream"]


def detect_content_type(content_type: Optional[str]) -> InputKind:
    """
    Map a declared Content-Type to the adapter that reads the body.

    Case-insensitive substring match; anything unrecognized (including an
    absent header) is treated as a raw stream.
    """
    declared = (content_type or "").lower()
    if not declared:
        return "stream"
    if "multipart/form-data" in declared:
        return "multipart"
    if "application/json" in declared:
        return "json"
    return "stream"
