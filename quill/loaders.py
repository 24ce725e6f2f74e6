"""Upload parsing: turns .txt and .md files into ordered sections."""

import re
from pathlib import Path
from typing import List

from .errors import ValidationError
from .models import Section

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
SUPPORTED_TYPES = {".txt": "txt", ".md": "md"}

# "# Title" and "## Title" start a section; "###" and deeper stay in the body
_HEADING = re.compile(r"^(#{1,2})[ \t]+(.+?)[ \t]*$", re.MULTILINE)


def file_type_of(filename: str) -> str:
    """Return ``txt`` or ``md`` for a supported filename."""
    ext = Path(filename or "").suffix.lower()
    file_type = SUPPORTED_TYPES.get(ext)
    if file_type is None:
        raise ValidationError("Only .txt and .md files allowed", code="invalid_type")
    return file_type


def parse_upload(filename: str, content: bytes) -> List[Section]:
    """
    Split an uploaded file into sections.

    A ``.txt`` file is one section headed by the filename. A ``.md`` file
    is split on ``#``/``##`` headings; text before the first heading becomes
    a section headed by the filename, and empty sections are skipped.

    Args:
        filename: Original file name (used for type and default heading)
        content: Raw file bytes, UTF-8

    Returns:
        Non-empty sections in file order

    Raises:
        ValidationError: ``invalid_type``, ``too_large``, ``empty_file`` or ``parse_error``
    """
    file_type = file_type_of(filename)
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError(
            f"File is larger than {MAX_UPLOAD_BYTES // (1024 * 1024)} MB", code="too_large"
        )
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError("File is not valid UTF-8 text", code="parse_error") from None

    if file_type == "md":
        sections = _split_markdown(filename, text)
    else:
        body = text.strip()
        sections = [Section(content=body, heading=filename, order=0)] if body else []

    if not sections:
        raise ValidationError("File contains no content", code="empty_file")
    return sections


def _split_markdown(filename: str, text: str) -> List[Section]:
    text = text.replace("\r\n", "\n")
    headings = list(_HEADING.finditer(text))

    pieces = []
    first = headings[0].start() if headings else len(text)
    pieces.append((filename, text[:first]))
    for i, match in enumerate(headings):
        end = headings[i + 1].start() if i + 1 < len(headings) else len(text)
        pieces.append((match.group(2), text[match.end():end]))

    sections: List[Section] = []
    for heading, body in pieces:
        body = body.strip()
        if body:
            sections.append(Section(content=body, heading=heading, order=len(sections)))
    return sections
