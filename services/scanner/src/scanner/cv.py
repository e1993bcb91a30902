from __future__ import annotations

import re
import zipfile
from collections import Counter
from io import BytesIO

from docx import Document
from docx.opc.exceptions import PackageNotFoundError

DOCX_EXTENSION = ".docx"
MAX_KEYWORDS = 50
PREVIEW_LENGTH = 500

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
        "be", "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "can",
    }
)

SECTION_MARKERS = (
    ("experience", ("experience", "work history")),
    ("education", ("education",)),
    ("skills", ("skills",)),
)


class CVParseError(ValueError):
    pass


def is_docx_filename(filename: str | None) -> bool:
    return bool(filename) and filename.lower().endswith(DOCX_EXTENSION)


def parse_docx_to_text(data: bytes) -> str:
    try:
        document = Document(BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise CVParseError("Failed to parse DOCX file") from exc

    lines = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            lines.append("\t".join(cell.text for cell in row.cells))
    return "\n".join(lines).strip()


def parse_cv_sections(text: str) -> dict[str, list[str]]:
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in text.split("\n"):
        lowered = line.lower().strip()
        marker = next(
            (
                name
                for name, needles in SECTION_MARKERS
                if any(needle in lowered for needle in needles)
            ),
            None,
        )
        if marker is not None:
            current = marker
            sections[current] = []
        elif current is not None and line.strip():
            sections[current].append(line.strip())
    return sections


def extract_keywords(text: str) -> list[str]:
    words = [
        word
        for word in re.split(r"\W+", text.lower())
        if len(word) > 3 and word not in STOP_WORDS
    ]
    return [word for word, _ in Counter(words).most_common(MAX_KEYWORDS)]


def preview_text(text: str) -> str:
    if len(text) <= PREVIEW_LENGTH:
        return text
    return text[:PREVIEW_LENGTH] + "..."
