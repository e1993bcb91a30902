from __future__ import annotations

import json
import logging
import re
from datetime import date
from html import escape
from io import BytesIO

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Pt
from reportlab.lib import colors
from reportlab.lib.enums import TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from scanner.llm import ClaudeClient
from scanner.models import ArtifactContent, ArtifactMetadata, ArtifactType, CVSections
from scanner.repository import ScannerRepository

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PDF_MIME_TYPE = "application/pdf"
TEXT_MIME_TYPE = "text/plain"
PDF_MARGIN = 50
HEADING_PATTERN = re.compile(r"^[A-Z\s]+$")
LOGGER = logging.getLogger("gigradar.scanner")

COVER_LETTER_STYLE_EXAMPLE = """Hey team,

I built business operations from zero, from forecasting and board reporting to \
cross-functional programs, a product-led growth motion and AI automation.
Now I want to do it for you. I understand your space, have built these systems \
before, and bring technical depth most BizOps people lack.

Would love to chat, CV attached.

Thanks"""


class MissingCVError(ValueError):
    pass


def is_heading_line(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and len(stripped) < 50 and HEADING_PATTERN.match(stripped) is not None


def render_cv_docx(name: str, email: str, sections: CVSections) -> bytes:
    document = Document()

    title = document.add_heading(name, level=0)
    title.alignment = WD_ALIGN_PARAGRAPH.CENTER
    contact = document.add_paragraph(email)
    contact.alignment = WD_ALIGN_PARAGRAPH.CENTER
    contact.paragraph_format.space_after = Pt(15)

    if sections.summary:
        document.add_heading("Professional Summary", level=1)
        document.add_paragraph(sections.summary)

    if sections.experience:
        document.add_heading("Experience", level=1)
        for item in sections.experience:
            document.add_paragraph(item, style="List Bullet")

    if sections.education:
        document.add_heading("Education", level=1)
        for item in sections.education:
            document.add_paragraph(item)

    if sections.skills:
        document.add_heading("Skills", level=1)
        document.add_paragraph(", ".join(sections.skills))

    buffer = BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def render_cv_pdf(name: str, email: str, cv_text: str) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        topMargin=PDF_MARGIN,
        bottomMargin=PDF_MARGIN,
        leftMargin=PDF_MARGIN,
        rightMargin=PDF_MARGIN,
        title=f"{name} CV",
    )
    styles = getSampleStyleSheet()
    name_style = ParagraphStyle("CVName", parent=styles["Title"], fontSize=20, alignment=TA_LEFT)
    contact_style = ParagraphStyle(
        "CVContact",
        parent=styles["Normal"],
        fontSize=12,
        textColor=colors.HexColor("#4d4d4d"),
        spaceAfter=20,
    )
    heading_style = ParagraphStyle(
        "CVHeading",
        parent=styles["Heading2"],
        fontName="Helvetica-Bold",
        fontSize=14,
        spaceBefore=6,
        spaceAfter=6,
    )
    body_style = ParagraphStyle("CVBody", parent=styles["Normal"], fontSize=11, leading=15)

    story = [Paragraph(escape(name), name_style), Paragraph(escape(email), contact_style)]
    for line in cv_text.split("\n"):
        stripped = line.strip()
        if not stripped:
            story.append(Spacer(1, 7))
            continue
        style = heading_style if is_heading_line(stripped) else body_style
        story.append(Paragraph(escape(stripped), style))

    doc.build(story)
    return buffer.getvalue()


def render_cover_letter_text(
    name: str,
    email: str,
    company: str,
    job_title: str,
    body: str,
    *,
    on: date | None = None,
) -> str:
    letter_date = on or date.today()
    formatted_date = f"{letter_date.strftime('%B')} {letter_date.day}, {letter_date.year}"
    return (
        f"{name}\n{email}\n{formatted_date}\n\n"
        f"Re: {job_title} at {company}\n\n"
        f"{body}\n\n"
        f"Best regards,\n{name}"
    )


def artifact_file_name(user_name: str, kind: str, company: str, extension: str) -> str:
    safe_name = re.sub(r"\s+", "_", user_name.strip())
    return f"{safe_name}_{kind}_{company}.{extension}"


def generate_ticket_artifacts(
    repository: ScannerRepository,
    llm: ClaudeClient,
    *,
    user_id: str,
    ticket_id: str,
    style_example: str = COVER_LETTER_STYLE_EXAMPLE,
) -> list[ArtifactMetadata]:
    ticket = repository.get_ticket_detail_or_raise(user_id, ticket_id)
    user = repository.get_user_or_raise(user_id)
    base_cv = repository.get_user_cv(user_id)
    if not base_cv:
        raise MissingCVError("No base CV found. Please upload your CV first.")

    name = user.name or "User"
    job = ticket.job
    tailored = llm.generate_tailored_cv(base_cv, job.description, job.title, job.company)
    cover_letter = llm.generate_cover_letter(
        base_cv,
        job.description,
        job.title,
        job.company,
        name,
        style_example,
    )

    artifacts = [
        ArtifactContent(
            type=ArtifactType.CV_DOCX,
            file_name=artifact_file_name(name, "CV", job.company, "docx"),
            mime_type=DOCX_MIME_TYPE,
            file_data=render_cv_docx(name, user.email, tailored.sections),
        ),
        ArtifactContent(
            type=ArtifactType.CV_PDF,
            file_name=artifact_file_name(name, "CV", job.company, "pdf"),
            mime_type=PDF_MIME_TYPE,
            file_data=render_cv_pdf(name, user.email, tailored.full_text),
        ),
        ArtifactContent(
            type=ArtifactType.COVER_LETTER_TXT,
            file_name=artifact_file_name(name, "CoverLetter", job.company, "txt"),
            mime_type=TEXT_MIME_TYPE,
            content=render_cover_letter_text(
                name,
                user.email,
                job.company,
                job.title,
                cover_letter,
            ),
        ),
    ]
    stored = repository.replace_artifacts(ticket_id, artifacts)
    LOGGER.info(
        json.dumps(
            {
                "event": "artifacts_generated",
                "user_id": user_id,
                "ticket_id": ticket_id,
                "artifacts": [artifact.type for artifact in stored],
            }
        )
    )
    return stored
