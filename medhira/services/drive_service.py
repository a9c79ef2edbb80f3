"""
Export of completed summaries to Google Drive

The caller supplies a Drive OAuth access token; obtaining it is the client's job.
The summary is rendered to a PDF with reportlab and uploaded into a
"Patient Summaries" folder, created on first use.
"""

import json
import secrets
from dataclasses import dataclass
from datetime import date
from io import BytesIO
from typing import List, Optional
from xml.sax.saxutils import escape

import httpx
from reportlab.lib import colors as rl_colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Flowable, HRFlowable, Paragraph, SimpleDocTemplate, Spacer

from medhira.core.exceptions import DriveExportError
from medhira.core.logging import get_logger
from medhira.models.consultation import Consultation, NOT_SPECIFIED

logger = get_logger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# (heading, attribute, text used when the field is blank)
_SECTIONS = (
    ("Symptoms & Chief Complaint", "symptoms", NOT_SPECIFIED),
    ("Medical History", "history", "No significant medical history noted"),
    ("Examination Findings", "examination", "No examination findings recorded"),
    ("Diagnosis", "diagnosis", NOT_SPECIFIED),
    ("Prescription & Treatment", "prescription", "No prescription provided"),
    ("Follow-up Instructions", "follow_up", "No specific follow-up instructions"),
)


@dataclass
class DriveUpload:
    drive_link: Optional[str]
    file_id: str
    file_name: str


def _text(value: Optional[str], default: str) -> str:
    value = (value or "").strip()
    return escape(value or default).replace("\n", "<br/>")


class SummaryDocumentRenderer:
    """Renders a completed consultation as a one-document PDF summary."""

    content_type = "application/pdf"

    def __init__(self) -> None:
        base = getSampleStyleSheet()
        self._styles = {
            "title": ParagraphStyle(
                "title",
                parent=base["Title"],
                fontName="Helvetica-Bold",
                fontSize=18,
                alignment=TA_CENTER,
                spaceAfter=6,
            ),
            "subtitle": ParagraphStyle(
                "subtitle",
                parent=base["BodyText"],
                fontName="Helvetica",
                fontSize=10,
                alignment=TA_CENTER,
                textColor=rl_colors.grey,
                spaceAfter=12,
            ),
            "heading": ParagraphStyle(
                "heading",
                parent=base["Heading2"],
                fontName="Helvetica-Bold",
                fontSize=12,
                spaceBefore=12,
                spaceAfter=4,
            ),
            "body": ParagraphStyle(
                "body",
                parent=base["BodyText"],
                fontName="Helvetica",
                fontSize=10,
                leading=14,
            ),
            "caption": ParagraphStyle(
                "caption",
                parent=base["BodyText"],
                fontName="Helvetica-Oblique",
                fontSize=8,
                textColor=rl_colors.grey,
                alignment=TA_CENTER,
            ),
        }

    def file_name(self, consultation: Consultation, on: Optional[date] = None) -> str:
        on = on or date.today()
        patient = "_".join((consultation.patient_name or "Patient").split())
        return f"Medical_Summary_{patient}_{on.isoformat()}.pdf"

    def render(self, consultation: Consultation, on: Optional[date] = None) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=0.8 * inch,
            rightMargin=0.8 * inch,
            topMargin=0.8 * inch,
            bottomMargin=0.8 * inch,
            title="Patient Medical Summary",
        )
        doc.build(self._build_story(consultation, on or date.today()))
        return buffer.getvalue()

    def _build_story(self, consultation: Consultation, on: date) -> List[Flowable]:
        styles = self._styles
        story: List[Flowable] = [
            Paragraph("Patient Medical Summary", styles["title"]),
            Paragraph(f"Generated: {on.isoformat()}", styles["subtitle"]),
            HRFlowable(width="100%", color=rl_colors.grey),
            Paragraph("Patient Information", styles["heading"]),
            Paragraph(f"<b>Name:</b> {_text(consultation.patient_name, NOT_SPECIFIED)}", styles["body"]),
            Paragraph(f"<b>Age:</b> {_text(consultation.age, NOT_SPECIFIED)}", styles["body"]),
            Paragraph(f"<b>Gender:</b> {_text(consultation.gender, NOT_SPECIFIED)}", styles["body"]),
        ]
        for heading, attribute, default in _SECTIONS:
            story.append(Paragraph(heading, styles["heading"]))
            story.append(Paragraph(_text(getattr(consultation, attribute), default), styles["body"]))
        story.append(Spacer(1, 0.4 * inch))
        story.append(HRFlowable(width="100%", color=rl_colors.grey))
        story.append(
            Paragraph(
                "Confidential medical information - For authorized personnel only.",
                styles["caption"],
            )
        )
        return story


class DriveExporter:
    """Uploads rendered summaries through the Google Drive v3 REST API."""

    def __init__(
        self,
        base_url: str,
        folder_name: str,
        renderer: Optional[SummaryDocumentRenderer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.folder_name = folder_name
        self.renderer = renderer or SummaryDocumentRenderer()
        self.transport = transport
        self.timeout = timeout

    async def export(self, consultation: Consultation, access_token: str) -> DriveUpload:
        if not access_token:
            raise DriveExportError("A Google Drive access token is required", status_code=401)
        if not consultation.patient_name:
            raise DriveExportError("Patient name is required")
        if not consultation.diagnosis:
            raise DriveExportError("Diagnosis is required")

        file_name = self.renderer.file_name(consultation)
        document = self.renderer.render(consultation)

        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=self.transport,
            timeout=self.timeout,
        ) as client:
            folder_id = await self._ensure_folder(client)
            result = await self._upload(client, folder_id, file_name, document, consultation)

        logger.info(f"Exported consultation {consultation.id} to Google Drive file {result.get('id')}")
        return DriveUpload(
            drive_link=result.get("webViewLink"),
            file_id=result["id"],
            file_name=result.get("name") or file_name,
        )

    async def _ensure_folder(self, client: httpx.AsyncClient) -> str:
        query = (
            f"name='{self.folder_name}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        )
        response = await client.get("/drive/v3/files", params={"q": query, "fields": "files(id,name)"})
        self._raise_for_status(response, "Folder search failed")
        files = response.json().get("files") or []
        if files:
            return files[0]["id"]

        logger.info(f"Creating Google Drive folder '{self.folder_name}'")
        response = await client.post(
            "/drive/v3/files",
            json={
                "name": self.folder_name,
                "mimeType": FOLDER_MIME_TYPE,
                "description": "Patient consultation summaries generated by Medhira",
            },
        )
        self._raise_for_status(response, "Folder creation failed")
        return response.json()["id"]

    async def _upload(
        self,
        client: httpx.AsyncClient,
        folder_id: str,
        file_name: str,
        document: bytes,
        consultation: Consultation,
    ) -> dict:
        metadata = {
            "name": file_name,
            "mimeType": self.renderer.content_type,
            "parents": [folder_id],
            "description": f"Medical summary for {consultation.patient_name}",
        }
        boundary = f"medhira-{secrets.token_hex(8)}"
        body = b"".join([
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode(),
            f"\r\n--{boundary}\r\n".encode(),
            f"Content-Type: {self.renderer.content_type}\r\n\r\n".encode(),
            document,
            f"\r\n--{boundary}--\r\n".encode(),
        ])
        response = await client.post(
            "/upload/drive/v3/files",
            params={"uploadType": "multipart", "fields": "id,name,webViewLink"},
            content=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )
        self._raise_for_status(response, "Upload failed")
        return response.json()

    @staticmethod
    def _raise_for_status(response: httpx.Response, prefix: str) -> None:
        if response.is_success:
            return
        try:
            detail = response.json().get("error", {}).get("message") or response.reason_phrase
        except (ValueError, AttributeError):
            detail = response.reason_phrase
        raise DriveExportError(f"{prefix}: {detail}", status_code=response.status_code)
