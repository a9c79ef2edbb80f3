import asyncio
from datetime import date

import httpx
import pytest

from medhira.core.exceptions import DriveExportError
from medhira.models.consultation import Consultation, ConsultationStatus
from medhira.services.drive_service import DriveExporter, SummaryDocumentRenderer


def _consultation(**fields):
    values = {
        "owner_id": "doctor-1",
        "status": ConsultationStatus.COMPLETED,
        "patient_name": "Mary Ann Lee",
        "age": "52",
        "diagnosis": "Type 2 diabetes <uncontrolled>",
        "prescription": "Metformin 500mg\ntwice daily",
    }
    values.update(fields)
    return Consultation(**values)


def test_file_name_uses_patient_name_and_date():
    name = SummaryDocumentRenderer().file_name(_consultation(), on=date(2024, 3, 9))
    assert name == "Medical_Summary_Mary_Ann_Lee_2024-03-09.pdf"


def test_render_produces_pdf_with_markup_characters():
    document = SummaryDocumentRenderer().render(_consultation())
    assert document.startswith(b"%PDF")


def test_export_creates_folder_when_missing():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "GET":
            assert "Patient Summaries" in request.url.params["q"]
            return httpx.Response(200, json={"files": []})
        if request.url.path == "/drive/v3/files":
            return httpx.Response(200, json={"id": "folder-9"})
        assert request.url.params["uploadType"] == "multipart"
        assert request.headers["Content-Type"].startswith("multipart/related; boundary=")
        assert b'"parents": ["folder-9"]' in request.content
        return httpx.Response(200, json={"id": "file-9", "name": "summary.pdf", "webViewLink": "https://drive/x"})

    exporter = DriveExporter("https://drive.test", "Patient Summaries", transport=httpx.MockTransport(handler))
    upload = asyncio.run(exporter.export(_consultation(), "token"))

    assert calls == [
        ("GET", "/drive/v3/files"),
        ("POST", "/drive/v3/files"),
        ("POST", "/upload/drive/v3/files"),
    ]
    assert upload.file_id == "file-9"
    assert upload.drive_link == "https://drive/x"


def test_export_requires_patient_name_and_diagnosis():
    exporter = DriveExporter("https://drive.test", "Patient Summaries")

    with pytest.raises(DriveExportError):
        asyncio.run(exporter.export(_consultation(diagnosis=None), "token"))
    with pytest.raises(DriveExportError) as exc:
        asyncio.run(exporter.export(_consultation(), ""))
    assert exc.value.status_code == 401


def test_export_surfaces_drive_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="backend exploded")

    exporter = DriveExporter("https://drive.test", "Patient Summaries", transport=httpx.MockTransport(handler))

    with pytest.raises(DriveExportError) as exc:
        asyncio.run(exporter.export(_consultation(), "token"))
    assert exc.value.status_code == 500
