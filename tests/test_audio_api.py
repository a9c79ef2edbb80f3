import os

from conftest import auth_headers, wait_for_terminal
from medhira import main
from medhira.config import settings
from medhira.core.exceptions import ConsultationNotFound
from medhira.services.stt_service import FALLBACK_TRANSCRIPT


WAV = ("visit.wav", b"RIFF....WAVEfmt fake consultation audio", "audio/wav")


def _stored_path(name):
    return os.path.join(settings.upload_dir, name)


def test_upload_requires_authentication(client):
    response = client.post("/audio/upload", files={"audio": WAV})
    assert response.status_code == 401
    assert response.json()["detail"] == "Not authorized to access this route"


def test_upload_without_file_is_rejected(client, owner_id):
    response = client.post("/audio/upload", headers=auth_headers(owner_id))
    assert response.status_code == 400
    assert response.json()["detail"] == "Please upload an audio file"


def test_upload_rejects_empty_file(client, owner_id):
    response = client.post(
        "/audio/upload",
        headers=auth_headers(owner_id),
        files={"audio": ("empty.wav", b"", "audio/wav")},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Audio file is empty"


def test_upload_rejects_non_audio_file(client, owner_id):
    response = client.post(
        "/audio/upload",
        headers=auth_headers(owner_id),
        files={"audio": ("notes.txt", b"hello", "text/plain")},
    )
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Invalid file type")


def test_upload_rejects_oversized_file(client, owner_id, monkeypatch):
    monkeypatch.setattr(main.audio_processor, "max_file_size_bytes", 8)

    response = client.post("/audio/upload", headers=auth_headers(owner_id), files={"audio": WAV})
    assert response.status_code == 413


def test_rejected_upload_creates_no_consultation(client, owner_id):
    headers = auth_headers(owner_id)
    client.post("/audio/upload", headers=headers, files={"audio": ("notes.txt", b"hello", "text/plain")})

    response = client.get("/audio/consultations", headers=headers)
    assert response.json()["count"] == 0


def test_upload_is_processed_in_background_with_fallbacks(client, owner_id):
    headers = auth_headers(owner_id)

    response = client.post("/audio/upload", headers=headers, files={"audio": WAV})
    assert response.status_code == 200
    ack = response.json()
    assert ack["success"] is True
    assert ack["status"] == "uploaded"
    consultation_id = ack["consultationId"]

    body = wait_for_terminal(client, consultation_id, headers)

    assert body["status"] == "completed"
    assert body["message"] == "Processing completed successfully"
    consultation = body["consultation"]
    assert consultation["transcript"] == FALLBACK_TRANSCRIPT
    assert consultation["patientName"] == "John Smith"
    assert consultation["diagnosis"] == "Tension headaches"
    assert consultation["followUp"].startswith("Return in 2 weeks")
    assert consultation["originalName"] == "visit.wav"
    assert consultation["mimeType"] == "audio/wav"
    assert consultation["processingCompletedAt"]
    assert not os.path.exists(_stored_path(consultation["audioFile"]))


def test_codec_suffixed_mime_type_is_accepted(client, owner_id):
    response = client.post(
        "/audio/upload",
        headers=auth_headers(owner_id),
        files={"audio": ("memo.webm", b"\x1aE\xdf\xa3 webm bytes", "audio/webm;codecs=opus")},
    )
    assert response.status_code == 200


def test_status_of_foreign_consultation_looks_missing(client, owner_id):
    headers = auth_headers(owner_id)
    consultation_id = client.post("/audio/upload", headers=headers, files={"audio": WAV}).json()["consultationId"]
    wait_for_terminal(client, consultation_id, headers)

    intruder = auth_headers("someone-else")
    assert client.get(f"/audio/status/{consultation_id}", headers=intruder).status_code == 404
    assert client.get(f"/audio/consultation/{consultation_id}", headers=intruder).status_code == 404
    assert client.delete(f"/audio/consultation/{consultation_id}", headers=intruder).status_code == 404
    assert client.get(f"/audio/consultation/{consultation_id}", headers=headers).status_code == 200


def test_status_of_unknown_consultation_is_404(client, owner_id):
    response = client.get("/audio/status/unknown-id", headers=auth_headers(owner_id))
    assert response.status_code == 404
    assert response.json()["detail"] == "Consultation not found"


def test_list_returns_summaries_newest_first(client, owner_id):
    headers = auth_headers(owner_id)
    first = client.post("/audio/upload", headers=headers, files={"audio": WAV}).json()["consultationId"]
    second = client.post("/audio/upload", headers=headers, files={"audio": WAV}).json()["consultationId"]
    wait_for_terminal(client, first, headers)
    wait_for_terminal(client, second, headers)

    body = client.get("/audio/consultations", headers=headers).json()

    assert body["count"] == 2
    assert [x["id"] for x in body["consultations"]] == [second, first]
    assert set(body["consultations"][0]) == {"id", "status", "patientName", "diagnosis", "createdAt", "updatedAt"}


def test_process_step_returns_final_record(client, owner_id):
    response = client.post("/audio/process-step", headers=auth_headers(owner_id), files={"audio": WAV})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["consultation"]["transcript"] == FALLBACK_TRANSCRIPT
    assert not os.path.exists(_stored_path(body["consultation"]["audioFile"]))


def test_delete_consultation(client, owner_id):
    headers = auth_headers(owner_id)
    consultation_id = client.post("/audio/upload", headers=headers, files={"audio": WAV}).json()["consultationId"]
    wait_for_terminal(client, consultation_id, headers)

    response = client.delete(f"/audio/consultation/{consultation_id}", headers=headers)
    assert response.status_code == 200
    assert response.json()["message"] == "Consultation deleted successfully"
    assert client.get(f"/audio/status/{consultation_id}", headers=headers).status_code == 404


def test_legacy_transcribe_returns_text_and_keeps_nothing(client, owner_id):
    before = set(os.listdir(settings.upload_dir))

    response = client.post(
        "/audio/transcribe",
        headers=auth_headers(owner_id),
        files={"audio": ("clip.bin", b"arbitrary bytes", "application/octet-stream")},
    )

    assert response.status_code == 200
    assert response.json()["text"] == FALLBACK_TRANSCRIPT
    assert set(os.listdir(settings.upload_dir)) <= before


def test_legacy_transcribe_rejects_empty_upload(client, owner_id):
    response = client.post(
        "/audio/transcribe",
        headers=auth_headers(owner_id),
        files={"audio": ("clip.wav", b"", "audio/wav")},
    )
    assert response.status_code == 400


def test_api_key_authentication(client, monkeypatch):
    monkeypatch.setattr(settings, "api_keys", ["integration-key-0123456789"])
    headers = {"X-API-Key": "integration-key-0123456789"}

    response = client.post("/audio/process-step", headers=headers, files={"audio": WAV})
    assert response.status_code == 200
    assert response.json()["consultation"]["ownerId"].startswith("api_key_")


def test_service_endpoints(client):
    assert client.get("/health").json()["status"] == "healthy"
    ready = client.get("/ready").json()
    assert ready["details"]["transcription"]["configured"] is False
    assert ready["details"]["summarization"]["fallback"] == "canned"
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_responses_carry_request_tracking_headers(client):
    response = client.get("/health")
    assert response.headers["X-Request-ID"]
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_process_step_for_vanished_consultation_is_404(client, owner_id, monkeypatch):
    async def vanished(consultation_id, audio):
        audio.delete()
        raise ConsultationNotFound(consultation_id)

    monkeypatch.setattr(main.pipeline, "process_step_by_step", vanished)

    response = client.post("/audio/process-step", headers=auth_headers(owner_id), files={"audio": WAV})

    assert response.status_code == 404
    assert response.json()["detail"] == "Consultation not found"
