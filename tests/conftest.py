import asyncio
import io
import os
import sys
import tempfile
import time
import uuid
from pathlib import Path

import pytest
from cryptography.fernet import Fernet
from starlette.datastructures import Headers


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
_TEST_DATA_DIR = Path(tempfile.gettempdir()) / f"medhira-tests-{uuid.uuid4().hex[:8]}"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)

os.environ["ENVIRONMENT"] = "development"
os.environ["API_SECRET_KEY"] = "test-secret-key-for-jwt-signing"
os.environ["DATA_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["OPENAI_API_KEY"] = ""
os.environ["ASSEMBLYAI_API_KEY"] = ""
os.environ["STORE_BACKEND"] = "memory"
os.environ["UPLOAD_DIR"] = str(_TEST_DATA_DIR / "uploads")
os.environ["SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "medhira.sqlite3")
os.environ["FALLBACK_DELAY_SECONDS"] = "0"
os.environ["RATE_LIMIT_REQUESTS"] = "1000"
os.environ["JOB_TIMEOUT_SECONDS"] = "0"


TERMINAL_STATUSES = ("completed", "failed")


def auth_headers(subject: str) -> dict:
    from medhira.core.security import security_manager

    token = security_manager.create_access_token({"sub": subject})
    return {"Authorization": f"Bearer {token}"}


def wait_for_terminal(client, consultation_id: str, headers: dict, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/audio/status/{consultation_id}", headers=headers)
        assert response.status_code == 200
        body = response.json()
        if body["status"] in TERMINAL_STATUSES:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"consultation {consultation_id} stuck in {body['status']}")
        time.sleep(0.05)


def make_upload(data: bytes, filename: str = "visit.wav", content_type: str = "audio/wav"):
    from fastapi import UploadFile

    return UploadFile(
        file=io.BytesIO(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


@pytest.fixture
def audio_processor(tmp_path):
    from medhira.core.security import data_encryption
    from medhira.services.audio_processor import AudioProcessor

    return AudioProcessor(
        upload_dir=str(tmp_path / "uploads"),
        supported_formats=["audio/mpeg", "audio/wav", "audio/webm"],
        max_file_size_bytes=1024,
        encryption=data_encryption,
    )


@pytest.fixture
def store_audio(audio_processor):
    def _store(data: bytes = b"RIFF-fake-wave-data", content_type: str = "audio/wav"):
        return asyncio.run(audio_processor.save_upload(make_upload(data, content_type=content_type)))

    return _store


@pytest.fixture
def owner_id():
    return f"user-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from medhira import main

    with TestClient(main.app) as test_client:
        yield test_client
