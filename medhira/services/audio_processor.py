"""
Audio upload validation and the ephemeral encrypted holding area
"""

import io
import os
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from fastapi import UploadFile, status
from mutagen import File as MutagenFile

from medhira.config import Settings
from medhira.core.exceptions import AudioValidationError
from medhira.core.logging import get_logger
from medhira.core.security import DataEncryption

logger = get_logger(__name__)


def normalize_content_type(content_type: Optional[str]) -> str:
    """'audio/webm;codecs=opus' -> 'audio/webm'"""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


@dataclass
class AudioHandle:
    """A readable handle to one uploaded audio file; write-once, read-once, delete-guaranteed."""

    path: str
    original_name: str
    mime_type: str
    size: int
    encryption: DataEncryption

    @property
    def stored_name(self) -> str:
        return os.path.basename(self.path)

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def is_empty(self) -> bool:
        return not self.exists() or os.path.getsize(self.path) == 0

    def read(self) -> bytes:
        """Returns the decrypted audio bytes."""
        with open(self.path, "rb") as f:
            encrypted_data = f.read()
        return self.encryption.decrypt_data(encrypted_data)

    def delete(self) -> bool:
        """Removes the file; safe to call more than once."""
        if not os.path.exists(self.path):
            return False
        try:
            os.unlink(self.path)
            logger.info(f"Cleaned up temporary audio file: {self.path}")
            return True
        except FileNotFoundError:
            return False


class AudioProcessor:
    """Audio-Validierung und Zwischenspeicherung"""

    _extensions = {
        "audio/mpeg": ".mp3",
        "audio/wav": ".wav",
        "audio/mp4": ".mp4",
        "audio/m4a": ".m4a",
        "audio/ogg": ".ogg",
        "audio/webm": ".webm",
    }

    def __init__(
        self,
        upload_dir: str,
        supported_formats: List[str],
        max_file_size_bytes: int,
        encryption: DataEncryption,
    ):
        self.upload_dir = upload_dir
        self.supported_formats = [normalize_content_type(x) for x in supported_formats]
        self.max_file_size_bytes = max_file_size_bytes
        self.encryption = encryption
        os.makedirs(self.upload_dir, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Settings, encryption: DataEncryption) -> "AudioProcessor":
        return cls(
            upload_dir=settings.upload_dir,
            supported_formats=settings.supported_audio_formats,
            max_file_size_bytes=settings.max_file_size_bytes,
            encryption=encryption,
        )

    def validate(self, audio_data: bytes, content_type: Optional[str], check_format: bool = True) -> str:
        """
        Rejects empty, oversized and non-audio uploads.
        Returns the normalized content type.
        """
        if not audio_data:
            raise AudioValidationError("Audio file is empty")

        if len(audio_data) > self.max_file_size_bytes:
            raise AudioValidationError(
                f"Audio file exceeds the {self.max_file_size_bytes // (1024 * 1024)} MB limit",
                status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            )

        mime_type = normalize_content_type(content_type)
        if check_format and mime_type not in self.supported_formats:
            logger.warning(
                f"Unsupported audio format: {mime_type}. Supported: {self.supported_formats}"
            )
            raise AudioValidationError(
                "Invalid file type. Please upload an audio file (MP3, WAV, M4A, etc.)"
            )
        return mime_type

    async def save_upload(self, file: Optional[UploadFile], check_format: bool = True) -> AudioHandle:
        """
        Validates the uploaded audio and stores it encrypted in the upload directory.
        Rejected uploads never reach the disk.
        """
        if file is None or not file.filename:
            raise AudioValidationError("Please upload an audio file")

        audio_data = await file.read()
        mime_type = self.validate(audio_data, file.content_type, check_format=check_format)
        logger.info(f"Received {len(audio_data)} bytes of audio data ({mime_type}).")

        encrypted_data = self.encryption.encrypt_data(audio_data)
        suffix = self._extensions.get(mime_type, ".tmp") + ".enc"
        with tempfile.NamedTemporaryFile(dir=self.upload_dir, suffix=suffix, delete=False) as temp_file:
            temp_file.write(encrypted_data)
            temp_file_path = temp_file.name
        logger.info(f"Encrypted audio saved temporarily to {temp_file_path}")

        return AudioHandle(
            path=temp_file_path,
            original_name=file.filename,
            mime_type=mime_type,
            size=len(audio_data),
            encryption=self.encryption,
        )

    def extract_duration(self, audio: AudioHandle) -> Optional[float]:
        """Extracts the duration in seconds using mutagen, None when unknown."""
        try:
            parsed = MutagenFile(io.BytesIO(audio.read()))
            if parsed is None or not hasattr(parsed.info, "length"):
                return None
            return float(parsed.info.length)
        except Exception as e:
            logger.warning(f"Could not extract metadata using mutagen: {e}")
            return None
