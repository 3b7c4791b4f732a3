"""Upload validation — extension allow-list, content-type consistency, size
limit, magic-number signatures and a shallow scan for script/executable content.
"""

import logging
import os

from cms_backend.config import settings
from cms_backend.models import FileType

logger = logging.getLogger(__name__)

FILE_SIGNATURES: dict[str, list[bytes]] = {
    # Images
    ".jpg": [b"\xff\xd8\xff"],
    ".jpeg": [b"\xff\xd8\xff"],
    ".png": [b"\x89PNG\r\n\x1a\n"],
    ".gif": [b"GIF8"],
    ".webp": [b"RIFF"],
    ".bmp": [b"BM"],
    ".svg": [b"<svg", b"<?xml"],
    # Documents
    ".pdf": [b"%PDF"],
    ".docx": [b"PK\x03\x04", b"PK\x07\x08"],
    ".xlsx": [b"PK\x03\x04", b"PK\x07\x08"],
    ".pptx": [b"PK\x03\x04", b"PK\x07\x08"],
    ".doc": [b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"],
    ".xls": [b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"],
    ".ppt": [b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"],
    ".rtf": [b"{\\rtf"],
    # Video
    ".mp4": [b"\x00\x00\x00\x18ftyp", b"\x00\x00\x00\x20ftyp"],
    ".avi": [b"RIFF"],
    ".mov": [b"\x00\x00\x00\x14ftyp"],
    ".wmv": [b"\x30\x26\xb2\x75\x8e\x66\xcf\x11"],
    ".flv": [b"FLV\x01"],
    ".webm": [b"\x1a\x45\xdf\xa3"],
    # Audio
    ".mp3": [b"\xff\xfb", b"ID3"],
    ".wav": [b"RIFF"],
    ".ogg": [b"OggS"],
    ".flac": [b"fLaC"],
    # Archives
    ".zip": [b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08"],
    ".rar": [b"Rar!\x1a\x07\x00", b"Rar!\x1a\x07\x01\x00"],
    ".7z": [b"7z\xbc\xaf\x27\x1c"],
    ".gz": [b"\x1f\x8b\x08"],
}

# .tar carries its magic at offset 257
TAR_MAGIC_OFFSET = 257
TAR_SIGNATURES = [b"ustar\x0000", b"ustar  \x00"]

VALID_CONTENT_TYPES: dict[str, tuple[str, ...]] = {
    ".jpg": ("image/jpeg", "image/jpg"),
    ".jpeg": ("image/jpeg", "image/jpg"),
    ".png": ("image/png",),
    ".gif": ("image/gif",),
    ".bmp": ("image/bmp", "image/x-windows-bmp"),
    ".webp": ("image/webp",),
    ".svg": ("image/svg+xml", "text/xml", "application/xml"),
    ".pdf": ("application/pdf",),
    ".doc": ("application/msword",),
    ".docx": ("application/vnd.openxmlformats-officedocument.wordprocessingml.document",),
    ".xls": ("application/vnd.ms-excel",),
    ".xlsx": ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",),
    ".txt": ("text/plain",),
    ".csv": ("text/csv", "text/plain", "application/csv"),
    ".mp4": ("video/mp4",),
    ".mp3": ("audio/mpeg", "audio/mp3"),
    ".zip": ("application/zip", "application/x-zip-compressed"),
}

SUSPICIOUS_PATTERNS = (
    "<script", "javascript:", "vbscript:", "onload=", "onerror=",
    "<?php", "<%", "eval(", "exec(", "system(",
    "cmd.exe", "powershell", "/bin/sh", "/bin/bash",
)

EXECUTABLE_SIGNATURES = (
    b"MZ",                 # PE
    b"\x7fELF",            # ELF
    b"\xfe\xed\xfa\xce",   # Mach-O 32-bit
    b"\xfe\xed\xfa\xcf",   # Mach-O 64-bit
)

TEXT_EXTENSIONS = {".txt", ".csv", ".rtf", ".svg", ".xml", ".html", ".htm", ".css", ".js", ".json"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg"}
VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".ogg", ".flac"}
DOCUMENT_EXTENSIONS = {".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt", ".csv", ".rtf"}
ARCHIVE_EXTENSIONS = {".zip", ".rar", ".7z", ".tar", ".gz"}

TEXT_SCAN_BYTES = 8192
BINARY_SCAN_BYTES = 1024


def get_extension(file_name: str) -> str:
    return os.path.splitext(file_name or "")[1].lower()


class FileValidationService:
    """Stateless checks on an upload's name, declared type and bytes."""

    def __init__(self, max_file_size: int | None = None, allowed_extensions: list[str] | None = None):
        self.max_file_size = max_file_size or settings.max_file_size
        self.allowed_extensions = [e.lower() for e in (allowed_extensions or settings.allowed_extension_list)]

    def is_allowed_file_type(self, file_name: str, content_type: str) -> bool:
        if not file_name:
            return False
        extension = get_extension(file_name)
        if extension not in self.allowed_extensions:
            logger.warning("File type not allowed | extension=%s", extension)
            return False
        allowed = VALID_CONTENT_TYPES.get(extension)
        if allowed and not (content_type or "").lower().startswith(allowed):
            logger.warning("Content type mismatch | content_type=%s | extension=%s", content_type, extension)
            return False
        return True

    def is_allowed_file_size(self, size: int) -> bool:
        if size <= 0:
            logger.warning("Invalid file size | size=%d", size)
            return False
        if size > self.max_file_size:
            logger.warning("File size exceeds limit | size=%d | max=%d", size, self.max_file_size)
            return False
        return True

    @staticmethod
    def has_valid_signature(content: bytes, extension: str) -> bool:
        if extension == ".tar":
            magic = content[TAR_MAGIC_OFFSET:TAR_MAGIC_OFFSET + 8]
            return any(magic.startswith(s) for s in TAR_SIGNATURES)
        signatures = FILE_SIGNATURES.get(extension)
        if not signatures:
            return True
        return any(content.startswith(s) for s in signatures)

    @staticmethod
    def contains_suspicious_content(content: bytes, extension: str) -> bool:
        if extension in TEXT_EXTENSIONS:
            text = content[:TEXT_SCAN_BYTES].decode("utf-8", errors="ignore").lower()
            return any(p in text for p in SUSPICIOUS_PATTERNS)
        head = content[:BINARY_SCAN_BYTES]
        return any(head.startswith(s) for s in EXECUTABLE_SIGNATURES)

    def is_safe_file(self, content: bytes, file_name: str) -> bool:
        if not content:
            return False
        extension = get_extension(file_name)
        if not self.has_valid_signature(content, extension):
            logger.warning("File signature validation failed | file=%s", file_name)
            return False
        if self.contains_suspicious_content(content, extension):
            logger.warning("File contains suspicious content | file=%s", file_name)
            return False
        return True

    def validate(self, content: bytes, file_name: str, content_type: str) -> list[str]:
        """All validation errors for an upload; empty when it is acceptable."""
        errors = []
        if not self.is_allowed_file_type(file_name, content_type):
            errors.append(f"File type not allowed: {get_extension(file_name) or file_name}")
        if not self.is_allowed_file_size(len(content)):
            errors.append(f"File size {len(content)} bytes is outside the allowed range (max {self.max_file_size})")
        if content and not self.is_safe_file(content, file_name):
            errors.append("File failed security validation")
        return errors

    def is_image_file(self, file_name: str, content_type: str) -> bool:
        extension = get_extension(file_name)
        return extension in IMAGE_EXTENSIONS and (
            (content_type or "").lower().startswith("image/") or extension == ".svg"
        )

    def is_video_file(self, file_name: str, content_type: str) -> bool:
        return get_extension(file_name) in VIDEO_EXTENSIONS and (content_type or "").lower().startswith("video/")

    def is_document_file(self, file_name: str, content_type: str) -> bool:
        return get_extension(file_name) in DOCUMENT_EXTENSIONS

    def get_file_type(self, file_name: str, content_type: str) -> FileType:
        if self.is_image_file(file_name, content_type):
            return FileType.IMAGE
        if self.is_video_file(file_name, content_type):
            return FileType.VIDEO
        if (content_type or "").lower().startswith("audio/") or get_extension(file_name) in AUDIO_EXTENSIONS:
            return FileType.AUDIO
        if self.is_document_file(file_name, content_type):
            return FileType.DOCUMENT
        if get_extension(file_name) in ARCHIVE_EXTENSIONS:
            return FileType.ARCHIVE
        return FileType.OTHER
