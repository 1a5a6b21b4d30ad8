"""
Attachment policy and content-addressed storage
"""
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List

import structlog

from bloodchain.config import Settings
from bloodchain.exceptions import ValidationError, NotFoundError
from bloodchain.services.hashing import sha256_file_digest

logger = structlog.get_logger()


@dataclass
class IncomingAttachment:
    """A file submitted alongside a message, before it is stored"""
    file_name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class StoredAttachment:
    """Attachment bytes written to the store"""
    file_name: str
    file_type: str
    file_size: int
    sha256: str
    url: str


class AttachmentStore:
    """
    Immutable, content-addressed attachment storage

    Files are stored under <root>/<sha256[:2]>/<sha256>. Writing bytes
    that are already present is a no-op, so uploads for different messages
    never conflict.
    """

    URL_PREFIX = "/communication/attachments"

    def __init__(self, settings: Settings):
        self.root = Path(settings.attachment_dir)
        self.max_bytes = settings.max_attachment_bytes
        self.max_count = settings.max_attachments_per_message
        self.allowed_types = {t.lower() for t in settings.allowed_attachment_types}

    def validate(self, attachments: List[IncomingAttachment]) -> None:
        """Server-side type/size policy; raises ValidationError"""
        if len(attachments) > self.max_count:
            raise ValidationError(f"At most {self.max_count} attachments per message")

        for item in attachments:
            content_type = (item.content_type or "").split(";")[0].strip().lower()
            if content_type not in self.allowed_types:
                raise ValidationError(f"File type not allowed: {item.content_type or 'unknown'} ({item.file_name})")
            if item.size == 0:
                raise ValidationError(f"Empty file: {item.file_name}")
            if item.size > self.max_bytes:
                raise ValidationError(
                    f"File too large: {item.file_name} ({item.size} bytes, limit {self.max_bytes})"
                )

    def path_for(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def put(self, item: IncomingAttachment) -> StoredAttachment:
        """Write attachment bytes (if new) and describe them"""
        digest = sha256_file_digest(item.data)
        path = self.path_for(digest)

        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so readers never see partial files
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(item.data)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            logger.info("attachment_stored", sha256=digest, size=item.size)

        return StoredAttachment(
            file_name=item.file_name,
            file_type=item.content_type.split(";")[0].strip().lower(),
            file_size=item.size,
            sha256=digest,
            url=f"{self.URL_PREFIX}/{digest}",
        )

    def open(self, digest: str) -> Path:
        """Path of stored bytes; NotFoundError if missing"""
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise NotFoundError("Attachment not found")
        path = self.path_for(digest)
        if not path.exists():
            raise NotFoundError("Attachment not found")
        return path
