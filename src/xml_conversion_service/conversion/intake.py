from __future__ import annotations

import os
import re
import secrets
from pathlib import Path

import structlog

from .adapters import LocalStorage, PathGuard, file_mtime
from .errors import EmptyUploadError, InvalidFileTypeError, PayloadTooLargeError
from .interfaces import ARTIFACT_KINDS, Document

logger = structlog.get_logger()

ACCEPTED_EXTENSION = ".xml"
ID_HEX_LENGTH = 32
# common filesystem limit for one path component, in bytes
MAX_FILE_NAME_BYTES = 255
# stored stem plus the longest artifact suffix must stay within the limit
LONGEST_SUFFIX = max(len(f".{kind}") for kind in ARTIFACT_KINDS)
MAX_STEM_LENGTH = MAX_FILE_NAME_BYTES - LONGEST_SUFFIX - ID_HEX_LENGTH - 1

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")


def new_document_id() -> str:
    # 128 bits from the OS CSPRNG
    return secrets.token_hex(ID_HEX_LENGTH // 2)


def sanitize_file_name(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9._-]`` with ``_``.

    Only the final path component of ``name`` is kept, so client-side
    directory prefixes (``C:\\Users\\me\\x.xml``) do not leak into stored names.
    """
    base = re.split(r"[\\/]", name or "")[-1]
    return _UNSAFE_CHARS_RE.sub("_", base)


def shorten_file_name(name: str, max_stem: int = MAX_STEM_LENGTH) -> str:
    """Cut the stem of a sanitized name so stored and artifact names fit on disk."""
    stem, suffix = os.path.splitext(name)
    return stem[:max_stem] + suffix


class UploadIntake:
    """Stages uploaded XML documents in the ``incoming`` root."""

    def __init__(self, storage: LocalStorage, guard: PathGuard, *, max_upload_bytes: int | None = None) -> None:
        self._storage = storage
        self._guard = guard
        self._max_upload_bytes = max_upload_bytes

    def intake(self, raw: bytes, declared_file_name: str) -> Document:
        name = declared_file_name or ""
        if os.path.splitext(name)[1].lower() != ACCEPTED_EXTENSION:
            raise InvalidFileTypeError(f"{sanitize_file_name(name) or 'file'} is not an XML file")
        if not raw:
            raise EmptyUploadError()
        if self._max_upload_bytes is not None and len(raw) > self._max_upload_bytes:
            raise PayloadTooLargeError(f"upload exceeds {self._max_upload_bytes} bytes")

        original_name = shorten_file_name(sanitize_file_name(name))
        doc_id = new_document_id()
        stored_name = f"{doc_id}_{original_name}"

        roots = self._storage.ensure_roots()
        dest = self._guard.resolve(roots.incoming, stored_name)
        self._storage.write_atomic(roots.incoming, dest.name, bytes(raw))

        st = dest.stat()
        document = Document(
            id=doc_id,
            original_name=original_name,
            stored_name=stored_name,
            storage_path=dest,
            size_bytes=st.st_size,
            created_at=file_mtime(st.st_mtime),
        )
        logger.info("document_staged", stored_name=stored_name, size_bytes=document.size_bytes)
        return document


def split_stored_name(stem: str) -> tuple[str, str] | None:
    """Split ``{id}_{rest}`` into ``(id, rest)``; None when ``stem`` lacks the id prefix."""
    if len(stem) <= ID_HEX_LENGTH + 1 or stem[ID_HEX_LENGTH] != "_":
        return None
    doc_id = stem[:ID_HEX_LENGTH]
    if not _is_hex(doc_id):
        return None
    return doc_id, stem[ID_HEX_LENGTH + 1 :]


def _is_hex(value: str) -> bool:
    return all(c in "0123456789abcdef" for c in value)


def document_from_path(path: Path) -> Document:
    """Rebuild a Document record from a staged file."""
    stored_name = path.name
    st = path.stat()
    parts = split_stored_name(stored_name)
    if parts is None:
        doc_id, original_name = Path(stored_name).stem, stored_name
    else:
        doc_id, original_name = parts
    return Document(
        id=doc_id,
        original_name=original_name,
        stored_name=stored_name,
        storage_path=path,
        size_bytes=st.st_size,
        created_at=file_mtime(st.st_mtime),
    )
