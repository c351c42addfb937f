from __future__ import annotations

import asyncio
import html
import io
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, NoReturn

import structlog

from .errors import PathEscapeError, StorageUnavailableError
from .interfaces import (
    ARTIFACT_KINDS,
    ConversionJob,
    Document,
    FileEntry,
    StorageRoots,
)

logger = structlog.get_logger()

INCOMING_DIRNAME = "incoming"
CONVERTED_DIRNAME = "converted"
TEMP_PREFIX = "."


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name or not name.strip():
        return False
    if "\x00" in name:
        return False
    if "/" in name or "\\" in name:
        return False
    if name in (".", ".."):
        return False
    if name != Path(name).name:
        return False
    return True


class PathGuard:
    """Turns client-supplied file names into paths under a managed root.

    Validation is purely lexical: nothing is read, written or stat'ed before a
    name has been accepted.
    """

    def resolve(self, root: Path, untrusted: str) -> Path:
        if not is_safe_basename(untrusted):
            self._reject(untrusted, "not a bare file name")
        root_str = os.path.normpath(str(root))
        candidate = os.path.normpath(os.path.join(root_str, untrusted))
        # trailing separator keeps "incoming-evil" from matching "incoming"
        if not candidate.startswith(root_str.rstrip(os.sep) + os.sep):
            self._reject(untrusted, "escapes managed root")
        return Path(candidate)

    def resolve_managed(self, target: str, roots: Iterable[Path]) -> tuple[Path, Path]:
        """Accept an absolute path that sits directly inside one of ``roots``.

        Returns ``(root, resolved_path)``.
        """
        if not isinstance(target, str) or "\x00" in target or not os.path.isabs(target):
            self._reject(target, "not an absolute managed path")
        normalized = os.path.normpath(target)
        parent, name = os.path.split(normalized)
        for root in roots:
            if parent == os.path.normpath(str(root)):
                return root, self.resolve(root, name)
        self._reject(target, "outside managed roots")

    @staticmethod
    def _reject(raw: object, reason: str) -> NoReturn:
        logger.warning("path_escape_rejected", raw_input=repr(raw), reason=reason)
        raise PathEscapeError()


class LocalStorage:
    """Owns the ``incoming`` and ``converted`` directories under ``data_dir``."""

    def __init__(self, data_dir: str | Path) -> None:
        self._base = Path(data_dir).resolve()
        self._roots = StorageRoots(
            incoming=self._base / INCOMING_DIRNAME,
            converted=self._base / CONVERTED_DIRNAME,
        )

    @property
    def base(self) -> Path:
        return self._base

    @property
    def roots(self) -> StorageRoots:
        return self._roots

    def ensure_roots(self) -> StorageRoots:
        for root in (self._roots.incoming, self._roots.converted):
            try:
                root.mkdir(mode=0o755, parents=True, exist_ok=True)
            except OSError as exc:
                logger.error("storage_root_unavailable", root=str(root), error=str(exc))
                raise StorageUnavailableError() from exc
            if not root.is_dir():
                logger.error("storage_root_not_a_directory", root=str(root))
                raise StorageUnavailableError()
        return self._roots

    def root_for(self, file_name: str) -> Path:
        if file_name.lower().endswith(".xml"):
            return self._roots.incoming
        return self._roots.converted

    def list_files(self, root: Path, extensions: frozenset[str] | None = None) -> list[FileEntry]:
        entries: list[FileEntry] = []
        try:
            with os.scandir(root) as it:
                for entry in it:
                    if entry.name.startswith(TEMP_PREFIX):
                        continue
                    if extensions is not None and Path(entry.name).suffix.lower() not in extensions:
                        continue
                    try:
                        if not entry.is_file(follow_symlinks=False):
                            continue
                        st = entry.stat(follow_symlinks=False)
                    except FileNotFoundError:
                        # removed between scandir and stat
                        continue
                    entries.append(FileEntry(name=entry.name, size=st.st_size, modified_at=file_mtime(st.st_mtime)))
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.error("storage_scan_failed", root=str(root), error=str(exc))
            raise StorageUnavailableError() from exc
        return entries

    def write_atomic(self, root: Path, name: str, data: bytes) -> Path:
        """Write ``data`` to ``root/name`` via a temp file and ``os.replace``."""
        dest = root / name
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f"{TEMP_PREFIX}tmp-", suffix=".part", dir=str(root))
        except OSError as exc:
            logger.error("storage_write_failed", file_name=name, error=str(exc))
            raise StorageUnavailableError() from exc
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, dest)
        except BaseException as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            if isinstance(exc, OSError):
                logger.error("storage_write_failed", file_name=name, error=str(exc))
                raise StorageUnavailableError() from exc
            raise
        return dest

    def make_staging_dir(self) -> Path:
        try:
            return Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}staging-", dir=str(self._roots.converted)))
        except OSError as exc:
            raise StorageUnavailableError() from exc


def file_mtime(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class ProcessSpawnCapability:
    """Process-wide "can we spawn the converter?" flag.

    Starts enabled unless forced off; the first failure flips it off for the
    rest of the process lifetime.
    """

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._lock = threading.Lock()
        self.reason: str | None = None if enabled else "forced by configuration"

    def can_spawn(self) -> bool:
        return self._enabled

    def mark_unavailable(self, reason: str) -> bool:
        with self._lock:
            if not self._enabled:
                return False
            self._enabled = False
            self.reason = reason
        logger.warning("spawn_unavailable", reason=reason)
        return True


DEMO_NOTICE = "DEMO placeholder - not a real conversion"


def demo_csv(document: Document) -> bytes:
    rows = [
        "id,name,value,note",
        f'1,"Demo item","Demo value","{DEMO_NOTICE} of {document.original_name}"',
    ]
    return ("\n".join(rows) + "\n").encode("utf-8")


def demo_html(document: Document) -> bytes:
    name = html.escape(document.original_name)
    body = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <title>Demo conversion of {name}</title>
  <style>
    body {{ font-family: Arial, sans-serif; margin: 20px; }}
    table {{ border-collapse: collapse; width: 100%; }}
    th, td {{ border: 1px solid #ddd; padding: 8px; text-align: left; }}
    th {{ background-color: #f2f2f2; }}
  </style>
</head>
<body>
  <h1>Demo table</h1>
  <p>{html.escape(DEMO_NOTICE)} of {name}.</p>
  <table>
    <tr><th>ID</th><th>Name</th><th>Value</th></tr>
    <tr><td>1</td><td>Demo item</td><td>Demo value</td></tr>
  </table>
</body>
</html>
"""
    return body.encode("utf-8")


def demo_xlsx(document: Document) -> bytes:
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.title = "Demo"
    ws.append(["id", "name", "value", "note"])
    ws.append([1, "Demo item", "Demo value", f"{DEMO_NOTICE} of {document.original_name}"])
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


DEMO_BUILDERS = {"csv": demo_csv, "xlsx": demo_xlsx, "html": demo_html}


class DemoConverter:
    """Stands in for the converter when processes cannot be spawned.

    Writes labelled placeholder artifacts under the same output base name the
    real converter would use, so the catalog sees the same shape either way.
    """

    def __init__(self, storage: LocalStorage, guard: PathGuard) -> None:
        self._storage = storage
        self._guard = guard

    async def run(self, document: Document) -> ConversionJob:
        return await self.simulate(document)

    async def simulate(self, document: Document) -> ConversionJob:
        job = ConversionJob.for_document(document, is_demo=True)
        job.mark_running()
        outputs = await asyncio.to_thread(self._write_placeholders, document)
        job.exit_code = 0
        job.stdout = f"{DEMO_NOTICE}\n"
        job.mark_succeeded(outputs)
        logger.info("demo_conversion_finished", stored_name=document.stored_name, outputs=sorted(outputs))
        return job

    def _write_placeholders(self, document: Document) -> dict[str, str]:
        roots = self._storage.ensure_roots()
        outputs: dict[str, str] = {}
        for kind in ARTIFACT_KINDS:
            name = f"{document.output_base_name}.{kind}"
            dest = self._guard.resolve(roots.converted, name)
            self._storage.write_atomic(roots.converted, dest.name, DEMO_BUILDERS[kind](document))
            outputs[kind] = name
        return outputs


__all__ = [
    "DemoConverter",
    "LocalStorage",
    "PathGuard",
    "ProcessSpawnCapability",
    "is_safe_basename",
]
