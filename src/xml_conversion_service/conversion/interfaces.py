from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

ARTIFACT_KINDS: tuple[str, ...] = ("csv", "xlsx", "html")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    TERMINAL = frozenset({SUCCEEDED, FAILED})


@dataclass(frozen=True)
class StorageRoots:
    incoming: Path
    converted: Path


@dataclass(frozen=True)
class FileEntry:
    name: str
    size: int
    modified_at: datetime


@dataclass(frozen=True)
class Document:
    id: str
    original_name: str
    stored_name: str
    storage_path: Path
    size_bytes: int
    created_at: datetime

    @property
    def output_base_name(self) -> str:
        # stored names always end in ".xml" (any case)
        return Path(self.stored_name).stem

    def to_dict(self) -> dict[str, object]:
        return {
            "documentId": self.id,
            "storedName": self.stored_name,
            "originalName": self.original_name,
            "sizeBytes": self.size_bytes,
            "createdAt": isoformat_z(self.created_at),
        }


@dataclass
class ConversionJob:
    """One invocation of the converter for a document.

    State only moves forward: pending -> running -> succeeded | failed.
    """

    document_id: str
    stored_name: str
    output_base_name: str
    is_demo: bool = False
    state: str = JobStatus.PENDING
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def for_document(cls, document: Document, *, is_demo: bool = False) -> "ConversionJob":
        return cls(
            document_id=document.id,
            stored_name=document.stored_name,
            output_base_name=document.output_base_name,
            is_demo=is_demo,
        )

    @property
    def succeeded(self) -> bool:
        return self.state == JobStatus.SUCCEEDED

    def mark_running(self) -> None:
        if self.state != JobStatus.PENDING:
            raise RuntimeError(f"cannot start job in state {self.state}")
        self.state = JobStatus.RUNNING
        self.started_at = utcnow()

    def mark_succeeded(self, outputs: dict[str, str]) -> None:
        if self.state in JobStatus.TERMINAL:
            raise RuntimeError(f"job already finished ({self.state})")
        if not outputs:
            raise RuntimeError("a succeeded job needs at least one artifact")
        self.state = JobStatus.SUCCEEDED
        self.outputs = dict(outputs)
        self.finished_at = utcnow()

    def mark_failed(self, code: str, message: str) -> None:
        if self.state in JobStatus.TERMINAL:
            raise RuntimeError(f"job already finished ({self.state})")
        self.state = JobStatus.FAILED
        self.error_code = code
        self.error_message = message
        self.finished_at = utcnow()

    def to_dict(self) -> dict[str, object]:
        return {
            "documentId": self.document_id,
            "storedName": self.stored_name,
            "outputBaseName": self.output_base_name,
            "state": self.state,
            "exitCode": self.exit_code,
            "startedAt": isoformat_z(self.started_at),
            "finishedAt": isoformat_z(self.finished_at),
            "outputFiles": dict(self.outputs),
            "isDemo": self.is_demo,
        }


@dataclass(frozen=True)
class Artifact:
    file_name: str
    kind: str
    size_bytes: int
    modified_at: datetime
    source_stem: str


@dataclass(frozen=True)
class ArtifactGroup:
    id: str
    original_name: str
    newest_modified_at: datetime
    artifacts: dict[str, Artifact]


@dataclass(frozen=True)
class DocumentEntry:
    id: str
    stored_name: str
    original_name: str
    size_bytes: int
    modified_at: datetime
    converted: bool


@dataclass(frozen=True)
class DeleteResult:
    deleted: bool
    already_absent: bool = False
    related: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "deleted": self.deleted,
            "alreadyAbsent": self.already_absent,
            "related": list(self.related),
        }


class StorageGateway(Protocol):
    def ensure_roots(self) -> StorageRoots:
        ...

    def list_files(self, root: Path, extensions: frozenset[str] | None = None) -> list[FileEntry]:
        ...


class ConverterGateway(Protocol):
    async def run(self, document: Document) -> ConversionJob:
        """Convert a staged document and return the finished job.

        Implementations never raise for conversion failures; the outcome is
        recorded on the returned job.
        """


class SpawnCapability(Protocol):
    def can_spawn(self) -> bool:
        ...

    def mark_unavailable(self, reason: str) -> bool:
        """Record that processes cannot be spawned.

        Returns True only for the call that flipped the flag.
        """
