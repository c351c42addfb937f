"""Catalog of staged documents and converted artifacts.

The directories are the system of record: every call re-scans them, nothing is
cached between requests.
"""
from __future__ import annotations

import os
from pathlib import Path

import structlog

from .adapters import LocalStorage, PathGuard
from .errors import NotFoundError, StorageUnavailableError
from .intake import document_from_path, split_stored_name
from .interfaces import (
    ARTIFACT_KINDS,
    Artifact,
    ArtifactGroup,
    DeleteResult,
    Document,
    DocumentEntry,
)

logger = structlog.get_logger()

ARTIFACT_EXTENSIONS = frozenset(f".{kind}" for kind in ARTIFACT_KINDS)
DOCUMENT_EXTENSIONS = frozenset({".xml"})


def group_identity(stem: str, suffix: str = ".xml") -> tuple[str, str]:
    """Return ``(id, original_name)`` for an artifact stem.

    ``suffix`` is the staged document's own suffix when it is still around,
    so ``Catalog.XML`` keeps its case. Stems that do not follow
    ``{id}_{originalStem}`` are their own group.
    """
    parts = split_stored_name(stem)
    if parts is None:
        return stem, stem
    doc_id, original_stem = parts
    return doc_id, f"{original_stem}{suffix}"


class ArtifactCatalog:
    def __init__(self, storage: LocalStorage, guard: PathGuard) -> None:
        self._storage = storage
        self._guard = guard

    def list_groups(self) -> list[ArtifactGroup]:
        roots = self._storage.roots
        by_stem: dict[str, dict[str, Artifact]] = {}
        for entry in self._storage.list_files(roots.converted, ARTIFACT_EXTENSIONS):
            stem, ext = os.path.splitext(entry.name)
            kind = ext[1:].lower()
            by_stem.setdefault(stem, {})[kind] = Artifact(
                file_name=entry.name,
                kind=kind,
                size_bytes=entry.size,
                modified_at=entry.modified_at,
                source_stem=stem,
            )

        suffixes = dict(
            os.path.splitext(entry.name) for entry in self._storage.list_files(roots.incoming, DOCUMENT_EXTENSIONS)
        )

        groups = []
        for stem, artifacts in by_stem.items():
            doc_id, original_name = group_identity(stem, suffixes.get(stem, ".xml"))
            groups.append(
                ArtifactGroup(
                    id=doc_id,
                    original_name=original_name,
                    newest_modified_at=max(a.modified_at for a in artifacts.values()),
                    artifacts={kind: artifacts[kind] for kind in ARTIFACT_KINDS if kind in artifacts},
                )
            )
        groups.sort(key=lambda g: (g.newest_modified_at, g.id), reverse=True)
        return groups

    def list_documents(self) -> list[DocumentEntry]:
        roots = self._storage.roots
        artifact_stems = {
            os.path.splitext(entry.name)[0]
            for entry in self._storage.list_files(roots.converted, ARTIFACT_EXTENSIONS)
        }
        documents = []
        for entry in self._storage.list_files(roots.incoming, DOCUMENT_EXTENSIONS):
            stem = os.path.splitext(entry.name)[0]
            parts = split_stored_name(stem)
            if parts is None:
                doc_id, original_name = stem, entry.name
            else:
                doc_id, original_name = parts[0], entry.name[len(parts[0]) + 1 :]
            documents.append(
                DocumentEntry(
                    id=doc_id,
                    stored_name=entry.name,
                    original_name=original_name,
                    size_bytes=entry.size,
                    modified_at=entry.modified_at,
                    converted=stem in artifact_stems,
                )
            )
        documents.sort(key=lambda d: (d.modified_at, d.stored_name), reverse=True)
        return documents

    def find_document(self, stored_name: str) -> Document:
        path = self._guard.resolve(self._storage.roots.incoming, stored_name)
        if path.suffix.lower() not in DOCUMENT_EXTENSIONS or not path.is_file():
            raise NotFoundError(f"document {stored_name} not found")
        return document_from_path(path)

    def resolve_download(self, file_name: str) -> Path:
        path = self._guard.resolve(self._storage.root_for(file_name), file_name)
        if not path.is_file():
            raise NotFoundError(f"{file_name} not found")
        return path

    def locate(self, target: str) -> tuple[Path, Path]:
        """Map a bare name or managed absolute path to ``(root, path)``."""
        roots = self._storage.roots
        if os.path.isabs(target):
            return self._guard.resolve_managed(target, (roots.incoming, roots.converted))
        root = self._storage.root_for(target)
        return root, self._guard.resolve(root, target)

    def related_artifacts(self, document_path: Path) -> list[Path]:
        converted = self._storage.roots.converted
        return [self._guard.resolve(converted, f"{document_path.stem}.{kind}") for kind in ARTIFACT_KINDS]

    def delete(self, target: str) -> DeleteResult:
        root, path = self.locate(target)

        related: list[str] = []
        if root == self._storage.roots.incoming and path.suffix.lower() in DOCUMENT_EXTENSIONS:
            for artifact in self.related_artifacts(path):
                try:
                    artifact.unlink()
                except FileNotFoundError:
                    continue
                related.append(artifact.name)
                logger.info("file_deleted", file_name=artifact.name, cascade_from=path.name)

        try:
            path.unlink()
        except FileNotFoundError:
            return DeleteResult(deleted=False, already_absent=True, related=tuple(related))
        except IsADirectoryError as exc:
            raise NotFoundError(f"{path.name} not found") from exc

        if path.exists():
            logger.error("delete_not_effective", file_name=path.name)
            raise StorageUnavailableError(f"{path.name} could not be deleted")
        logger.info("file_deleted", file_name=path.name)
        return DeleteResult(deleted=True, related=tuple(related))
