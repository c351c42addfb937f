from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from xml_conversion_service.conversion.adapters import LocalStorage, PathGuard
from xml_conversion_service.conversion.catalog import ArtifactCatalog, group_identity
from xml_conversion_service.conversion.errors import NotFoundError, PathEscapeError

ID_A = "a" * 32
ID_B = "b" * 32


def _touch(path: Path, content: bytes, mtime: float) -> Path:
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture()
def catalog(storage: LocalStorage, guard: PathGuard) -> ArtifactCatalog:
    return ArtifactCatalog(storage, guard)


def test_group_identity() -> None:
    assert group_identity(f"{ID_A}_catalog") == (ID_A, "catalog.xml")
    assert group_identity("legacy-export") == ("legacy-export", "legacy-export")


def test_list_groups_by_source_newest_first(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    converted = storage.roots.converted
    _touch(converted / f"{ID_A}_catalog.csv", b"a,b", 1_000)
    _touch(converted / f"{ID_A}_catalog.html", b"<p/>", 3_000)
    _touch(converted / f"{ID_B}_orders.xlsx", b"PK", 2_000)
    _touch(converted / "legacy.csv", b"x", 500)
    _touch(converted / "notes.txt", b"ignored", 9_000)

    groups = catalog.list_groups()

    assert [g.id for g in groups] == [ID_A, ID_B, "legacy"]
    first = groups[0]
    assert first.original_name == "catalog.xml"
    assert list(first.artifacts) == ["csv", "html"]
    assert first.artifacts["csv"].size_bytes == 3
    assert first.artifacts["html"].source_stem == f"{ID_A}_catalog"
    assert first.newest_modified_at == datetime.fromtimestamp(3_000, tz=timezone.utc)
    assert groups[2].original_name == "legacy"


def test_list_groups_empty(catalog: ArtifactCatalog) -> None:
    assert catalog.list_groups() == []


def test_list_documents_flags_converted(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    incoming, converted = storage.roots.incoming, storage.roots.converted
    _touch(incoming / f"{ID_A}_catalog.xml", b"<a/>", 1_000)
    _touch(incoming / f"{ID_B}_orders.xml", b"<b/>", 2_000)
    _touch(converted / f"{ID_A}_catalog.csv", b"a", 1_500)

    documents = catalog.list_documents()

    assert [d.stored_name for d in documents] == [f"{ID_B}_orders.xml", f"{ID_A}_catalog.xml"]
    assert [d.converted for d in documents] == [False, True]
    assert documents[1].original_name == "catalog.xml"
    assert documents[1].id == ID_A


def test_find_document(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    _touch(storage.roots.incoming / f"{ID_A}_catalog.xml", b"<a/>", 1_000)
    document = catalog.find_document(f"{ID_A}_catalog.xml")
    assert document.id == ID_A
    assert document.size_bytes == 4

    with pytest.raises(NotFoundError):
        catalog.find_document(f"{ID_B}_missing.xml")
    with pytest.raises(PathEscapeError):
        catalog.find_document("../converted/x.xml")


def test_resolve_download(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    path = _touch(storage.roots.converted / f"{ID_A}_catalog.csv", b"a,b\n", 1_000)
    assert catalog.resolve_download(path.name) == path

    with pytest.raises(NotFoundError):
        catalog.resolve_download("nothing.csv")
    with pytest.raises(PathEscapeError):
        catalog.resolve_download("../incoming/secret.xml")


def test_delete_source_cascades_to_artifacts(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    incoming, converted = storage.roots.incoming, storage.roots.converted
    _touch(incoming / f"{ID_A}_catalog.xml", b"<a/>", 1_000)
    _touch(converted / f"{ID_A}_catalog.csv", b"a", 1_000)
    _touch(converted / f"{ID_A}_catalog.html", b"h", 1_000)
    _touch(converted / f"{ID_B}_orders.csv", b"b", 1_000)

    result = catalog.delete(f"{ID_A}_catalog.xml")

    assert result.deleted
    assert sorted(result.related) == [f"{ID_A}_catalog.csv", f"{ID_A}_catalog.html"]
    assert os.listdir(incoming) == []
    assert os.listdir(converted) == [f"{ID_B}_orders.csv"]


def test_delete_is_idempotent(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    _touch(storage.roots.converted / f"{ID_A}_catalog.csv", b"a", 1_000)

    first = catalog.delete(f"{ID_A}_catalog.csv")
    second = catalog.delete(f"{ID_A}_catalog.csv")

    assert first.to_dict() == {"deleted": True, "alreadyAbsent": False, "related": []}
    assert second.to_dict() == {"deleted": False, "alreadyAbsent": True, "related": []}


def test_delete_accepts_managed_absolute_path(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    path = _touch(storage.roots.converted / f"{ID_A}_catalog.csv", b"a", 1_000)
    assert catalog.delete(str(path)).deleted
    assert not path.exists()


@pytest.mark.parametrize("target", ["../data/x.csv", "/etc/passwd", "sub/x.csv"])
def test_delete_rejects_escapes(catalog: ArtifactCatalog, target: str) -> None:
    with pytest.raises(PathEscapeError):
        catalog.delete(target)


def test_delete_rejects_sibling_root(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    evil = Path(str(storage.roots.incoming) + "-evil")
    evil.mkdir()
    victim = _touch(evil / "x.xml", b"<a/>", 1_000)
    with pytest.raises(PathEscapeError):
        catalog.delete(str(victim))
    assert victim.exists()


def test_group_identity_uses_given_suffix() -> None:
    assert group_identity(f"{ID_A}_Catalog", ".XML") == (ID_A, "Catalog.XML")


def test_list_groups_keeps_staged_suffix(catalog: ArtifactCatalog, storage: LocalStorage) -> None:
    _touch(storage.roots.incoming / f"{ID_A}_Catalog.XML", b"<a/>", 1_000)
    _touch(storage.roots.converted / f"{ID_A}_Catalog.csv", b"a,b", 2_000)
    _touch(storage.roots.converted / f"{ID_B}_orders.csv", b"a,b", 1_500)

    groups = {g.id: g for g in catalog.list_groups()}

    assert groups[ID_A].original_name == "Catalog.XML"
    # source already deleted: fall back to the usual suffix
    assert groups[ID_B].original_name == "orders.xml"
