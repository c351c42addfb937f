from __future__ import annotations

import os
import re

import pytest

from xml_conversion_service.conversion.adapters import LocalStorage, PathGuard
from xml_conversion_service.conversion.errors import EmptyUploadError, InvalidFileTypeError, PayloadTooLargeError
from xml_conversion_service.conversion.intake import (
    UploadIntake,
    MAX_FILE_NAME_BYTES,
    document_from_path,
    sanitize_file_name,
    shorten_file_name,
    split_stored_name,
)

from .conftest import SAMPLE_XML


@pytest.fixture()
def intake(storage: LocalStorage, guard: PathGuard) -> UploadIntake:
    return UploadIntake(storage, guard, max_upload_bytes=1024)


def test_intake_stages_document(intake: UploadIntake, storage: LocalStorage) -> None:
    document = intake.intake(SAMPLE_XML, "catalog.xml")

    assert re.fullmatch(r"[0-9a-f]{32}", document.id)
    assert document.original_name == "catalog.xml"
    assert document.stored_name == f"{document.id}_catalog.xml"
    assert document.storage_path == storage.roots.incoming / document.stored_name
    assert document.storage_path.read_bytes() == SAMPLE_XML
    assert document.size_bytes == len(SAMPLE_XML)
    assert document.output_base_name == f"{document.id}_catalog"
    assert os.listdir(storage.roots.incoming) == [document.stored_name]


def test_intake_accepts_uppercase_extension(intake: UploadIntake) -> None:
    document = intake.intake(SAMPLE_XML, "EXPORT.XML")
    assert document.stored_name.endswith("_EXPORT.XML")
    assert document.output_base_name.endswith("_EXPORT")


@pytest.mark.parametrize("name", ["data.csv", "data.xml.exe", "xml", "", "notes.txt"])
def test_intake_rejects_non_xml(intake: UploadIntake, storage: LocalStorage, name: str) -> None:
    with pytest.raises(InvalidFileTypeError):
        intake.intake(SAMPLE_XML, name)
    assert os.listdir(storage.roots.incoming) == []


def test_intake_rejects_empty_payload(intake: UploadIntake, storage: LocalStorage) -> None:
    with pytest.raises(EmptyUploadError):
        intake.intake(b"", "empty.xml")
    assert os.listdir(storage.roots.incoming) == []


def test_intake_rejects_oversize_payload(intake: UploadIntake, storage: LocalStorage) -> None:
    with pytest.raises(PayloadTooLargeError):
        intake.intake(b"x" * 1025, "big.xml")
    assert os.listdir(storage.roots.incoming) == []


def test_intake_ids_are_unique(intake: UploadIntake) -> None:
    ids = {intake.intake(SAMPLE_XML, "same.xml").id for _ in range(20)}
    assert len(ids) == 20


def test_intake_sanitizes_hostile_names(intake: UploadIntake, storage: LocalStorage) -> None:
    document = intake.intake(SAMPLE_XML, "../../etc/pass wd;rm -rf.xml")
    assert document.original_name == "pass_wd_rm_-rf.xml"
    assert document.storage_path.parent == storage.roots.incoming


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("report 2024.xml", "report_2024.xml"),
        ("отчёт.xml", "_____.xml"),
        ("C:\\Users\\me\\data.xml", "data.xml"),
        ("a-b_c.d.xml", "a-b_c.d.xml"),
    ],
)
def test_sanitize_file_name(raw: str, expected: str) -> None:
    assert sanitize_file_name(raw) == expected


def test_split_stored_name() -> None:
    doc_id = "0123456789abcdef0123456789abcdef"
    assert split_stored_name(f"{doc_id}_catalog") == (doc_id, "catalog")
    assert split_stored_name("catalog") is None
    assert split_stored_name(f"{doc_id}catalog") is None
    assert split_stored_name("0123456789ABCDEF0123456789ABCDEF_catalog") is None


def test_document_from_path_round_trips(intake: UploadIntake) -> None:
    staged = intake.intake(SAMPLE_XML, "catalog.xml")
    rebuilt = document_from_path(staged.storage_path)
    assert rebuilt.id == staged.id
    assert rebuilt.original_name == "catalog.xml"
    assert rebuilt.stored_name == staged.stored_name
    assert rebuilt.size_bytes == staged.size_bytes


def test_intake_shortens_long_names(intake: UploadIntake, storage: LocalStorage) -> None:
    document = intake.intake(SAMPLE_XML, "a" * 300 + ".xml")

    assert document.stored_name.endswith("_" + "a" * 10 + ".xml")
    assert document.original_name.endswith(".xml")
    assert len(f"{document.output_base_name}.xlsx") == MAX_FILE_NAME_BYTES
    assert document.storage_path.read_bytes() == SAMPLE_XML
    assert os.listdir(storage.roots.incoming) == [document.stored_name]


def test_shorten_file_name_keeps_short_names() -> None:
    assert shorten_file_name("catalog.XML") == "catalog.XML"
    assert shorten_file_name("abcdef.xml", max_stem=3) == "abc.xml"
