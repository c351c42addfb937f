from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Callable

import pytest

from xml_conversion_service.conversion import (
    ConversionService,
    LocalStorage,
    PathGuard,
    ProcessSpawnCapability,
    SubprocessRunner,
)

SAMPLE_XML = b'<?xml version="1.0" encoding="UTF-8"?>\n<catalog><item id="1"><name>Widget</name></item></catalog>\n'

# Bodies for a stand-in converter; each runs with ``input_path`` and ``output_base`` bound.
CONVERTER_BEHAVIOURS = {
    "csv_html": """
        sys.stderr.write("warning: attribute 'id' flattened\\n")
        with open(input_path, "rb") as f:
            size = len(f.read())
        with open(output_base + ".csv", "w") as f:
            f.write("id,name\\n1,Widget\\n")
        with open(output_base + ".html", "w") as f:
            f.write("<table><tr><td>Widget</td></tr></table>")
        print(f"converted {size} bytes")
    """,
    "all": """
        for ext in ("csv", "xlsx", "html"):
            with open(output_base + "." + ext, "wb") as f:
                f.write(("converted " + ext).encode())
    """,
    "fail": """
        sys.stderr.write("boom: malformed document\\n")
        sys.exit(3)
    """,
    "nothing": """
        print("all good, honestly")
    """,
    "empty": """
        open(output_base + ".csv", "w").close()
    """,
    "sleep": """
        time.sleep(30)
    """,
    "slow": """
        with open(output_base + ".csv", "w") as f:
            f.write("id,name\\n")
            f.flush()
            time.sleep(0.8)
            f.write("1,Widget\\n")
    """,
    "argv": """
        with open(output_base + ".csv", "w") as f:
            json.dump(sys.argv[1:], f)
    """,
    "noisy": """
        sys.stderr.write("x" * 10000)
        with open(output_base + ".csv", "w") as f:
            f.write("id\\n1\\n")
    """,
}


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture()
def storage(data_dir: Path) -> LocalStorage:
    storage = LocalStorage(data_dir)
    storage.ensure_roots()
    return storage


@pytest.fixture()
def guard() -> PathGuard:
    return PathGuard()


@pytest.fixture()
def converter_command(tmp_path: Path) -> Callable[[str], list[str]]:
    """Build a command line for a stand-in converter with the given behaviour."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _command(behaviour: str) -> list[str]:
        script = bin_dir / f"convert_{behaviour}.py"
        header = "import json, os, sys, time\ninput_path, output_base = sys.argv[1], sys.argv[2]\n"
        script.write_text(header + textwrap.dedent(CONVERTER_BEHAVIOURS[behaviour]), encoding="utf-8")
        return [sys.executable, str(script)]

    return _command


@pytest.fixture()
def make_service(
    storage: LocalStorage, guard: PathGuard, converter_command: Callable[[str], list[str]]
) -> Callable[..., ConversionService]:
    def _make(behaviour: str = "csv_html", *, can_spawn: bool = True, timeout_sec: float = 30.0) -> ConversionService:
        runner = SubprocessRunner(storage, guard, converter_command(behaviour), timeout_sec=timeout_sec)
        return ConversionService(
            storage,
            runner,
            capability=ProcessSpawnCapability(enabled=can_spawn),
            guard=guard,
            max_upload_bytes=1024 * 1024,
        )

    return _make
