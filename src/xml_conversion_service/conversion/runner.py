"""Drives the external XML converter for one staged document.

The converter is invoked as ``<command...> <input_path> <output_base>`` and is
expected to write any of ``<output_base>.csv|.xlsx|.html``. It writes into a
private staging directory; produced files are moved into the ``converted``
root only after the process has exited cleanly, so listings never observe a
partially written artifact.
"""
from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Sequence

import structlog

from .adapters import LocalStorage, PathGuard
from .errors import ConversionFailedError, ConversionTimeoutError, NoArtifactsProducedError, SpawnError
from .interfaces import ARTIFACT_KINDS, ConversionJob, Document, JobStatus

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SEC = 60.0
DEFAULT_CAPTURE_BYTES = 64 * 1024
READER_GRACE_SEC = 5.0
CHUNK = 8192


class TailBuffer:
    """Keeps only the last ``limit`` bytes written to it."""

    def __init__(self, limit: int) -> None:
        self.limit = max(0, limit)
        self.truncated = False
        self._data = bytearray()

    def write(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        overflow = len(self._data) - self.limit
        if overflow > 0:
            del self._data[:overflow]
            self.truncated = True

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


async def _drain(stream: asyncio.StreamReader | None, sink: TailBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(CHUNK)
        if not chunk:
            return
        sink.write(chunk)


def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass


class SubprocessRunner:
    def __init__(
        self,
        storage: LocalStorage,
        guard: PathGuard,
        command: Sequence[str],
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        capture_bytes: int = DEFAULT_CAPTURE_BYTES,
    ) -> None:
        if not command:
            raise ValueError("converter command must not be empty")
        self._storage = storage
        self._guard = guard
        self._command = list(command)
        self._timeout_sec = timeout_sec
        self._capture_bytes = capture_bytes

    @property
    def command(self) -> list[str]:
        return list(self._command)

    async def run(self, document: Document) -> ConversionJob:
        job = ConversionJob.for_document(document)
        roots = self._storage.ensure_roots()
        input_path = self._guard.resolve(roots.incoming, document.stored_name)
        staging = self._storage.make_staging_dir()
        try:
            output_base = staging / job.output_base_name
            await self._execute(job, input_path, output_base)
            if job.state == JobStatus.RUNNING:
                self._collect(job, staging, roots.converted)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        if job.succeeded:
            logger.info(
                "conversion_finished",
                stored_name=document.stored_name,
                outputs=sorted(job.outputs),
                duration_sec=_duration(job),
            )
        else:
            logger.warning(
                "conversion_failed",
                stored_name=document.stored_name,
                error_code=job.error_code,
                exit_code=job.exit_code,
                stderr=job.stderr[-2000:],
            )
        return job

    async def _execute(self, job: ConversionJob, input_path: Path, output_base: Path) -> None:
        argv = [*self._command, str(input_path), str(output_base)]
        logger.info("conversion_started", stored_name=job.stored_name, argv=argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            # e.g. missing interpreter or a sandbox that forbids exec
            job.mark_failed(SpawnError.code, f"{SpawnError.default_message}: {exc.strerror or exc}")
            return

        job.mark_running()
        stdout, stderr = TailBuffer(self._capture_bytes), TailBuffer(self._capture_bytes)
        readers = [
            asyncio.create_task(_drain(proc.stdout, stdout)),
            asyncio.create_task(_drain(proc.stderr, stderr)),
        ]
        timed_out = False
        try:
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._timeout_sec)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("conversion_timeout", stored_name=job.stored_name, timeout_sec=self._timeout_sec)
                _kill(proc)
                await proc.wait()
        except BaseException:
            _kill(proc)
            raise
        finally:
            # grandchildren may keep the pipes open after the converter exits
            _, pending = await asyncio.wait(readers, timeout=READER_GRACE_SEC)
            for task in pending:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            job.stdout = stdout.text()
            job.stderr = stderr.text()

        job.exit_code = proc.returncode
        if timed_out:
            job.mark_failed(
                ConversionTimeoutError.code,
                f"conversion exceeded {self._timeout_sec:g}s and was terminated",
            )
        elif proc.returncode != 0:
            job.mark_failed(ConversionFailedError.code, f"converter exited with code {proc.returncode}")

    def _collect(self, job: ConversionJob, staging: Path, converted_root: Path) -> None:
        outputs: dict[str, str] = {}
        for kind in ARTIFACT_KINDS:
            name = f"{job.output_base_name}.{kind}"
            produced = staging / name
            try:
                size = produced.stat().st_size if produced.is_file() else 0
            except OSError:
                size = 0
            if size <= 0:
                continue
            dest = self._guard.resolve(converted_root, name)
            os.replace(produced, dest)
            outputs[kind] = name
        if not outputs:
            job.mark_failed(NoArtifactsProducedError.code, NoArtifactsProducedError.default_message)
            return
        self._drop_stale(job, outputs, converted_root)
        job.mark_succeeded(outputs)

    def _drop_stale(self, job: ConversionJob, outputs: dict[str, str], converted_root: Path) -> None:
        # a document's group shows exactly what its latest successful run produced
        for kind in ARTIFACT_KINDS:
            if kind in outputs:
                continue
            stale = self._guard.resolve(converted_root, f"{job.output_base_name}.{kind}")
            try:
                stale.unlink()
            except FileNotFoundError:
                continue
            logger.info("stale_artifact_removed", file_name=stale.name, stored_name=job.stored_name)


def _duration(job: ConversionJob) -> float | None:
    if job.started_at is None or job.finished_at is None:
        return None
    return round((job.finished_at - job.started_at).total_seconds(), 3)
