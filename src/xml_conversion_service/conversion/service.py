from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import structlog

from .adapters import DemoConverter, LocalStorage, PathGuard, ProcessSpawnCapability
from .catalog import DOCUMENT_EXTENSIONS, ArtifactCatalog
from .errors import (
    ERROR_TYPES,
    ConflictError,
    ConversionFailedError,
    ConversionServiceError,
    SpawnError,
    StorageUnavailableError,
)
from .intake import UploadIntake
from .interfaces import (
    ArtifactGroup,
    ConversionJob,
    ConverterGateway,
    DeleteResult,
    Document,
    DocumentEntry,
    SpawnCapability,
)

logger = structlog.get_logger()


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if not self._refs[key]:
                del self._refs[key]
                del self._locks[key]


class ConversionService:
    """Core domain service orchestrating uploads, conversions and the file catalog.

    This service is framework-agnostic. The HTTP layer calls its async methods;
    blocking filesystem work is pushed to worker threads.

    Concurrency policy for one output base name: a ``process`` call that finds
    a conversion already in flight joins it and receives the same job. Deleting
    a document while its conversion is in flight raises ``ConflictError``.
    """

    def __init__(
        self,
        storage: LocalStorage,
        converter: ConverterGateway,
        *,
        capability: SpawnCapability | None = None,
        demo: ConverterGateway | None = None,
        guard: PathGuard | None = None,
        max_upload_bytes: int | None = None,
    ) -> None:
        self._storage = storage
        self._guard = guard or PathGuard()
        self._converter = converter
        self._demo = demo or DemoConverter(storage, self._guard)
        self._capability = capability or ProcessSpawnCapability()
        self._intake = UploadIntake(storage, self._guard, max_upload_bytes=max_upload_bytes)
        self._catalog = ArtifactCatalog(storage, self._guard)
        self._locks = KeyedLocks()
        self._inflight: dict[str, asyncio.Task[ConversionJob]] = {}

    @property
    def catalog(self) -> ArtifactCatalog:
        return self._catalog

    @property
    def capability(self) -> SpawnCapability:
        return self._capability

    @property
    def is_demo(self) -> bool:
        return not self._capability.can_spawn()

    async def start(self) -> None:
        try:
            roots = await asyncio.to_thread(self._storage.ensure_roots)
        except StorageUnavailableError:
            # operations retry root creation and keep failing until fixed
            logger.error("storage_unavailable_at_startup", data_dir=str(self._storage.base))
            return
        logger.info(
            "conversion_service_ready",
            incoming=str(roots.incoming),
            converted=str(roots.converted),
            demo_mode=self.is_demo,
        )

    async def stop(self) -> None:
        # let in-flight conversions publish their artifacts
        tasks = list(self._inflight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def upload(self, raw: bytes, file_name: str) -> Document:
        return await asyncio.to_thread(self._intake.intake, raw, file_name)

    async def process(self, stored_name: str) -> ConversionJob:
        document = await asyncio.to_thread(self._catalog.find_document, stored_name)
        job = await self._convert(document)
        _raise_for_job(job)
        return job

    async def upload_and_process(self, raw: bytes, file_name: str) -> tuple[Document, ConversionJob]:
        document = await self.upload(raw, file_name)
        job = await self._convert(document)
        _raise_for_job(job)
        return document, job

    async def list_groups(self) -> list[ArtifactGroup]:
        return await asyncio.to_thread(self._catalog.list_groups)

    async def list_documents(self) -> list[DocumentEntry]:
        return await asyncio.to_thread(self._catalog.list_documents)

    async def resolve_download(self, file_name: str) -> Path:
        return await asyncio.to_thread(self._catalog.resolve_download, file_name)

    async def delete(self, target: str) -> DeleteResult:
        root, path = self._catalog.locate(target)
        if root != self._storage.roots.incoming or path.suffix.lower() not in DOCUMENT_EXTENSIONS:
            return await asyncio.to_thread(self._catalog.delete, target)

        key = path.stem
        if key in self._inflight:
            raise ConflictError(f"{path.name} is being converted; retry once it finishes")
        async with self._locks.hold(key):
            return await asyncio.to_thread(self._catalog.delete, target)

    def in_flight(self, output_base_name: str) -> bool:
        return output_base_name in self._inflight

    async def _convert(self, document: Document) -> ConversionJob:
        key = document.output_base_name
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._run_exclusive(document), name=f"convert:{key}")
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
        else:
            logger.info("conversion_joined", stored_name=document.stored_name)
        # an aborted request must not abort the converter mid-write
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[ConversionJob]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # every requester may have gone away, so nobody else retrieves the error
        exc = None if task.cancelled() else task.exception()
        if exc is not None:
            logger.error("conversion_task_failed", key=key, error=type(exc).__name__, message=str(exc))

    async def _run_exclusive(self, document: Document) -> ConversionJob:
        async with self._locks.hold(document.output_base_name):
            if not self._capability.can_spawn():
                return await self._demo.run(document)

            job = await self._converter.run(document)
            if job.error_code != SpawnError.code:
                return job
            if self._capability.mark_unavailable(job.error_message or SpawnError.default_message):
                logger.warning("demo_mode_enabled", stored_name=document.stored_name, reason=job.error_message)
                return await self._demo.run(document)
            # spawning failed although another request already switched to demo mode
            logger.error("spawn_failed_after_demo_switch", stored_name=document.stored_name)
            return job


def _raise_for_job(job: ConversionJob) -> None:
    if job.succeeded:
        return
    cls = ERROR_TYPES.get(job.error_code or "", ConversionServiceError)
    if cls is ConversionFailedError:
        err: ConversionServiceError = ConversionFailedError(
            job.error_message or "", exit_code=job.exit_code, stderr=job.stderr
        )
    else:
        err = cls(job.error_message or "")
    err.job = job
    raise err
