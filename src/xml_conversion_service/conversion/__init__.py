"""
Domain layer for XML document conversion.
Provides the storage, path-guard, runner and catalog pieces plus the service
that orchestrates them, so front-ends (HTTP or others) share the same core
logic.
"""

from .adapters import DemoConverter, LocalStorage, PathGuard, ProcessSpawnCapability
from .catalog import ArtifactCatalog
from .errors import ConversionServiceError
from .interfaces import ConversionJob, Document, JobStatus, SpawnCapability
from .runner import SubprocessRunner
from .service import ConversionService
