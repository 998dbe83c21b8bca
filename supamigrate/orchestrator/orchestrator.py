"""
Main orchestrator for migrate, backup and restore.

Every operation is a fixed sequence of phases::

    init -> schema_data -> storage -> functions -> finalize

Phases run one after another and each has its own failure boundary: a
failed phase is recorded in the MigrationOutcome and the next phase still
runs. Only a failure during init (unresolvable endpoints or credentials,
an unreadable archive) aborts the operation before anything is touched.
"""

import asyncio
import fnmatch
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from supamigrate.backup.archive import ArchiveHandle, ArchiveManager
from supamigrate.backup.manifest import (
    FUNCTIONS_DIR,
    STORAGE_DIR,
    BackupManifest,
    BucketComponent,
    DatabaseComponent,
    FunctionComponent,
)
from supamigrate.core.exceptions import (
    ArchiveCorruptionError,
    ConfigurationError,
    ExternalToolError,
    RestoreError,
    SupamigrateError,
)
from supamigrate.database.dump import PgDump
from supamigrate.database.restore import PgRestore, RestoreStatus, StatementFailure
from supamigrate.database.stream import DumpStream
from supamigrate.database.transform import SqlTransformer, TransformMode
from supamigrate.functions.client import FunctionsClient
from supamigrate.functions.sync import FunctionOutcome, FunctionSync, FunctionSyncOptions, FunctionSyncResult
from supamigrate.models.config import ProjectEndpoint, SupamigrateConfig, resolve_endpoint
from supamigrate.models.session import (
    ItemFailure,
    MigrationOutcome,
    MigrationScope,
    PhaseName,
    PhaseResult,
    PhaseStatus,
)
from supamigrate.transfer.base import BucketInfo, ObjectStore, TransferAction, TransferResult
from supamigrate.transfer.engine import TransferEngine, TransferOptions
from supamigrate.transfer.local import TEMP_PREFIX, ArchiveObjectStore
from supamigrate.transfer.progress import ProgressCallback
from supamigrate.transfer.storage import StorageClient
from supamigrate.utils.helpers import calculate_file_checksum, format_bytes
from supamigrate.utils.logging import redact, register_secrets

logger = logging.getLogger(__name__)

ProjectRef = Union[str, ProjectEndpoint]
PhaseHandler = Callable[[PhaseResult], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Step:
    """One phase of an operation: a handler, or the reason it is skipped."""
    name: PhaseName
    handler: Optional[PhaseHandler] = None
    skip_reason: str = ""
    description: str = ""


@dataclass
class DiagnosticCheck:
    """One line of the doctor report."""
    name: str
    ok: bool
    detail: str = ""


@dataclass
class _BackupState:
    handle: Optional[ArchiveHandle] = None
    database: Optional[DatabaseComponent] = None
    buckets: List[BucketComponent] = field(default_factory=list)
    functions: List[FunctionComponent] = field(default_factory=list)


class MigrationOrchestrator:
    """
    Coordinates the database, storage and functions pipelines.

    The dump/restore drivers are injectable, and so is the HTTP transport
    used for the storage and management APIs, which is how the tests run
    whole operations against in-memory fakes.
    """

    def __init__(
        self,
        config: Optional[SupamigrateConfig] = None,
        dump: Optional[PgDump] = None,
        restore: Optional[PgRestore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        dry_run: bool = False
    ):
        self.config = config or SupamigrateConfig()
        defaults = self.config.defaults
        self.dump = dump or PgDump(stall_timeout=defaults.subprocess_stall_timeout)
        self.restore = restore or PgRestore(stall_timeout=defaults.subprocess_stall_timeout)
        self.transport = transport
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event or asyncio.Event()
        self.dry_run = dry_run
        self._phase_callbacks: List[Callable[[str, Dict[str, Any]], None]] = []

    # Callbacks

    def add_progress_callback(self, callback: Callable[[str, Dict[str, Any]], None]):
        """Register a callback for phase start/finish notifications."""
        self._phase_callbacks.append(callback)

    def remove_progress_callback(self, callback: Callable[[str, Dict[str, Any]], None]):
        if callback in self._phase_callbacks:
            self._phase_callbacks.remove(callback)

    def _notify_progress(self, phase: str, data: Dict[str, Any]):
        for callback in self._phase_callbacks:
            try:
                callback(phase, data)
            except Exception as e:
                logger.warning(f"Phase callback failed: {e}")

    def cancel(self) -> None:
        """Stop scheduling new work; running transfers drain and are recorded."""
        logger.warning("Cancellation requested")
        self.cancel_event.set()

    # Resolution

    def resolve(
        self,
        project: ProjectRef,
        database: bool = False,
        storage: bool = False,
        functions: bool = False
    ) -> ProjectEndpoint:
        """
        Resolve a project alias or reference and check the credentials the
        requested phases need. Every credential is registered for redaction
        before anything can log it.
        """
        if isinstance(project, ProjectEndpoint):
            endpoint = project
        else:
            endpoint = resolve_endpoint(self.config.get_project(project))
        register_secrets(endpoint.secrets())

        if database:
            endpoint.require_database()
        if storage:
            endpoint.require_service_key()
        if functions:
            endpoint.require_management_token()
        return endpoint

    def effective_scope(self, scope: MigrationScope) -> MigrationScope:
        """The scope with the configured schema exclusions folded in."""
        excluded = list(dict.fromkeys([*self.config.defaults.excluded_schemas, *scope.excluded_schemas]))
        return scope.model_copy(update={"excluded_schemas": excluded})

    def _storage_client(self, endpoint: ProjectEndpoint) -> StorageClient:
        return StorageClient(endpoint, timeout=self.config.defaults.request_timeout, transport=self.transport)

    def _functions_client(self, endpoint: ProjectEndpoint) -> FunctionsClient:
        return FunctionsClient(endpoint, timeout=self.config.defaults.request_timeout, transport=self.transport)

    def _transfer_options(self, action: TransferAction) -> TransferOptions:
        return TransferOptions.from_defaults(self.config.defaults, action=action)

    def _function_sync(self) -> FunctionSync:
        return FunctionSync(FunctionSyncOptions.from_defaults(self.config.defaults), self.cancel_event)

    # Phase machinery

    async def _run_phase(self, outcome: MigrationOutcome, step: _Step) -> PhaseResult:
        phase = PhaseResult(phase=step.name, started_at=_now())
        outcome.phases.append(phase)

        # finalize still runs so whatever was captured gets reported
        if self.cancel_event.is_set() and step.name != PhaseName.FINALIZE:
            phase.status = PhaseStatus.FAILED
            phase.error_code = "Cancelled"
            phase.error_message = "cancelled before the phase started"
            phase.finished_at = _now()
            return phase

        self._notify_progress(step.name.value, {"status": "started"})
        logger.info(f"Phase {step.name.value} started")
        try:
            await step.handler(phase)
            if phase.status == PhaseStatus.PENDING:
                phase.status = PhaseStatus.SUCCEEDED_WITH_WARNINGS if phase.warnings else PhaseStatus.SUCCEEDED
        except SupamigrateError as e:
            phase.status = PhaseStatus.FAILED
            phase.error_code = e.code
            phase.error_message = redact(str(e))
            logger.error(f"Phase {step.name.value} failed: {phase.error_message}")
        except OSError as e:
            phase.status = PhaseStatus.FAILED
            phase.error_code = type(e).__name__
            phase.error_message = redact(str(e))
            logger.error(f"Phase {step.name.value} failed: {phase.error_message}")
        finally:
            phase.finished_at = _now()

        self._notify_progress(step.name.value, {"status": phase.status.value, "summary": phase.summary})
        return phase

    @staticmethod
    def _skip(outcome: MigrationOutcome, name: PhaseName, reason: str) -> None:
        outcome.phases.append(PhaseResult(phase=name, status=PhaseStatus.SKIPPED, summary=reason))

    async def _execute(
        self,
        outcome: MigrationOutcome,
        init: _Step,
        steps: Union[List[_Step], Callable[[], List[_Step]]],
        plan: Optional[Callable[[], Dict[str, Any]]] = None
    ) -> MigrationOutcome:
        init_result = await self._run_phase(outcome, init)
        if callable(steps):
            # phases that depend on what init found
            steps = steps()
        if init_result.status == PhaseStatus.FAILED:
            for step in steps:
                self._skip(outcome, step.name, "aborted")
            return outcome.finalize()

        if self.dry_run:
            outcome.plan = plan() if plan else {}
            outcome.plan["phases"] = [
                {"phase": s.name.value, "action": s.description if s.handler else f"skip: {s.skip_reason}"}
                for s in steps
            ]
            for step in steps:
                self._skip(outcome, step.name, "dry run")
            return outcome.finalize()

        for step in steps:
            if step.handler is None:
                self._skip(outcome, step.name, step.skip_reason)
            else:
                await self._run_phase(outcome, step)
        return outcome.finalize()

    def _finalize_step(self, outcome: MigrationOutcome) -> _Step:
        async def finalize(phase: PhaseResult) -> None:
            attempted = [p for p in outcome.phases if p.attempted and p.phase != PhaseName.FINALIZE]
            ok = sum(1 for p in attempted if p.succeeded)
            phase.summary = f"{ok} of {len(attempted)} phases succeeded"

        return _Step(PhaseName.FINALIZE, finalize, description="report outcome")

    # Result recording

    @staticmethod
    def _statement_failures(failures: Sequence[StatementFailure]) -> List[ItemFailure]:
        items = []
        for failure in failures:
            message = failure.message
            if failure.details:
                message = f"{message} ({'; '.join(failure.details)})"
            items.append(ItemFailure(
                item=f"line {failure.line_number}" if failure.line_number is not None else "statement",
                kind="recoverable" if failure.recoverable else "statement",
                message=redact(message),
            ))
        return items

    async def _replay(self, phase: PhaseResult, target: ProjectEndpoint, stream: DumpStream) -> None:
        try:
            result = await self.restore.restore(target, stream)
        except RestoreError as e:
            phase.failures.extend(self._statement_failures(e.failures))
            raise

        phase.failures.extend(self._statement_failures(result.failures))
        phase.warnings.extend(redact(f.describe()) for f in result.recoverable_failures)
        phase.warnings.extend(redact(w) for w in result.warnings)
        phase.summary = result.summary()
        phase.details["restore_status"] = result.status.value
        if result.status == RestoreStatus.FAILED:
            phase.status = PhaseStatus.FAILED
            phase.error_code = "StatementErrors"
            phase.error_message = result.summary()
        elif result.status == RestoreStatus.SUCCEEDED_WITH_WARNINGS:
            phase.status = PhaseStatus.SUCCEEDED_WITH_WARNINGS
        else:
            phase.status = PhaseStatus.SUCCEEDED

    @staticmethod
    def _transform(transformer: SqlTransformer, stream: DumpStream, output: Path, compressed: bool) -> DumpStream:
        return transformer.transform_stream(stream, output, compressed=compressed)

    async def _run_transform(
        self,
        phase: PhaseResult,
        mode: TransformMode,
        stream: DumpStream,
        output: Path,
        compressed: bool = False
    ) -> DumpStream:
        transformer = SqlTransformer(mode)
        result = await asyncio.to_thread(self._transform, transformer, stream, output, compressed)
        phase.details["transform"] = {
            "mode": mode.value,
            "statements": transformer.stats.statements,
            "rewritten": transformer.stats.rewritten,
            "commented_out": transformer.stats.commented_out,
            "rule_hits": dict(transformer.stats.rule_hits),
        }
        return result

    @staticmethod
    def _record_transfer(phase: PhaseResult, result: TransferResult) -> None:
        phase.summary = result.summary()
        phase.details.update({
            "enumerated": result.enumerated,
            "succeeded": result.succeeded,
            "skipped": result.skipped,
            "failed": result.failed,
            "bytes_transferred": result.bytes_transferred,
            "bytes_human": format_bytes(result.bytes_transferred),
            "buckets": list(result.buckets),
            "created_buckets": list(result.created_buckets),
            "cancelled": result.cancelled,
        })
        for bucket, message in sorted(result.bucket_errors.items()):
            phase.failures.append(ItemFailure(item=bucket, kind="bucket", message=message))
        for failure in result.failures:
            phase.failures.append(ItemFailure(
                item=failure.identity,
                kind=failure.kind.value,
                message=redact(failure.message),
            ))
        if not result.success:
            phase.status = PhaseStatus.FAILED
            phase.error_code = "Cancelled" if result.cancelled else "ObjectFailures"
            phase.error_message = result.summary()

    @staticmethod
    def _record_functions(phase: PhaseResult, result: FunctionSyncResult) -> None:
        phase.summary = result.summary()
        phase.details.update({
            "enumerated": result.enumerated,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "functions": [r.slug for r in result.results],
        })
        for failure in result.failures:
            phase.failures.append(ItemFailure(
                item=failure.slug,
                kind=failure.kind or "error",
                message=redact(failure.error or "unknown error"),
            ))
        if not result.success:
            phase.status = PhaseStatus.FAILED
            phase.error_code = "FunctionFailures"
            phase.error_message = result.summary()

    async def _transfer(
        self,
        phase: PhaseResult,
        source: ObjectStore,
        target: ObjectStore,
        action: TransferAction,
        bucket_filter: Optional[Sequence[str]]
    ) -> TransferResult:
        async with source, target:
            engine = TransferEngine(
                source,
                target,
                self._transfer_options(action),
                self.progress_callback,
                self.cancel_event,
            )
            result = await engine.transfer(bucket_filter)
        self._record_transfer(phase, result)
        return result

    # Migrate

    async def run_migration(
        self,
        source: ProjectRef,
        target: ProjectRef,
        scope: Optional[MigrationScope] = None
    ) -> MigrationOutcome:
        """Move database, storage and functions from one project to another."""
        scope = self.effective_scope(scope or MigrationScope())
        outcome = MigrationOutcome(operation="migrate")
        endpoints: Dict[str, ProjectEndpoint] = {}

        async def init(phase: PhaseResult) -> None:
            needs = dict(database=scope.runs_database, storage=scope.runs_storage, functions=scope.runs_functions)
            endpoints["source"] = self.resolve(source, **needs)
            endpoints["target"] = self.resolve(target, **needs)
            if endpoints["source"].project_ref == endpoints["target"].project_ref:
                raise ConfigurationError("Source and target are the same project")
            phase.summary = f"{endpoints['source'].project_ref} -> {endpoints['target'].project_ref}"

        async def schema_data(phase: PhaseResult) -> None:
            with tempfile.TemporaryDirectory(prefix="supamigrate-") as tmp:
                raw = await self.dump.dump(endpoints["source"], scope, Path(tmp) / "source.sql")
                stream = await self._run_transform(
                    phase, TransformMode.PROJECT_TO_PROJECT, raw, Path(tmp) / "target.sql"
                )
                await self._replay(phase, endpoints["target"], stream)

        async def storage(phase: PhaseResult) -> None:
            await self._transfer(
                phase,
                self._storage_client(endpoints["source"]),
                self._storage_client(endpoints["target"]),
                TransferAction.COPY,
                scope.bucket_filter,
            )

        async def functions(phase: PhaseResult) -> None:
            async with self._functions_client(endpoints["source"]) as src, \
                    self._functions_client(endpoints["target"]) as dst:
                result = await self._function_sync().sync(src, dst, scope.function_filter)
            self._record_functions(phase, result)

        def plan() -> Dict[str, Any]:
            return {
                "operation": "migrate",
                "source": endpoints["source"].project_ref,
                "target": endpoints["target"].project_ref,
                "scope": scope.model_dump(mode="json"),
            }

        steps = [
            self._database_step(scope, schema_data, f"{self._dump_command(scope)} | project_to_project | psql"),
            self._storage_step(scope, storage, "copy objects between storage APIs"),
            self._functions_step(scope, functions, "redeploy edge functions on the target"),
            self._finalize_step(outcome),
        ]
        return await self._execute(outcome, _Step(PhaseName.INIT, init), steps, plan)

    def _dump_command(self, scope: MigrationScope) -> str:
        return " ".join([self.dump.executable, *self.dump.build_args(scope)])

    @staticmethod
    def _database_step(scope: MigrationScope, handler: PhaseHandler, description: str) -> _Step:
        if not scope.runs_database:
            return _Step(PhaseName.SCHEMA_DATA, skip_reason="database not in scope")
        return _Step(PhaseName.SCHEMA_DATA, handler, description=description)

    @staticmethod
    def _storage_step(scope: MigrationScope, handler: PhaseHandler, description: str) -> _Step:
        if not scope.runs_storage:
            reason = "schema-only run" if scope.include_storage else "storage not in scope"
            return _Step(PhaseName.STORAGE, skip_reason=reason)
        return _Step(PhaseName.STORAGE, handler, description=description)

    @staticmethod
    def _functions_step(scope: MigrationScope, handler: PhaseHandler, description: str) -> _Step:
        if not scope.runs_functions:
            reason = "schema-only run" if scope.include_functions else "functions not in scope"
            return _Step(PhaseName.FUNCTIONS, skip_reason=reason)
        return _Step(PhaseName.FUNCTIONS, handler, description=description)

    # Backup

    async def run_backup(
        self,
        source: ProjectRef,
        output_dir: Path,
        scope: Optional[MigrationScope] = None,
        compress: Optional[bool] = None
    ) -> MigrationOutcome:
        """
        Capture a project into a backup archive at ``output_dir``.

        The manifest is written in finalize, and only if at least one
        component was captured; without it the directory is not a usable
        backup.
        """
        scope = self.effective_scope(scope or MigrationScope())
        compress = self.config.defaults.compress_backups if compress is None else compress
        output_dir = Path(output_dir)
        outcome = MigrationOutcome(operation="backup")
        state = _BackupState()
        endpoints: Dict[str, ProjectEndpoint] = {}

        async def init(phase: PhaseResult) -> None:
            endpoints["source"] = self.resolve(
                source, database=scope.runs_database, storage=scope.runs_storage, functions=scope.runs_functions
            )
            if not self.dry_run:
                state.handle = ArchiveManager.create(output_dir, endpoints["source"].project_ref)
            phase.summary = f"{endpoints['source'].project_ref} -> {output_dir}"

        async def schema_data(phase: PhaseResult) -> None:
            handle = state.handle
            raw_path = handle.root / f"{TEMP_PREFIX}database.raw.sql"
            try:
                raw = await self.dump.dump(endpoints["source"], scope, raw_path)
                stream = await self._run_transform(
                    phase, TransformMode.PROJECT_TO_ARCHIVE, raw, handle.database_path(compress), compress
                )
            finally:
                if raw_path.exists():
                    raw_path.unlink()

            checksum = await asyncio.to_thread(calculate_file_checksum, stream.path)
            state.database = DatabaseComponent(
                file=handle.relative(stream.path),
                compressed=compress,
                transform_mode=TransformMode.PROJECT_TO_ARCHIVE.value,
                scope_mode=scope.mode,
                size_bytes=stream.size,
                sha256=checksum,
            )
            phase.summary = f"database saved to {stream.path.name} ({format_bytes(stream.size)})"

        async def storage(phase: PhaseResult) -> None:
            handle = state.handle
            store = ArchiveObjectStore(handle.storage_dir)
            result = await self._transfer(
                phase,
                self._storage_client(endpoints["source"]),
                store,
                TransferAction.DOWNLOAD,
                scope.bucket_filter,
            )
            infos = {b.name: b for b in store.bucket_infos}
            for name in result.buckets:
                bucket_dir = handle.storage_dir / name
                if name not in infos or not bucket_dir.is_dir():
                    continue
                count, size = _directory_usage(bucket_dir)
                path, packed = bucket_dir, False
                if compress:
                    archive_path = await asyncio.to_thread(handle.compress_bucket, name)
                    if archive_path is not None:
                        path, packed = archive_path, True
                    else:
                        phase.warnings.append(f"bucket {name} kept uncompressed")
                state.buckets.append(BucketComponent(
                    name=name,
                    public=infos[name].public,
                    path=handle.relative(path),
                    compressed=packed,
                    object_count=count,
                    size_bytes=size,
                ))

        async def functions(phase: PhaseResult) -> None:
            handle = state.handle
            async with self._functions_client(endpoints["source"]) as client:
                result = await self._function_sync().backup(client, handle.functions_dir, scope.function_filter)
            self._record_functions(phase, result)
            names = {d.slug: d.name for d in result.descriptors}
            for r in result.results:
                if r.outcome == FunctionOutcome.SUCCEEDED:
                    state.functions.append(FunctionComponent(
                        slug=r.slug,
                        name=names.get(r.slug, r.slug),
                        path=f"{FUNCTIONS_DIR}/{r.slug}",
                    ))

        async def finalize(phase: PhaseResult) -> None:
            manifest = BackupManifest(
                project_ref=endpoints["source"].project_ref,
                scope=scope,
                compressed=compress,
                database=state.database,
                buckets=state.buckets,
                functions=state.functions,
            )
            if not manifest.has_components:
                phase.status = PhaseStatus.FAILED
                phase.error_code = "NothingCaptured"
                phase.error_message = "no component was captured; manifest not written"
                return
            await asyncio.to_thread(state.handle.finalize, manifest)
            outcome.artifact_path = str(state.handle.root)
            parts = []
            if manifest.database:
                parts.append("database")
            if manifest.buckets:
                parts.append(f"{len(manifest.buckets)} buckets")
            if manifest.functions:
                parts.append(f"{len(manifest.functions)} functions")
            phase.summary = f"manifest written ({', '.join(parts)})"

        def plan() -> Dict[str, Any]:
            return {
                "operation": "backup",
                "source": endpoints["source"].project_ref,
                "output_dir": str(output_dir),
                "compress": compress,
                "scope": scope.model_dump(mode="json"),
            }

        steps = [
            self._database_step(scope, schema_data, f"{self._dump_command(scope)} | project_to_archive"),
            self._storage_step(scope, storage, "download objects into storage/"),
            self._functions_step(scope, functions, "download edge functions into functions/"),
            _Step(PhaseName.FINALIZE, finalize, description="write manifest.json"),
        ]
        return await self._execute(outcome, _Step(PhaseName.INIT, init), steps, plan)

    # Restore

    async def run_restore(
        self,
        archive_path: Path,
        target: ProjectRef,
        scope: Optional[MigrationScope] = None
    ) -> MigrationOutcome:
        """Replay a backup archive into a project."""
        scope = scope or MigrationScope()
        root = Path(archive_path)
        outcome = MigrationOutcome(operation="restore")
        context: Dict[str, Any] = {}

        async def init(phase: PhaseResult) -> None:
            # a corrupt archive aborts before the target is contacted
            context["manifest"] = ArchiveManager.open(root)
            context["target"] = self.resolve(
                target, database=scope.runs_database, storage=scope.runs_storage, functions=scope.runs_functions
            )
            manifest: BackupManifest = context["manifest"]
            phase.summary = f"{manifest.project_ref} backup from {manifest.created_at:%Y-%m-%d %H:%M} -> {context['target'].project_ref}"
            phase.details["format_version"] = manifest.format_version

        async def schema_data(phase: PhaseResult) -> None:
            component = context["manifest"].database
            try:
                applied = TransformMode(component.transform_mode) if component.transform_mode else None
            except ValueError:
                raise ArchiveCorruptionError(f"Unknown transform mode in manifest: {component.transform_mode}")
            stream = DumpStream(path=root / component.file, compressed=component.compressed, transform_mode=applied)
            with tempfile.TemporaryDirectory(prefix="supamigrate-") as tmp:
                replay = await self._run_transform(
                    phase, TransformMode.ARCHIVE_TO_PROJECT, stream, Path(tmp) / "restore.sql"
                )
                await self._replay(phase, context["target"], replay)

        async def storage(phase: PhaseResult) -> None:
            selected = [
                c for c in context["manifest"].buckets
                if not scope.bucket_filter or any(fnmatch.fnmatchcase(c.name, p) for p in scope.bucket_filter)
            ]
            if not selected:
                phase.summary = "no buckets selected"
                return
            with tempfile.TemporaryDirectory(prefix="supamigrate-") as tmp:
                paths = {}
                for component in selected:
                    paths[component.name] = await asyncio.to_thread(
                        ArchiveManager.extract_bucket, root, component, Path(tmp)
                    )
                store = ArchiveObjectStore(
                    root / STORAGE_DIR,
                    buckets=[BucketInfo(name=c.name, public=c.public) for c in selected],
                    bucket_paths=paths,
                )
                await self._transfer(
                    phase,
                    store,
                    self._storage_client(context["target"]),
                    TransferAction.UPLOAD,
                    [c.name for c in selected],
                )

        async def functions(phase: PhaseResult) -> None:
            slugs = [f.slug for f in context["manifest"].functions]
            async with self._functions_client(context["target"]) as client:
                result = await self._function_sync().restore(
                    root / FUNCTIONS_DIR, client, names=scope.function_filter, slugs=slugs
                )
            self._record_functions(phase, result)

        def plan() -> Dict[str, Any]:
            manifest: BackupManifest = context["manifest"]
            return {
                "operation": "restore",
                "archive": str(root),
                "target": context["target"].project_ref,
                "backup_of": manifest.project_ref,
                "format_version": manifest.format_version,
                "scope": scope.model_dump(mode="json"),
            }

        def build_steps() -> List[_Step]:
            # which phases run depends on what the manifest holds
            manifest: Optional[BackupManifest] = context.get("manifest")
            steps = [
                self._database_step(scope, schema_data, "archive_to_project | psql"),
                self._storage_step(scope, storage, "upload archived buckets"),
                self._functions_step(scope, functions, "deploy archived edge functions"),
            ]
            if manifest is not None:
                present = {
                    PhaseName.SCHEMA_DATA: (manifest.database is not None, "no database in backup"),
                    PhaseName.STORAGE: (bool(manifest.buckets), "no buckets in backup"),
                    PhaseName.FUNCTIONS: (bool(manifest.functions), "no functions in backup"),
                }
                for i, step in enumerate(steps):
                    available, reason = present[step.name]
                    if step.handler is not None and not available:
                        steps[i] = _Step(step.name, skip_reason=reason)
            return steps + [self._finalize_step(outcome)]

        return await self._execute(outcome, _Step(PhaseName.INIT, init), build_steps, plan)

    # Storage-only operations

    async def run_storage_sync(
        self,
        source: ProjectRef,
        target: ProjectRef,
        bucket_filter: Optional[Sequence[str]] = None
    ) -> MigrationOutcome:
        """Copy buckets between two projects."""
        endpoints: Dict[str, ProjectEndpoint] = {}

        async def init(phase: PhaseResult) -> None:
            endpoints["source"] = self.resolve(source, storage=True)
            endpoints["target"] = self.resolve(target, storage=True)
            phase.summary = f"{endpoints['source'].project_ref} -> {endpoints['target'].project_ref}"

        async def storage(phase: PhaseResult) -> None:
            await self._transfer(
                phase,
                self._storage_client(endpoints["source"]),
                self._storage_client(endpoints["target"]),
                TransferAction.COPY,
                bucket_filter,
            )

        return await self._storage_only("storage sync", init, storage, lambda: {
            "operation": "storage sync",
            "source": endpoints["source"].project_ref,
            "target": endpoints["target"].project_ref,
            "buckets": list(bucket_filter or []),
        })

    async def run_storage_download(
        self,
        source: ProjectRef,
        directory: Path,
        bucket_filter: Optional[Sequence[str]] = None
    ) -> MigrationOutcome:
        """Download buckets into ``directory/<bucket>/``."""
        endpoints: Dict[str, ProjectEndpoint] = {}
        directory = Path(directory)

        async def init(phase: PhaseResult) -> None:
            endpoints["source"] = self.resolve(source, storage=True)
            phase.summary = f"{endpoints['source'].project_ref} -> {directory}"

        async def storage(phase: PhaseResult) -> None:
            directory.mkdir(parents=True, exist_ok=True)
            await self._transfer(
                phase,
                self._storage_client(endpoints["source"]),
                ArchiveObjectStore(directory),
                TransferAction.DOWNLOAD,
                bucket_filter,
            )

        return await self._storage_only("storage download", init, storage, lambda: {
            "operation": "storage download",
            "source": endpoints["source"].project_ref,
            "directory": str(directory),
            "buckets": list(bucket_filter or []),
        })

    async def run_storage_upload(
        self,
        directory: Path,
        target: ProjectRef,
        bucket_filter: Optional[Sequence[str]] = None,
        into_bucket: Optional[str] = None
    ) -> MigrationOutcome:
        """
        Upload ``directory/<bucket>/`` trees into a project.

        With ``into_bucket`` the directory itself holds the objects of that
        one bucket.
        """
        endpoints: Dict[str, ProjectEndpoint] = {}
        directory = Path(directory)
        if into_bucket:
            bucket_filter = [into_bucket]

        async def init(phase: PhaseResult) -> None:
            if not directory.is_dir():
                raise ConfigurationError(f"Directory not found: {directory}")
            endpoints["target"] = self.resolve(target, storage=True)
            phase.summary = f"{directory} -> {endpoints['target'].project_ref}"

        async def storage(phase: PhaseResult) -> None:
            if into_bucket:
                store = ArchiveObjectStore(
                    directory.parent,
                    buckets=[BucketInfo(name=into_bucket)],
                    bucket_paths={into_bucket: directory},
                )
            else:
                store = ArchiveObjectStore(directory)
            await self._transfer(
                phase,
                store,
                self._storage_client(endpoints["target"]),
                TransferAction.UPLOAD,
                bucket_filter,
            )

        return await self._storage_only("storage upload", init, storage, lambda: {
            "operation": "storage upload",
            "directory": str(directory),
            "target": endpoints["target"].project_ref,
            "buckets": list(bucket_filter or []),
        })

    async def _storage_only(
        self,
        operation: str,
        init: PhaseHandler,
        storage: PhaseHandler,
        plan: Callable[[], Dict[str, Any]]
    ) -> MigrationOutcome:
        outcome = MigrationOutcome(operation=operation)
        steps = [
            _Step(PhaseName.STORAGE, storage, description=operation),
            self._finalize_step(outcome),
        ]
        return await self._execute(outcome, _Step(PhaseName.INIT, init), steps, plan)

    async def list_buckets(self, project: ProjectRef) -> List[BucketInfo]:
        endpoint = self.resolve(project, storage=True)
        async with self._storage_client(endpoint) as client:
            return await client.list_buckets()

    # Doctor

    def diagnose(self, projects: Optional[Sequence[str]] = None) -> List[DiagnosticCheck]:
        """Check external tools and the credentials of configured projects."""
        checks = []
        for tool in (self.dump, self.restore):
            try:
                path = tool.check_available()
                checks.append(DiagnosticCheck(tool.executable, True, path))
            except ExternalToolError as e:
                checks.append(DiagnosticCheck(tool.executable, False, str(e)))

        names = list(projects) if projects else sorted(self.config.projects)
        if not names:
            checks.append(DiagnosticCheck("projects", False, "no projects configured"))
        for name in names:
            try:
                endpoint = self.resolve(name)
            except ConfigurationError as e:
                checks.append(DiagnosticCheck(name, False, str(e)))
                continue
            for label, present in (
                ("database", endpoint.database is not None),
                ("storage", bool(endpoint.service_key)),
                ("functions", bool(endpoint.management_token)),
            ):
                detail = "credentials configured" if present else "credentials missing"
                checks.append(DiagnosticCheck(f"{name} {label}", present, detail))
        return checks


def _directory_usage(path: Path) -> Tuple[int, int]:
    count = size = 0
    for file_path in path.rglob("*"):
        if file_path.is_file() and not file_path.name.startswith(TEMP_PREFIX):
            count += 1
            size += file_path.stat().st_size
    return count, size
