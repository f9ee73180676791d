"""Audit setup and removal pipelines.

Setup of one table runs these steps strictly in order:

    validating -> creating_shadow_table -> creating_triggers -> persisting_mapping -> done

Any step may end in ``failed``; the failing step is reported and DDL already
applied is not rolled back. Removal is best effort: every statement uses
IF EXISTS and a failing statement is logged, not raised, so a partial setup
can always be cleaned up.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ciphertrail.audit.events import SystemAuditLogger
from ciphertrail.audit.mapping import MetadataMappingStore
from ciphertrail.audit.scheduler import BatchScheduler
from ciphertrail.audit.schema import PROBE_PLAINTEXT, SEAL_FUNCTION, AuditPlan, get_schema_generator
from ciphertrail.db.adapter import DialectAdapter
from ciphertrail.errors import (
    CipherTrailError,
    DdlExecutionError,
    IntegrityViolationError,
    InvalidIdentifierError,
    TableNotFoundError,
    WeakKeyError,
)
from ciphertrail.security.encryption import EncryptionService, get_encryption_service
from ciphertrail.security.naming import is_audit_table_name
from ciphertrail.settings import Settings, get_settings
from ciphertrail.utils import metrics

logger = logging.getLogger(__name__)

# Pipeline steps
VALIDATING = "validating"
CREATING_SHADOW_TABLE = "creating_shadow_table"
CREATING_TRIGGERS = "creating_triggers"
PERSISTING_MAPPING = "persisting_mapping"
DONE = "done"


@dataclass
class SetupResult:
    """Outcome of setting up auditing on one table."""

    table_name: str
    success: bool
    audit_table_name: Optional[str] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    skipped: bool = False
    cancelled: bool = False
    duration_ms: float = 0.0
    triggers_created: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.skipped:
            return "skipped"
        return "success" if self.success else "failed"

    def to_dict(self) -> dict:
        return {
            "table_name": self.table_name,
            "status": self.status,
            "success": self.success,
            "audit_table_name": self.audit_table_name,
            "error": self.error,
            "failed_step": self.failed_step,
            "duration_ms": round(self.duration_ms, 2),
            "triggers_created": list(self.triggers_created),
        }


@dataclass
class BatchReport:
    """Per-table results of a batch setup with aggregate counts."""

    results: list[SetupResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def succeeded(self) -> int:
        return self._count("success")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def cancelled(self) -> int:
        return self._count("cancelled")

    @property
    def total(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass
class RemovalResult:
    """Outcome of removing auditing from one table."""

    table_name: str
    success: bool = True
    audit_tables_dropped: list[str] = field(default_factory=list)
    mappings_deleted: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "table_name": self.table_name,
            "success": self.success,
            "audit_tables_dropped": list(self.audit_tables_dropped),
            "mappings_deleted": self.mappings_deleted,
            "warnings": list(self.warnings),
        }


@dataclass
class TableStatus:
    """Audit state of one source table."""

    table_name: str
    audit_table_name: Optional[str] = None
    audit_triggers: list[str] = field(default_factory=list)
    trigger_count: int = 0
    triggers_complete: bool = False

    @property
    def status(self) -> str:
        if self.audit_table_name and self.triggers_complete:
            return "active"
        if self.audit_table_name or self.audit_triggers:
            return "partial"
        return "none"

    @property
    def has_audit(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict:
        return {
            "table_name": self.table_name,
            "status": self.status,
            "has_audit": self.has_audit,
            "audit_table_name": self.audit_table_name,
            "audit_triggers": list(self.audit_triggers),
            "trigger_count": self.trigger_count,
        }


class AuditOrchestrator:
    """Sequences audit setup and removal for one database."""

    def __init__(
        self,
        adapter: DialectAdapter,
        settings: Optional[Settings] = None,
        event_logger: Optional[SystemAuditLogger] = None,
        encryption_service: Optional[EncryptionService] = None,
        mapping_store: Optional[MetadataMappingStore] = None,
        scheduler: Optional[BatchScheduler] = None,
    ):
        """Initialize orchestrator."""
        self.adapter = adapter
        self.settings = settings or get_settings()
        self.encryption = encryption_service or get_encryption_service()
        self.generator = get_schema_generator(adapter.dialect_name, self.encryption)
        self.mappings = mapping_store or MetadataMappingStore(adapter, self.encryption)
        self.event_logger = event_logger or SystemAuditLogger(self.settings)
        self.scheduler = scheduler or BatchScheduler.from_settings(self.settings)
        # Serializes installs of the shared sealing function across batch workers
        self._seal_lock = threading.Lock()

    @property
    def dialect(self) -> str:
        return self.generator.dialect

    # Setup

    def build_plan(self, table_name: str, key: str) -> AuditPlan:
        """Validate the table and key and render all DDL without executing it."""
        self.encryption.validate_key(key)
        self.generator.quote(table_name)
        if not self.adapter.table_exists(table_name):
            raise TableNotFoundError(f"Table {table_name!r} does not exist in {self.adapter.qualifier!r}")
        columns = self.adapter.get_columns(table_name)
        return self.generator.build_plan(self.adapter.qualifier, table_name, columns, key)

    def _run_ddl(self, step: str, statements: Iterable[str]) -> None:
        for sql in statements:
            try:
                self.adapter.execute_ddl(sql)
            except Exception as e:
                raise DdlExecutionError(step, str(e), cause=e) from e

    def _missing_shadow_columns(self, plan: AuditPlan) -> list[str]:
        present = {column.name for column in self.adapter.get_columns(plan.audit_table_name)}
        return [name for name in plan.table_columns if name not in present]

    def _add_missing_shadow_columns(self, plan: AuditPlan) -> None:
        """Bring an existing shadow table up to the current layout before triggers reference it."""
        missing = self._missing_shadow_columns(plan)
        if not missing:
            return
        logger.info(f"Adding {len(missing)} column(s) to existing shadow table {plan.audit_table_name}")
        self._run_ddl(
            CREATING_SHADOW_TABLE,
            [self.generator.add_column_ddl(plan.qualifier, plan.audit_table_name, name) for name in missing],
        )
        missing = self._missing_shadow_columns(plan)
        if missing:
            raise IntegrityViolationError(
                f"Shadow table {plan.audit_table_name!r} still lacks columns {missing} of {plan.table_name!r}"
            )

    def _install_seal_function(self, plan: AuditPlan, key: str) -> None:
        """Install the sealing function and prove the application can open what it seals."""
        with self._seal_lock:
            self._run_ddl(CREATING_TRIGGERS, plan.seal_function_ddl)

        secret = self.encryption.engine_secret(key)
        try:
            sealed = self.adapter.scalar(
                self.generator.probe_sql(plan.qualifier),
                {"plain": PROBE_PLAINTEXT, "secret": secret},
            )
        except Exception as e:
            raise DdlExecutionError(CREATING_TRIGGERS, f"sealing function probe failed: {e}", cause=e) from e

        try:
            opened = self.encryption.decrypt(sealed, key, engine_secret=secret)
        except CipherTrailError as e:
            raise IntegrityViolationError(f"In-database encryption is not readable by the application: {e}") from e
        if opened != PROBE_PLAINTEXT:
            raise IntegrityViolationError("In-database encryption round trip returned a different value")

    def _verify_triggers(self, plan: AuditPlan) -> list[str]:
        present = set(self.adapter.list_triggers(plan.table_name))
        missing = [name for name in plan.trigger_names if name not in present]
        if missing:
            raise DdlExecutionError(CREATING_TRIGGERS, f"triggers missing after creation: {missing}")
        return list(plan.trigger_names)

    def setup_one(self, table_name: str, key: str, actor: Optional[str] = None) -> SetupResult:
        """Install auditing on one table. Never raises for pipeline failures."""
        started = time.monotonic()
        step = VALIDATING
        result = SetupResult(table_name=table_name, success=False)
        self.event_logger.log_audit_config("setup_started", table_name, actor=actor, dialect=self.dialect)

        try:
            plan = self.build_plan(table_name, key)
            result.audit_table_name = plan.audit_table_name

            step = CREATING_SHADOW_TABLE
            shadow_existed = self.adapter.table_exists(plan.audit_table_name)
            self._run_ddl(step, [plan.shadow_table_ddl])
            if shadow_existed:
                self._add_missing_shadow_columns(plan)

            step = CREATING_TRIGGERS
            self._install_seal_function(plan, key)
            self._run_ddl(step, plan.trigger_ddl)
            result.triggers_created = self._verify_triggers(plan)

            step = PERSISTING_MAPPING
            try:
                self.mappings.save_mapping(plan.audit_table_name, table_name, key)
            except Exception as e:
                raise DdlExecutionError(step, str(e), cause=e) from e

            step = DONE
            result.success = True
        except CipherTrailError as e:
            result.error = str(e)
            result.failed_step = getattr(e, "step", step)
            if isinstance(e, WeakKeyError):
                self.event_logger.log_security_event("weak_key", table_name, actor=actor)
            logger.error(f"Audit setup failed for {table_name} at {result.failed_step}: {e}")
        except Exception as e:
            result.error = str(e)
            result.failed_step = step
            logger.error(f"Unexpected error during audit setup of {table_name}: {e}", exc_info=True)

        result.duration_ms = (time.monotonic() - started) * 1000
        metrics.audit_setups.labels(dialect=self.dialect, status=result.status).inc()
        metrics.audit_setup_duration.labels(dialect=self.dialect).observe(result.duration_ms / 1000)

        if result.success:
            logger.info(f"Audit enabled for {table_name} ({result.duration_ms:.0f} ms)")
        self.event_logger.log_audit_config(
            "setup",
            table_name,
            actor=actor,
            success=result.success,
            duration_ms=result.duration_ms,
            error=result.error,
            dialect=self.dialect,
            failed_step=result.failed_step,
        )
        return result

    def is_audited(self, table_name: str, key: str) -> bool:
        """Check whether a table already has a shadow table or a mapping."""
        audit_table_name = self.encryption.derive_table_name(table_name, key)
        if self.adapter.table_exists(audit_table_name):
            return True
        return bool(self.mappings.find_by_original(table_name))

    def _setup_or_skip(self, table_name: str, key: str, actor: Optional[str]) -> SetupResult:
        try:
            if self.is_audited(table_name, key):
                logger.info(f"Skipping {table_name}: already audited")
                return SetupResult(
                    table_name=table_name,
                    success=True,
                    skipped=True,
                    audit_table_name=self.encryption.derive_table_name(table_name, key),
                )
        except Exception as e:
            logger.warning(f"Could not check audit state of {table_name}: {e}")
        return self.setup_one(table_name, key, actor=actor)

    def setup_many(self, table_names: Iterable[str], key: str, actor: Optional[str] = None) -> BatchReport:
        """Install auditing on several tables in paced batches.

        The key is validated once up front (WeakKeyError is raised). Tables
        already audited are reported as skipped; one table's failure does not
        stop the batch.
        """
        self.encryption.validate_key(key)

        names = list(dict.fromkeys(table_names))
        metrics.audit_batch_size.observe(len(names))
        logger.info(f"Starting batch audit setup for {len(names)} tables")

        outcomes = self.scheduler.run(
            names,
            lambda name: self._setup_or_skip(name, key, actor),
            on_batch_done=self._log_batch_progress,
        )
        report = BatchReport()
        for outcome in outcomes:
            if outcome.cancelled:
                report.results.append(
                    SetupResult(table_name=outcome.item, success=False, cancelled=True, error="Cancelled")
                )
            else:
                report.results.append(outcome.result)

        logger.info(
            f"Batch audit setup finished: {report.succeeded} succeeded, {report.failed} failed, "
            f"{report.skipped} skipped, {report.cancelled} cancelled"
        )
        return report

    def _log_batch_progress(self, index: int, outcomes: list) -> None:
        done = [outcome.result for outcome in outcomes if not outcome.cancelled]
        failed = sum(1 for result in done if not result.success)
        logger.info(
            f"Audit batch {index + 1} finished: {len(done) - failed} ok, {failed} failed, "
            f"{len(outcomes) - len(done)} cancelled"
        )

    def cancel(self) -> None:
        """Cooperatively cancel a running batch."""
        self.scheduler.cancel()

    # Removal

    def _audit_tables_for(self, table_name: str, key: Optional[str], result: RemovalResult) -> list[str]:
        names = []
        if key:
            names.append(self.encryption.derive_table_name(table_name, key))
        try:
            names += self.mappings.find_by_original(table_name)
        except Exception as e:
            result.warnings.append(f"mapping lookup failed: {e}")
            logger.warning(f"Mapping lookup for {table_name} failed: {e}")
        legacy = self.generator.legacy_audit_table_name(table_name)
        if legacy:
            names.append(legacy)
        return list(dict.fromkeys(names))

    def _best_effort(self, sql: str, result: RemovalResult) -> bool:
        try:
            self.adapter.execute_ddl(sql)
            return True
        except Exception as e:
            result.warnings.append(f"{sql.splitlines()[0]}: {e}")
            logger.warning(f"Removal statement failed (continuing): {e}")
            return False

    def remove_one(
        self,
        table_name: str,
        key: Optional[str] = None,
        actor: Optional[str] = None,
        audit_table_names: Optional[list[str]] = None,
    ) -> RemovalResult:
        """Remove triggers, functions, shadow tables and mappings of one table.

        Shadow tables are found by key derivation, by mapping rows and by the
        legacy naming scheme; audit_table_names adds explicit ones.
        Idempotent: removing a table that is not audited succeeds.
        """
        started = time.monotonic()
        if key:
            self.encryption.validate_key(key)
        self.generator.quote(table_name)

        result = RemovalResult(table_name=table_name)
        audit_tables = self._audit_tables_for(table_name, key, result)
        audit_tables += [name for name in audit_table_names or [] if name not in audit_tables]
        statements = self.generator.removal_ddl(self.adapter.qualifier, table_name, audit_tables)

        for sql in statements:
            self._best_effort(sql, result)
        result.audit_tables_dropped = [
            name for name in audit_tables if not self._table_still_exists(name, result)
        ]

        for name in audit_tables:
            try:
                result.mappings_deleted += self.mappings.delete_mapping(audit_table_name=name)
            except Exception as e:
                result.warnings.append(f"mapping delete failed for {name}: {e}")
                logger.warning(f"Could not delete mapping {name}: {e}")
        try:
            result.mappings_deleted += self.mappings.delete_mapping(original_table_name=table_name)
        except Exception as e:
            result.warnings.append(f"mapping delete failed for {table_name}: {e}")
            logger.warning(f"Could not delete mappings of {table_name}: {e}")

        duration_ms = (time.monotonic() - started) * 1000
        status = "success" if not result.warnings else "partial"
        metrics.audit_removals.labels(dialect=self.dialect, status=status).inc()
        logger.info(f"Audit removed for {table_name} ({len(result.warnings)} warnings)")
        self.event_logger.log_audit_config(
            "remove",
            table_name,
            actor=actor,
            success=True,
            duration_ms=duration_ms,
            dialect=self.dialect,
            warnings=len(result.warnings),
        )
        return result

    def _table_still_exists(self, name: str, result: RemovalResult) -> bool:
        try:
            return self.adapter.table_exists(name)
        except Exception as e:
            result.warnings.append(f"existence check failed for {name}: {e}")
            return False

    def remove_audit_table(
        self, audit_table_name: str, key: Optional[str] = None, actor: Optional[str] = None
    ) -> RemovalResult:
        """Remove auditing given a shadow table name."""
        original = self.mappings.get_original_table(audit_table_name, key)
        if original is None:
            raise TableNotFoundError(f"No mapping found for audit table {audit_table_name!r}")
        return self.remove_one(original, key=key, actor=actor, audit_table_names=[audit_table_name])

    def _source_tables(self) -> list[str]:
        return [name for name in self.adapter.list_tables() if not is_audit_table_name(name)]

    def _resolve_source(self, audit_table_name: str, key: str, tables: list[str]) -> Optional[str]:
        for table_name in tables:
            if self.encryption.derive_table_name(table_name, key) == audit_table_name:
                return table_name
        return None

    def _audit_triggers_on(self, table_name: str) -> list[str]:
        known = set(self.generator.legacy_trigger_names(table_name))
        return [name for name in self.adapter.list_triggers(table_name) if name in known]

    def _live_audit_triggers(self) -> dict[str, list[str]]:
        """Source tables still carrying audit triggers, which call the sealing function."""
        live = {}
        for table_name in self._source_tables():
            triggers = self._audit_triggers_on(table_name)
            if triggers:
                live[table_name] = triggers
        return live

    def remove_all(self, key: Optional[str] = None, actor: Optional[str] = None) -> list[RemovalResult]:
        """Remove auditing from every mapped table, then from shadow tables without a mapping.

        With a key, a shadow table without a mapping row is traced back to its
        source table by re-deriving names and removed through remove_one.
        Untraceable shadow tables and the shared sealing function are dropped
        only once no audit trigger is left in the schema.
        """
        if key:
            self.encryption.validate_key(key)
        originals = [mapping["original_table_name"] for mapping in self.mappings.list_mappings()]
        results = [self.remove_one(name, key=key, actor=actor) for name in dict.fromkeys(originals)]

        orphans = self.adapter.list_audit_tables()
        tables = self._source_tables() if key and orphans else []
        unresolved = []
        for audit_table_name in orphans:
            source = self._resolve_source(audit_table_name, key, tables) if key else None
            if source:
                logger.info(f"Shadow table {audit_table_name} has no mapping; removing it with {source}")
                results.append(self.remove_one(source, key=key, actor=actor, audit_table_names=[audit_table_name]))
            else:
                unresolved.append(audit_table_name)

        live = self._live_audit_triggers()
        for audit_table_name in unresolved:
            orphan = RemovalResult(table_name=audit_table_name)
            if live:
                orphan.success = False
                orphan.warnings.append(f"kept: source table unknown while audit triggers remain on {sorted(live)}")
                logger.warning(f"Keeping shadow table {audit_table_name}: its source table could not be resolved")
            elif self._best_effort(self.generator.drop_table_ddl(self.adapter.qualifier, audit_table_name), orphan):
                orphan.audit_tables_dropped.append(audit_table_name)
            results.append(orphan)

        if live:
            logger.warning(f"Sealing function {SEAL_FUNCTION} kept: audit triggers remain on {sorted(live)}")
        else:
            seal = RemovalResult(table_name=SEAL_FUNCTION)
            if not self._best_effort(self.generator.drop_seal_function_ddl(self.adapter.qualifier), seal):
                logger.warning(f"Sealing function {SEAL_FUNCTION} left in place: {seal.warnings[0]}")
        logger.info(f"Removed auditing from {len(results)} tables")
        return results

    # Status

    def _find_shadow_table(self, table_name: str, key: Optional[str]) -> Optional[str]:
        candidates = [self.encryption.derive_table_name(table_name, key)] if key else []
        try:
            candidates += self.mappings.find_by_original(table_name)
        except Exception as e:
            logger.warning(f"Mapping lookup for {table_name} failed: {e}")
        legacy = self.generator.legacy_audit_table_name(table_name)
        if legacy:
            candidates.append(legacy)
        for name in dict.fromkeys(candidates):
            if self.adapter.table_exists(name):
                return name
        return None

    def table_status(self, key: Optional[str] = None) -> list[TableStatus]:
        """Audit state of every source table in the schema.

        The shadow table is found through the mapping store, the legacy name
        and, when a key is given, key derivation.
        """
        if key:
            self.encryption.validate_key(key)
        statuses = []
        for table_name in self._source_tables():
            present = self.adapter.list_triggers(table_name)
            known = set(self.generator.legacy_trigger_names(table_name))
            try:
                expected = self.generator.trigger_names(table_name)
            except InvalidIdentifierError:
                expected = []
            statuses.append(
                TableStatus(
                    table_name=table_name,
                    audit_table_name=self._find_shadow_table(table_name, key),
                    audit_triggers=[name for name in present if name in known],
                    trigger_count=len(present),
                    triggers_complete=bool(expected) and set(expected) <= set(present),
                )
            )
        return statuses
