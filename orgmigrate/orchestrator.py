"""Migration orchestrator - coordinates the complete migration process."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .constants import (
    CSV_FILE_SUFFIX,
    CSV_ISSUES_ERRORS_FILENAME,
    CSV_SOURCE_FILE_SUFFIX,
    CSV_TARGET_FILE_SUFFIX,
    ID_FIELD,
)
from .errors import CommandInitializationError, MigrationError, UserAbortError, ValidateOnlyExit
from .extractors.csv_extractor import CsvFileIO
from .loaders.api_loader import RestDataService
from .loaders.base import DataService
from .loaders.file_loader import CsvFileService
from .models.config import load_script
from .models.migration import (
    EndpointType,
    MigrationConfig,
    MigrationRun,
    MigrationStep,
    MigrationStatus,
)
from .models.script import DataMedia, MigrationScript
from .models.task import MigrationTask
from .services.conformance import ConformanceEngine, ConformanceOptions, CsvFileRef, LookupPair
from .services.dependency_graph import DependencyGraph
from .services.hooks import ON_AFTER, ON_BEFORE, ON_DATA_RETRIEVED, HookRunner, NullHookRunner
from .services.reconciliation import ReconciliationEngine
from .services.record_cache import RecordCache
from .services.task_ordering import TaskOrder, TaskOrderingEngine

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]


class MigrationOrchestrator:
    """
    Orchestrates the complete migration process.

    Handles:
    - Loading and validating the migration file
    - Building the dependency graph and the task orders
    - Validating and repairing source flat files
    - Multi-pass retrieval and writes
    - Lifecycle hooks and confirmation prompts
    - Progress tracking and reporting
    """

    def __init__(
        self,
        config: MigrationConfig,
        source: Optional[DataService] = None,
        target: Optional[DataService] = None,
        hooks: Optional[HookRunner] = None,
        confirm: Optional[ConfirmCallback] = None,
        script: Optional[MigrationScript] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            source: Source endpoint; built from the config when omitted
            target: Target endpoint; built from the config when omitted
            hooks: Lifecycle hook runner
            confirm: Prompt callback returning True to continue
            script: Already loaded migration; read from ``export.json`` when omitted
        """
        self.config = config
        self.source = source
        self.target = target
        self.source_files: Optional[DataService] = None
        self.hooks = hooks or NullHookRunner()
        self.confirm = confirm
        self.script = script

        # Runtime state
        self.run: Optional[MigrationRun] = None
        self.csv_io: Optional[CsvFileIO] = None
        self.cache: Optional[RecordCache] = None
        self.tasks: List[MigrationTask] = []
        self.order: Optional[TaskOrder] = None
        self.engine: Optional[ReconciliationEngine] = None

        self._setup_directories()

    def _setup_directories(self):
        """Create output directories."""
        self.work_dir = Path(self.config.path)
        self.source_dir = self.work_dir / "source"
        self.output_dir = Path(self.config.resolved_output_dir)
        self.logs_dir = self.output_dir / "logs"

        for dir in [self.source_dir, self.output_dir, self.logs_dir]:
            dir.mkdir(parents=True, exist_ok=True)

    def run_migration(self, validate_only: bool = False) -> MigrationRun:
        """
        Run the complete migration.

        Args:
            validate_only: Stop after the flat-file validation phase

        Returns:
            MigrationRun with results and statistics
        """
        self.run = MigrationRun(
            name=self.config.name,
            config_path=self.config.script_path,
            validate_only=validate_only,
        )
        self.run.started_at = datetime.utcnow()
        self.run.status = MigrationStatus.LOADING

        try:
            # Phase 1: Loading
            logger.info("=== PHASE 1: LOADING ===")
            self._run_loading(validate_only)

            # Phase 2: Setup
            logger.info("=== PHASE 2: SETUP ===")
            self.run.status = MigrationStatus.SETUP
            self._run_setup()

            # Phase 3: Flat-file processing
            logger.info("=== PHASE 3: PROCESSING CSV FILES ===")
            self.run.status = MigrationStatus.PROCESSING_CSV
            self._run_csv_processing()

            # Phase 4: Preparation
            logger.info("=== PHASE 4: PREPARING ===")
            self.run.status = MigrationStatus.PREPARING
            self._run_preparation()

            # Phase 5: Pre-hooks
            logger.info("=== PHASE 5: PRE-HOOKS ===")
            self.hooks.run_event(ON_BEFORE)

            # Phase 6: Execution
            logger.info("=== PHASE 6: EXECUTION ===")
            self._run_execution()

            # Phase 7: Post-hooks
            logger.info("=== PHASE 7: POST-HOOKS ===")
            self.hooks.run_event(ON_AFTER)

            self.run.status = MigrationStatus.COMPLETED
            logger.info("=== MIGRATION COMPLETED ===")

        except ValidateOnlyExit as e:
            logger.info(f"Validation finished: {e}")
            self.run.status = MigrationStatus.COMPLETED

        except UserAbortError as e:
            logger.warning(f"Migration cancelled: {e}")
            self._record_error(e)
            self.run.status = MigrationStatus.CANCELLED

        except MigrationError as e:
            logger.error(f"Migration failed: {e}")
            self._record_error(e)
            self.run.status = MigrationStatus.FAILED

        except Exception as e:
            logger.exception(f"Migration failed with an unexpected error: {e}")
            self._record_error(e)
            self.run.status = MigrationStatus.FAILED

        finally:
            self.run.completed_at = datetime.utcnow()
            self._collect_results()
            self.run.update_totals()
            self._save_report()

        return self.run

    def compute_order(self) -> TaskOrder:
        """Load the migration file and build the task orders without touching any data."""
        self._run_loading(validate_only=False)
        self._run_setup()
        return self.order

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _begin_step(self, name: str, status: MigrationStatus, entity: str = "") -> Optional[MigrationStep]:
        if self.run is None:
            return None
        step = self.run.add_step(name=name, entity=entity)
        step.status = status
        step.started_at = datetime.utcnow()
        self.run.current_step = step.id
        return step

    def _end_step(self, step: Optional[MigrationStep]) -> None:
        if step is None:
            return
        step.status = MigrationStatus.COMPLETED
        step.completed_at = datetime.utcnow()

    def _run_loading(self, validate_only: bool):
        """Load export.json and build the flat-file accessor."""
        step = self._begin_step("Load migration file", MigrationStatus.LOADING)
        if self.script is None:
            self.script = load_script(self.config.script_path)
        if validate_only:
            self.script.validate_csv_files_only = True

        self.csv_io = CsvFileIO(
            read_delimiter=self.script.csv_read_delimiter,
            write_delimiter=self.script.csv_write_delimiter,
            encoding=self.script.csv_file_encoding,
            insert_nulls=self.script.csv_insert_nulls,
        )
        logger.info(f"Loaded {len(self.script.objects)} object declaration(s) from {self.config.script_path}")
        self._end_step(step)

    def _create_service(self, kind: EndpointType, url: Optional[str], token: Optional[str], is_source: bool) -> DataService:
        if kind == EndpointType.ORG:
            if not url:
                raise CommandInitializationError(
                    f"{'Source' if is_source else 'Target'} org requires a base URL"
                )
            return RestDataService(
                base_url=url,
                api_key=token,
                batch_size=self.config.batch_size,
                rate_limit=self.config.rate_limit,
                max_retries=self.config.max_retries,
                all_or_none=self.script.all_or_none,
            )
        if is_source:
            return CsvFileService(str(self.source_dir), self.csv_io, suffix=CSV_SOURCE_FILE_SUFFIX)
        return CsvFileService(str(self.output_dir), self.csv_io)

    def _run_setup(self):
        """Build the dependency graph and compute the task orders."""
        step = self._begin_step("Build dependency graph", MigrationStatus.SETUP)
        if self.source is None:
            self.source = self._create_service(
                self.config.source, self.config.source_url, self.config.source_token, is_source=True
            )
        if self.target is None:
            self.target = self._create_service(
                self.config.target, self.config.target_url, self.config.target_token, is_source=False
            )
        if self.source.media == DataMedia.FILE:
            self.source_files = self.source
        else:
            self.source_files = CsvFileService(str(self.source_dir), self.csv_io, suffix=CSV_SOURCE_FILE_SUFFIX)

        graph = DependencyGraph(self.script, self.source, self.target, max_workers=self.config.describe_workers)
        self.tasks = graph.build()
        self.order = TaskOrderingEngine().build_order(self.tasks, declared_order_only=self.script.keep_object_order)

        if self.run is not None:
            self.run.task_order = self.order.to_dict()
            self.run.correctness_risks = list(self.order.correctness_risks)
        self._end_step(step)

    def _file_tasks(self) -> List[MigrationTask]:
        """Tasks whose source records come from flat files."""
        if self.source.media == DataMedia.FILE:
            return list(self.tasks)
        return [t for t in self.tasks if t.obj.use_source_csv_file]

    def _csv_file_refs(self, tasks: List[MigrationTask]):
        files: Dict[str, CsvFileRef] = {}
        required: Dict[str, List[str]] = {}
        pairs: Dict[str, List[LookupPair]] = {}
        for task in tasks:
            obj = task.obj
            fields = obj.fields_in_query
            files[obj.name] = CsvFileRef(
                object_name=obj.name,
                raw_path=str(self.work_dir / f"{obj.name}{CSV_FILE_SUFFIX}"),
                path=self.source_files.file_path(obj.name),
                fields=fields,
                external_id=obj.complex_external_id,
            )
            required[obj.name] = [f for f in fields if "." not in f and f != ID_FIELD]
            pairs[obj.name] = [
                LookupPair(
                    id_column=lookup.name,
                    reference_column=lookup.reference_column,
                    parent_object=lookup.parent.name,
                    parent_external_id=lookup.parent_external_id,
                    is_self_reference=lookup.is_self_reference,
                )
                for lookup in obj.lookups.values()
                if lookup.parent is not None and lookup.writable and lookup.parent.external_id != ID_FIELD
            ]
        return files, required, pairs

    def _run_csv_processing(self):
        """Validate and repair the source flat files."""
        file_tasks = self._file_tasks()
        if not file_tasks:
            logger.info("Source is an org, no flat files to process")
            if self.script.validate_csv_files_only:
                raise ValidateOnlyExit("nothing to validate for an org source")
            return

        step = self._begin_step("Validate and repair flat files", MigrationStatus.PROCESSING_CSV)
        files, required, pairs = self._csv_file_refs(file_tasks)

        if self.script.import_csv_files_as_is:
            for ref in files.values():
                if self.csv_io.exists(ref.raw_path):
                    self.csv_io.copy(ref.raw_path, ref.path)
            logger.info(f"Imported {len(files)} file(s) as is")
            self._end_step(step)
            return

        self.cache = RecordCache()
        engine = ConformanceEngine(
            self.csv_io,
            ConformanceOptions(
                exclude_ids=self.script.exclude_ids_from_csv_files,
                allow_generated_ids=self.script.exclude_ids_from_csv_files,
            ),
        )
        issues = engine.validate_and_repair(files, required, pairs, self.cache)
        engine.write_issues_report(issues, str(self.work_dir / CSV_ISSUES_ERRORS_FILENAME))

        self.run.csv_issues_count = len(issues)
        step.records_processed = len(files)
        step.warnings.extend(f"{i.object_name}: {i.error} {i.field_name}".strip() for i in issues)
        self._end_step(step)

        if self.script.validate_csv_files_only:
            raise ValidateOnlyExit(f"{len(issues)} issue(s) found in the flat files")

        if issues and self.script.prompt_on_issues_in_csv_files:
            if not self._confirm(f"{len(issues)} issue(s) found in the flat files. Continue?"):
                raise UserAbortError("aborted on flat-file issues")

    def _run_preparation(self):
        """Create the reconciliation engine."""
        step = self._begin_step("Prepare execution", MigrationStatus.PREPARING)
        self.engine = ReconciliationEngine(
            source=self.source,
            target=self.target,
            tasks=self.tasks,
            hooks=self.hooks,
            confirm=self._confirm,
            prompt_on_missing_parents=self.script.prompt_on_missing_parent_objects and not self.config.noprompt,
            reports_dir=str(self.work_dir),
            csv_io=self.csv_io,
            source_files=self.source_files,
        )
        self._end_step(step)

    def _run_execution(self):
        """Delete old data, retrieve, then write."""
        self.run.status = MigrationStatus.RETRIEVING
        step = self._begin_step("Retrieve records", MigrationStatus.RETRIEVING)
        self.engine.delete_old_data(self.order.delete)
        has_records = self.engine.retrieve(self.order.query)
        step.records_processed = sum(len(t.source.id_records_map) for t in self.tasks)
        self._end_step(step)
        self.hooks.run_event(ON_DATA_RETRIEVED)

        if not any(has_records.values()):
            logger.info("No records retrieved for any object")

        self.run.status = MigrationStatus.UPDATING
        step = self._begin_step("Write records", MigrationStatus.UPDATING)
        self.engine.execute(self.order.update, self.order.delete)
        self._end_step(step)

        if self.target.media == DataMedia.ORG and self.script.create_target_csv_files:
            self._write_target_files()

    def _write_target_files(self):
        """Write the matched target records of each updated object next to the run logs."""
        for task in self.order.update:
            records = list(task.source_to_target.values())
            if not records:
                continue
            columns: List[str] = []
            for record in records:
                for column in record:
                    if column not in columns:
                        columns.append(column)
            columns = [ID_FIELD] + [c for c in columns if c != ID_FIELD]
            path = self.output_dir / (
                f"{task.obj.target_object_name}_{task.obj.operation.value}{CSV_TARGET_FILE_SUFFIX}{CSV_FILE_SUFFIX}"
            )
            self.csv_io.write_all(str(path), records, columns)
            logger.debug(f"{task.name}: wrote {len(records)} target record(s) to {path}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _confirm(self, message: str) -> bool:
        if self.config.noprompt or self.confirm is None:
            logger.warning(f"{message} (continuing)")
            return True
        return self.confirm(message)

    def _record_error(self, error: Exception) -> None:
        self.run.errors.append({
            "phase": self.run.status.value,
            "error": str(error),
            "type": type(error).__name__,
            "timestamp": datetime.utcnow().isoformat(),
        })

    def _collect_results(self) -> None:
        """Copy per-object summaries into the run."""
        for task in self.tasks:
            self.run.object_summaries[task.name] = task.summary
            if task.summary.total:
                step = self.run.add_step(name=f"Migrate {task.name}", entity=task.name)
                step.status = MigrationStatus.COMPLETED
                step.records_processed = task.summary.total
                step.records_succeeded = task.summary.total
        if self.engine is not None:
            self.run.missing_parents_count = len(self.engine.missing_parents)

    def _save_report(self):
        """Save the migration report."""
        filepath = self.logs_dir / f"migration_report_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.json"
        with open(filepath, 'w') as f:
            json.dump(self.run.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {filepath}")
