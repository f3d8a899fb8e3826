"""External-load orchestrator.

Drives one staged file into a distributed table through the seven
PolyBase steps. Each step moves the load one state forward:

    Unconfigured -> CredentialReady -> DataSourceReady -> FileFormatReady
    -> ExternalTableReady -> Loaded -> Optimized -> Verified

A failing step leaves the orchestrator at the last state it reached and
raises StepFailedError; nothing is rolled back. Calling ``run()`` again
(or building a new orchestrator with ``start_state``) resumes from there.

Usage:
    orchestrator = LoadOrchestrator(plan, LocalWarehouse())
    result = orchestrator.run()
    print(result.report.summary())
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from migration.lib.errors import (
    AlreadyExistsError,
    AlreadyInitializedError,
    ConfigurationError,
    StepFailedError,
)
from migration.lib.logging import get_migration_logger
from migration.lib.polybase import LoadPlan
from migration.lib.verify import VerificationReport, verify_target
from migration.lib.warehouse.base import LoadStats, ObjectKind, WarehouseBackend

__all__ = ["LoadOrchestrator", "LoadResult", "LoadState", "StepOutcome"]


class LoadState(Enum):
    """Load states, in the order the steps reach them."""

    UNCONFIGURED = 0
    CREDENTIAL_READY = 1
    DATA_SOURCE_READY = 2
    FILE_FORMAT_READY = 3
    EXTERNAL_TABLE_READY = 4
    LOADED = 5
    OPTIMIZED = 6
    VERIFIED = 7

    @property
    def label(self) -> str:
        """CamelCase name, e.g. ``ExternalTableReady``."""
        return "".join(part.capitalize() for part in self.name.split("_"))

    @property
    def is_terminal(self) -> bool:
        return self is LoadState.VERIFIED

    def __lt__(self, other: "LoadState") -> bool:
        return self.value < other.value

    def __le__(self, other: "LoadState") -> bool:
        return self.value <= other.value

    @classmethod
    def parse(cls, text: Union[str, "LoadState"]) -> "LoadState":
        """Accept ``LOADED``, ``loaded`` or ``Loaded``."""
        if isinstance(text, LoadState):
            return text
        wanted = text.replace("_", "").replace("-", "").lower()
        for state in cls:
            if state.name.replace("_", "").lower() == wanted:
                return state
        raise ConfigurationError(
            f"Unknown load state: {text}",
            field="state",
            value=text,
            suggestion=f"Use one of: {', '.join(s.label for s in cls)}",
        )


@dataclass
class StepOutcome:
    """What one step did."""

    step: str
    from_state: LoadState
    to_state: LoadState
    status: str  # "done" | "skipped" | "replaced"
    message: str = ""
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "from_state": self.from_state.label,
            "to_state": self.to_state.label,
            "status": self.status,
            "message": self.message,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class LoadResult:
    """Outcome of an orchestrator run."""

    name: str
    state: LoadState
    steps: List[StepOutcome] = field(default_factory=list)
    load: Optional[LoadStats] = None
    report: Optional[VerificationReport] = None

    @property
    def success(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.label,
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
            "load": self.load.to_dict() if self.load else None,
            "report": self.report.to_dict() if self.report else None,
        }


class LoadOrchestrator:
    """Runs the seven load steps for one plan against one warehouse."""

    def __init__(
        self,
        plan: LoadPlan,
        warehouse: WarehouseBackend,
        *,
        start_state: Union[LoadState, str] = LoadState.UNCONFIGURED,
        expected_rows: Optional[int] = None,
    ) -> None:
        self.plan = plan
        self.warehouse = warehouse
        self.state = LoadState.parse(start_state)
        self.expected_rows = expected_rows if expected_rows is not None else plan.expected_rows
        self.steps: List[StepOutcome] = []
        self.load_stats: Optional[LoadStats] = None
        self.report: Optional[VerificationReport] = None

        self.log = get_migration_logger(__name__)
        self.log.set_context(migration=plan.name)

        self._handlers: Dict[LoadState, Tuple[str, Any]] = {
            LoadState.UNCONFIGURED: ("create_credential", self._create_credential),
            LoadState.CREDENTIAL_READY: ("create_data_source", self._create_data_source),
            LoadState.DATA_SOURCE_READY: ("create_file_format", self._create_file_format),
            LoadState.FILE_FORMAT_READY: ("create_external_table", self._create_external_table),
            LoadState.EXTERNAL_TABLE_READY: ("load", self._load),
            LoadState.LOADED: ("rebuild_indexes", self._rebuild_indexes),
            LoadState.OPTIMIZED: ("verify", self._verify),
        }

    def result(self) -> LoadResult:
        return LoadResult(
            name=self.plan.name,
            state=self.state,
            steps=list(self.steps),
            load=self.load_stats,
            report=self.report,
        )

    def step(self) -> StepOutcome:
        """Run the single transition out of the current state.

        Raises:
            StepFailedError: If the step fails; the state does not change
        """
        if self.state.is_terminal:
            raise StepFailedError(
                "Load is already verified",
                step="none",
                state_reached=self.state.label,
                suggestion="Start a new orchestrator to load again.",
            )

        name, handler = self._handlers[self.state]
        self.log.set_context(step=name)
        self.log.info("Step %s (from %s)", name, self.state.label)
        start = time.monotonic()
        try:
            outcome: StepOutcome = handler()
        except Exception as e:
            self.log.error("Step %s failed at %s: %s", name, self.state.label, e)
            raise StepFailedError(
                f"Step {name} failed: {getattr(e, 'message', e)}",
                table=self.plan.name,
                step=name,
                state_reached=self.state.label,
                cause=e,
            ) from e

        outcome.duration_seconds = time.monotonic() - start
        self.state = outcome.to_state
        self.steps.append(outcome)
        self.log.metric("step_duration_seconds", round(outcome.duration_seconds, 3), unit="seconds")
        return outcome

    def run(self, until: Union[LoadState, str] = LoadState.VERIFIED) -> LoadResult:
        """Run steps from the current state up to ``until``.

        Raises:
            StepFailedError: On the first failing step
        """
        stop = LoadState.parse(until)
        self.log.info("Running load %s from %s to %s", self.plan.name, self.state.label, stop.label)
        while self.state < stop:
            self.step()
        return self.result()

    def _outcome(self, name: str, status: str, message: str = "") -> StepOutcome:
        return StepOutcome(
            step=name,
            from_state=self.state,
            to_state=LoadState(self.state.value + 1),
            status=status,
            message=message,
        )

    # -- step handlers ---------------------------------------------------

    def _create_credential(self) -> StepOutcome:
        credential = self.plan.credential
        notes = []
        try:
            self.warehouse.create_master_key(credential.master_key_password)
            notes.append("created master key")
        except AlreadyInitializedError:
            self.log.info("Master key already exists, skipping")
            notes.append("master key exists")

        try:
            self.warehouse.create_credential(credential)
        except AlreadyExistsError:
            self.log.info("Credential %s already exists, skipping", credential.name)
            return self._outcome("create_credential", "skipped", "; ".join(notes + ["credential exists"]))
        return self._outcome("create_credential", "done", "; ".join(notes + ["created credential"]))

    def _create_data_source(self) -> StepOutcome:
        data_source = self.plan.data_source
        try:
            self.warehouse.create_data_source(data_source)
        except AlreadyExistsError:
            self.log.info("External data source %s already exists, skipping", data_source.name)
            return self._outcome("create_data_source", "skipped", f"{data_source.name} exists")
        return self._outcome("create_data_source", "done", f"{data_source.name} -> {data_source.location}")

    def _create_file_format(self) -> StepOutcome:
        file_format = self.plan.file_format
        try:
            self.warehouse.create_file_format(file_format)
        except AlreadyExistsError:
            self.log.info("External file format %s already exists, skipping", file_format.name)
            return self._outcome("create_file_format", "skipped", f"{file_format.name} exists")
        return self._outcome("create_file_format", "done", file_format.name)

    def _create_external_table(self) -> StepOutcome:
        table = self.plan.external_table
        status = "done"
        # External tables hold no data; recreate so the definition matches the plan
        if self.warehouse.exists(ObjectKind.EXTERNAL_TABLE, table.qualified_name):
            self.log.info("External table %s exists, recreating", table.qualified_name)
            self.warehouse.drop_external_table(table.qualified_name)
            status = "replaced"
        self.warehouse.create_external_table(table)
        return self._outcome("create_external_table", status, f"{table.qualified_name} over {table.location}")

    def _load(self) -> StepOutcome:
        plan = self.plan
        stats = self.warehouse.create_table_as_select(
            plan.target,
            plan.external_table,
            replace=plan.replace_target,
        )
        self.load_stats = stats
        self.log.metric("rows_loaded", stats.rows_loaded, unit="rows")
        if stats.rows_rejected:
            self.log.metric("rows_rejected", stats.rows_rejected, unit="rows")

        message = f"{stats.rows_loaded} rows into {plan.target.qualified_name}"
        if plan.drop_external_after_load:
            self.warehouse.drop_external_table(plan.external_table.qualified_name)
            message += f"; dropped {plan.external_table.qualified_name}"
        return self._outcome("load", "done", message)

    def _rebuild_indexes(self) -> StepOutcome:
        self.warehouse.rebuild_indexes(self.plan.target)
        return self._outcome("rebuild_indexes", "done", self.plan.target.qualified_name)

    def _verify(self) -> StepOutcome:
        report = verify_target(
            self.warehouse,
            self.plan.target,
            expected_rows=self.expected_rows,
            skew_tolerance=self.plan.skew_tolerance,
        )
        self.report = report
        self.log.metric("rows_verified", report.row_count, unit="rows")
        return self._outcome("verify", "done", report.summary())
