"""Per-species propagation runs and multi-species batches.

Each species goes through the same sequence of steps, inside one store
transaction:

    LOAD_RAW -> PROPAGATE_EXPR -> RECONCILE_EXPR -> PROPAGATE_NOEXPR
    -> RECONCILE_NOEXPR -> DETECT_CONFLICTS -> PERSIST -> DONE

Any error moves the species to FAILED and rolls its writes back. In a batch,
a failed species does not stop the others.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

import duckdb
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from exprcall_pipeline.calls.closure import SpeciesOntology
from exprcall_pipeline.calls.conflicts import ConflictDetector, ConflictPolicy, ConflictResolution
from exprcall_pipeline.calls.models import CallKind, Condition, ConditionAxis, RawCall
from exprcall_pipeline.calls.propagation import allowed_no_expression_targets, propagate_calls
from exprcall_pipeline.calls.reconciliation import CallIdAllocator, reconcile_calls
from exprcall_pipeline.errors import (
    BatchPropagationError,
    PersistenceError,
    QueryInterruptedError,
)
from exprcall_pipeline.persistence.cancellation import CancellationToken
from exprcall_pipeline.persistence.duckdb_store import CallFilter, PipelineStore

logger = structlog.get_logger(__name__)


class SpeciesState(str, Enum):
    """Steps of a species run."""

    LOAD_RAW = "load_raw"
    PROPAGATE_EXPR = "propagate_expr"
    RECONCILE_EXPR = "reconcile_expr"
    PROPAGATE_NOEXPR = "propagate_noexpr"
    RECONCILE_NOEXPR = "reconcile_noexpr"
    DETECT_CONFLICTS = "detect_conflicts"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class PropagationOptions:
    """Settings of a propagation run.

    Attributes:
        axes: Axes to propagate along, in pass order
        restrict_no_expression_targets: Restrict no-expression propagation
            to structures having data and their ancestors
        policy: Handling of directly observed contradictions
        include_propagated_expression: See ConflictDetector
        max_workers: Species processed in parallel
        max_interrupt_retries: Retries of a species after an interrupted query
        query_timeout_seconds: Interrupt an attempt running longer than this
        retry_backoff_seconds: Base of the exponential wait between retries
        call_filter: Optional restriction of the raw calls fetched
    """

    axes: tuple[ConditionAxis, ...] = (ConditionAxis.STRUCTURE,)
    restrict_no_expression_targets: bool = True
    policy: ConflictPolicy = ConflictPolicy.ABORT_SPECIES
    include_propagated_expression: bool = False
    max_workers: int = 1
    max_interrupt_retries: int = 2
    query_timeout_seconds: Optional[float] = None
    retry_backoff_seconds: float = 1.0
    call_filter: Optional[CallFilter] = None

    @classmethod
    def from_config(cls, config: "PipelineConfig") -> "PropagationOptions":
        axes = []
        if config.propagation.include_substructures:
            axes.append(ConditionAxis.STRUCTURE)
        if config.propagation.include_substages:
            axes.append(ConditionAxis.STAGE)
        return cls(
            axes=tuple(axes),
            restrict_no_expression_targets=config.propagation.restrict_no_expression_targets,
            policy=config.conflicts.policy,
            include_propagated_expression=config.conflicts.include_propagated_expression,
            max_workers=config.execution.max_workers,
            max_interrupt_retries=config.execution.max_interrupt_retries,
            query_timeout_seconds=config.execution.query_timeout_seconds,
            retry_backoff_seconds=config.execution.retry_backoff_seconds,
        )


@dataclass
class SpeciesOutcome:
    """What happened to one species.

    Attributes:
        species_id: Species processed
        states: Steps entered during the last attempt, in order
        attempts: Number of attempts made
        counts: Row counts per category, filled once persisted
        error: Exception that made the species fail, if any
    """

    species_id: int
    states: list[SpeciesState] = field(default_factory=list)
    attempts: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    error: Optional[BaseException] = None

    @property
    def state(self) -> Optional[SpeciesState]:
        return self.states[-1] if self.states else None

    @property
    def succeeded(self) -> bool:
        return self.state is SpeciesState.DONE

    def enter(self, state: SpeciesState) -> None:
        self.states.append(state)
        logger.debug("species_state", species_id=self.species_id, state=state.value)

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.enter(SpeciesState.FAILED)

    def summary(self) -> dict:
        summary = {
            "state": self.state.value if self.state else None,
            "attempts": self.attempts,
            **self.counts,
        }
        if self.error is not None:
            summary["error"] = f"{type(self.error).__name__}: {self.error}"
        return summary


@dataclass
class BatchReport:
    """Outcomes of a multi-species run, keyed by species ID."""

    outcomes: dict[int, SpeciesOutcome] = field(default_factory=dict)

    @property
    def failures(self) -> dict[int, BaseException]:
        return {
            species_id: outcome.error
            for species_id, outcome in self.outcomes.items()
            if outcome.error is not None
        }

    @property
    def succeeded(self) -> list[int]:
        return sorted(
            species_id for species_id, outcome in self.outcomes.items() if outcome.succeeded
        )

    def raise_for_failures(self) -> None:
        """
        Raises:
            BatchPropagationError: If any species failed
        """
        failures = self.failures
        if failures:
            raise BatchPropagationError(failures)


class PropagationOrchestrator:
    """
    Runs propagation, reconciliation and conflict detection for species.

    Args:
        store: Store holding the inputs and receiving the results
        options: Run settings
        provenance: Optional tracker receiving one step per species
    """

    def __init__(
        self,
        store: PipelineStore,
        options: Optional[PropagationOptions] = None,
        provenance: Optional["ProvenanceTracker"] = None,
    ):
        self.store = store
        self.options = options or PropagationOptions()
        self.provenance = provenance
        self.detector = ConflictDetector(
            policy=self.options.policy,
            include_propagated_expression=self.options.include_propagated_expression,
        )

    @classmethod
    def from_config(
        cls, store: PipelineStore, config: "PipelineConfig", provenance=None
    ) -> "PropagationOrchestrator":
        return cls(store, PropagationOptions.from_config(config), provenance)

    def _create_retry_decorator(self):
        """Retry attempts interrupted by cancellation, nothing else."""
        return retry(
            stop=stop_after_attempt(self.options.max_interrupt_retries + 1),
            wait=wait_exponential(multiplier=self.options.retry_backoff_seconds, max=30),
            retry=retry_if_exception_type(QueryInterruptedError),
            before_sleep=_log_retry,
            reraise=True,
        )

    # ------------------------------------------------------------------
    # Single species
    # ------------------------------------------------------------------

    def run_species(
        self, species_id: int, store: Optional[PipelineStore] = None
    ) -> SpeciesOutcome:
        """
        Process one species, retrying interrupted attempts.

        Args:
            species_id: Species to process
            store: Store to use (a worker's own cursor); defaults to self.store

        Returns:
            SpeciesOutcome in state DONE

        Raises:
            Exception: The species' error, after the outcome was marked FAILED
                       and its writes rolled back. Use run_batch to collect
                       errors instead.
        """
        outcome = SpeciesOutcome(species_id=species_id)
        self._run_species(species_id, store or self.store, outcome)
        return outcome

    def _run_species(self, species_id: int, store: PipelineStore, outcome: SpeciesOutcome) -> None:
        log = logger.bind(species_id=species_id)
        log.info("species_started")
        try:
            self._create_retry_decorator()(self._attempt)(species_id, store, outcome)
        except Exception as exc:
            outcome.fail(exc)
            log.error(
                "species_failed",
                state_trail=[s.value for s in outcome.states],
                attempts=outcome.attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        log.info("species_done", attempts=outcome.attempts, **outcome.counts)

    def _attempt(self, species_id: int, store: PipelineStore, outcome: SpeciesOutcome) -> None:
        outcome.attempts += 1
        outcome.states = []
        outcome.counts = {}
        token = CancellationToken()
        with token.timeout_after(self.options.query_timeout_seconds):
            try:
                with store.transaction():
                    self._process(species_id, store, outcome, token)
            except duckdb.InterruptException as exc:
                raise QueryInterruptedError(
                    f"Species {species_id} interrupted during {_state_name(outcome)}"
                ) from exc
            except duckdb.Error as exc:
                raise PersistenceError(
                    f"Species {species_id} failed during {_state_name(outcome)}: {exc}"
                ) from exc

    def _process(
        self,
        species_id: int,
        store: PipelineStore,
        outcome: SpeciesOutcome,
        token: CancellationToken,
    ) -> None:
        options = self.options

        outcome.enter(SpeciesState.LOAD_RAW)
        raw_expression = store.fetch_raw_calls(
            species_id, CallKind.EXPRESSION, options.call_filter, token
        )
        raw_no_expression = store.fetch_raw_calls(
            species_id, CallKind.NO_EXPRESSION, options.call_filter, token
        )
        ontology = SpeciesOntology(
            store.fetch_structure_closure(species_id, token),
            store.fetch_stage_closure(species_id, token),
        )
        existing_ids = {
            kind: store.existing_call_ids(species_id, kind, token) for kind in CallKind
        }
        allocator = CallIdAllocator(start=store.max_aggregate_call_id(species_id, token) + 1)

        # Later axes propagate the aggregates of the previous pass, inside
        # reconcile_calls
        outcome.enter(SpeciesState.PROPAGATE_EXPR)
        token.raise_if_cancelled()
        propagated = self._propagate_first_axis(raw_expression, ontology, CallKind.EXPRESSION, {})

        outcome.enter(SpeciesState.RECONCILE_EXPR)
        expression = reconcile_calls(
            raw_expression,
            ontology,
            CallKind.EXPRESSION,
            axes=options.axes,
            existing_ids=existing_ids[CallKind.EXPRESSION],
            allocator=allocator,
            propagated=propagated,
        )

        outcome.enter(SpeciesState.PROPAGATE_NOEXPR)
        token.raise_if_cancelled()
        target_filters = self._no_expression_target_filters(
            raw_expression, raw_no_expression, ontology
        )
        propagated = self._propagate_first_axis(
            raw_no_expression, ontology, CallKind.NO_EXPRESSION, target_filters
        )

        outcome.enter(SpeciesState.RECONCILE_NOEXPR)
        no_expression = reconcile_calls(
            raw_no_expression,
            ontology,
            CallKind.NO_EXPRESSION,
            axes=options.axes,
            target_filters=target_filters,
            existing_ids=existing_ids[CallKind.NO_EXPRESSION],
            allocator=allocator,
            propagated=propagated,
        )

        outcome.enter(SpeciesState.DETECT_CONFLICTS)
        token.raise_if_cancelled()
        resolution = self.detector.detect(
            expression, no_expression, raw_expression, raw_no_expression
        )

        outcome.enter(SpeciesState.PERSIST)
        token.raise_if_cancelled()
        persisted_ids = {
            call_id for ids in existing_ids.values() for call_id in ids.values()
        }
        outcome.counts = self._persist(species_id, store, resolution, persisted_ids, token)
        outcome.counts["raw_expression_calls"] = len(raw_expression)
        outcome.counts["raw_no_expression_calls"] = len(raw_no_expression)
        token.raise_if_cancelled()

        outcome.enter(SpeciesState.DONE)

    def _propagate_first_axis(
        self,
        raw_calls: Sequence[RawCall],
        ontology: SpeciesOntology,
        kind: CallKind,
        target_filters: dict[ConditionAxis, frozenset[str]],
    ) -> Optional[dict[Condition, list[RawCall]]]:
        """Targets of the raw calls along the first axis, None without propagation."""
        if not self.options.axes:
            return None
        axis = self.options.axes[0]
        return propagate_calls(raw_calls, ontology, kind, axis, target_filters.get(axis))

    def _no_expression_target_filters(
        self,
        raw_expression: Sequence[RawCall],
        raw_no_expression: Sequence[RawCall],
        ontology: SpeciesOntology,
    ) -> dict[ConditionAxis, frozenset[str]]:
        if not (
            self.options.restrict_no_expression_targets
            and ConditionAxis.STRUCTURE in self.options.axes
        ):
            return {}
        allowed = allowed_no_expression_targets(
            [*raw_expression, *raw_no_expression], ontology, ConditionAxis.STRUCTURE
        )
        return {ConditionAxis.STRUCTURE: allowed}

    @staticmethod
    def _persist(
        species_id: int,
        store: PipelineStore,
        resolution: ConflictResolution,
        persisted_ids: set[int],
        token: Optional[CancellationToken] = None,
    ) -> dict[str, int]:
        """Write the species' results; runs inside the species transaction."""
        results = (resolution.expression, resolution.no_expression)
        calls = [call for result in results for call in result.calls]
        updated_ids = set().union(*(result.updated_ids for result in results))

        stale_ids = persisted_ids - {call.id for call in calls}
        deleted = store.delete_aggregate_calls(species_id, stale_ids, token)
        store.delete_provenance_links(species_id, updated_ids, token)
        updated = store.update_aggregate_calls(
            species_id, [call for call in calls if call.id in updated_ids], token
        )
        inserted = store.insert_aggregate_calls(
            species_id, [call for call in calls if call.id not in updated_ids], token
        )
        links = store.insert_provenance_links(
            species_id, [link for result in results for link in result.links], token
        )

        flagged = 0
        for evidence_type, raw_call_ids in sorted(
            resolution.raw_conflicts.items(), key=lambda item: item[0].value
        ):
            flagged += store.flag_raw_evidence_conflict(
                species_id, evidence_type, raw_call_ids, token
            )
        recorded = store.record_condition_conflicts(species_id, resolution.conflicts, token)

        return {
            "expression_calls": len(resolution.expression),
            "no_expression_calls": len(resolution.no_expression),
            "inserted": inserted,
            "updated": updated,
            "deleted": deleted,
            "provenance_links": links,
            "invalidated_no_expression": len(resolution.deleted_ids),
            "rewritten_no_expression": len(resolution.rewritten_ids),
            "flagged_raw_calls": flagged,
            "excluded_conditions": len(resolution.excluded_conditions),
            "condition_conflicts": recorded,
        }

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def run_batch(self, species_ids: Optional[Sequence[int]] = None) -> BatchReport:
        """
        Process several species, isolating failures.

        Args:
            species_ids: Species to process (all species with raw calls if
                         None or empty)

        Returns:
            BatchReport with one outcome per species. Call
            raise_for_failures() to turn failures into an exception.
        """
        species_ids = list(species_ids or self.store.species_ids())
        report = BatchReport()
        logger.info(
            "batch_started", species_count=len(species_ids), max_workers=self.options.max_workers
        )

        if self.options.max_workers == 1 or len(species_ids) <= 1:
            for species_id in species_ids:
                report.outcomes[species_id] = self._run_isolated(species_id, self.store)
        else:
            with ThreadPoolExecutor(max_workers=self.options.max_workers) as executor:
                futures = {
                    species_id: executor.submit(self._run_on_worker, species_id)
                    for species_id in species_ids
                }
                for species_id, future in futures.items():
                    report.outcomes[species_id] = future.result()

        if self.provenance is not None:
            for species_id in species_ids:
                self.provenance.record_step(
                    f"species_{species_id}", report.outcomes[species_id].summary()
                )

        logger.info(
            "batch_complete",
            succeeded=len(report.succeeded),
            failed=sorted(report.failures),
        )
        return report

    def _run_isolated(self, species_id: int, store: PipelineStore) -> SpeciesOutcome:
        outcome = SpeciesOutcome(species_id=species_id)
        try:
            self._run_species(species_id, store, outcome)
        except Exception:
            # Recorded on the outcome by _run_species
            pass
        return outcome

    def _run_on_worker(self, species_id: int) -> SpeciesOutcome:
        worker_store = self.store.worker_store()
        try:
            return self._run_isolated(species_id, worker_store)
        finally:
            worker_store.close()


def _state_name(outcome: SpeciesOutcome) -> str:
    return outcome.state.value if outcome.state else "start"


def _log_retry(retry_state: RetryCallState) -> None:
    species_id = retry_state.args[0] if retry_state.args else None
    logger.warning(
        "species_attempt_interrupted",
        species_id=species_id,
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )
