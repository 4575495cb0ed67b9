"""Integration tests for the propagation orchestrator on a DuckDB store."""

import polars as pl
import pytest

from exprcall_pipeline.calls.conflicts import ConflictPolicy
from exprcall_pipeline.calls.models import (
    CallKind,
    ConditionAxis,
    DataState,
    EvidenceType,
    OriginOfLine,
)
from exprcall_pipeline.calls.orchestrator import (
    PropagationOptions,
    PropagationOrchestrator,
    SpeciesState,
)
from exprcall_pipeline.errors import (
    BatchPropagationError,
    ContradictoryEvidenceError,
    MissingClosureError,
    QueryInterruptedError,
)
from exprcall_pipeline.config.schema import PipelineConfig
from exprcall_pipeline.persistence import PipelineStore, ProvenanceTracker

HUMAN = 9606
MOUSE = 10090
ZEBRAFISH = 7955

FULL_TRAIL = [
    SpeciesState.LOAD_RAW,
    SpeciesState.PROPAGATE_EXPR,
    SpeciesState.RECONCILE_EXPR,
    SpeciesState.PROPAGATE_NOEXPR,
    SpeciesState.RECONCILE_NOEXPR,
    SpeciesState.DETECT_CONFLICTS,
    SpeciesState.PERSIST,
    SpeciesState.DONE,
]


def raw_rows(species_id, rows):
    """rows: (call_id, kind, gene, structure, stage, {evidence column: state})"""
    return pl.DataFrame(
        [
            {
                "species_id": species_id,
                "call_id": call_id,
                "call_kind": kind,
                "gene_id": gene_id,
                "structure_id": structure_id,
                "stage_id": stage_id,
                "affymetrix": evidence.get("affymetrix"),
                "rna_seq": evidence.get("rna_seq"),
            }
            for call_id, kind, gene_id, structure_id, stage_id, evidence in rows
        ],
        schema={
            "species_id": pl.Int64,
            "call_id": pl.Utf8,
            "call_kind": pl.Utf8,
            "gene_id": pl.Utf8,
            "structure_id": pl.Utf8,
            "stage_id": pl.Utf8,
            "affymetrix": pl.Utf8,
            "rna_seq": pl.Utf8,
        },
    )


def load_ontologies(store, species_id):
    """brain < head < body; adult < life."""
    store.load_relations(ConditionAxis.STRUCTURE, pl.DataFrame({
        "species_id": [species_id] * 3,
        "source_id": ["brain", "brain", "head"],
        "target_id": ["head", "body", "body"],
    }))
    store.load_relations(ConditionAxis.STAGE, pl.DataFrame({
        "species_id": [species_id],
        "source_id": ["adult"],
        "target_id": ["life"],
    }))


def load_species(store, species_id):
    load_ontologies(store, species_id)
    store.load_raw_calls(raw_rows(species_id, [
        ("e1", "expression", "G1", "brain", "adult", {"affymetrix": "high quality"}),
        ("n1", "no_expression", "G1", "head", "adult", {"affymetrix": "high quality"}),
        ("n2", "no_expression", "G1", "head", "adult", {"rna_seq": "poor quality"}),
    ]))


@pytest.fixture
def store(tmp_path):
    store = PipelineStore(tmp_path / "test.duckdb")
    load_species(store, HUMAN)
    # Calls in a structure missing from the mouse anatomy
    load_ontologies(store, MOUSE)
    store.load_raw_calls(raw_rows(MOUSE, [
        ("m1", "expression", "G7", "tail", "adult", {"affymetrix": "high quality"}),
    ]))
    yield store
    store.close()


@pytest.fixture
def options():
    return PropagationOptions(retry_backoff_seconds=0)


def calls_by_structure(store, species_id, kind):
    return {
        call.condition.structure_id: call
        for call in store.fetch_aggregate_calls(species_id, kind)
    }


# ============================================================================
# Single species
# ============================================================================

def test_run_species_persists_reconciled_calls(store, options):
    outcome = PropagationOrchestrator(store, options).run_species(HUMAN)

    assert outcome.states == FULL_TRAIL
    assert outcome.succeeded
    assert outcome.attempts == 1

    expression = calls_by_structure(store, HUMAN, CallKind.EXPRESSION)
    assert set(expression) == {"brain", "head", "body"}
    assert expression["brain"].observed_directly
    assert expression["body"].structure_origin is OriginOfLine.PROPAGATED

    no_expression = calls_by_structure(store, HUMAN, CallKind.NO_EXPRESSION)
    assert set(no_expression) == {"head", "brain"}
    # Inherited absence contradicted by expression observed in the brain
    brain = no_expression["brain"]
    assert brain.state(EvidenceType.AFFYMETRIX) == DataState.NO_DATA
    assert brain.state(EvidenceType.RNA_SEQ) == DataState.LOW_QUALITY

    links = store.fetch_provenance_links(HUMAN, [brain.id])
    assert [link.raw_call_id for link in links] == ["n2"]
    assert store.fetch_raw_conflicts(HUMAN) == {EvidenceType.AFFYMETRIX: {"n1"}}

    assert outcome.counts["expression_calls"] == 3
    assert outcome.counts["no_expression_calls"] == 2
    assert outcome.counts["provenance_links"] == 6
    assert outcome.counts["rewritten_no_expression"] == 1


def test_ids_unique_across_kinds(store, options):
    PropagationOrchestrator(store, options).run_species(HUMAN)

    ids = [call.id for call in store.fetch_aggregate_calls(HUMAN)]
    assert sorted(ids) == list(range(1, 6))


def test_rerun_is_idempotent(store, options):
    orchestrator = PropagationOrchestrator(store, options)
    orchestrator.run_species(HUMAN)
    first_calls = store.fetch_aggregate_calls(HUMAN)
    first_links = store.fetch_provenance_links(HUMAN)

    outcome = orchestrator.run_species(HUMAN)

    assert store.fetch_aggregate_calls(HUMAN) == first_calls
    assert store.fetch_provenance_links(HUMAN) == first_links
    assert outcome.counts["updated"] == 5
    assert outcome.counts["inserted"] == 0


def test_rerun_removes_stale_calls(store, options):
    orchestrator = PropagationOrchestrator(store, options)
    orchestrator.run_species(HUMAN)
    brain_id = calls_by_structure(store, HUMAN, CallKind.NO_EXPRESSION)["brain"].id

    store.conn.execute("DELETE FROM raw_calls WHERE species_id = ? AND call_id = 'n2'", [HUMAN])
    outcome = orchestrator.run_species(HUMAN)

    no_expression = calls_by_structure(store, HUMAN, CallKind.NO_EXPRESSION)
    assert set(no_expression) == {"head"}
    assert outcome.counts["deleted"] == 1
    assert store.fetch_provenance_links(HUMAN, [brain_id]) == []
    head_links = store.fetch_provenance_links(HUMAN, [no_expression["head"].id])
    assert [link.raw_call_id for link in head_links] == ["n1"]


def test_missing_closure_fails_species_without_retry(store, options):
    orchestrator = PropagationOrchestrator(store, options)

    with pytest.raises(MissingClosureError):
        orchestrator.run_species(MOUSE)

    assert store.fetch_aggregate_calls(MOUSE) == []


def test_missing_closure_fails_during_propagation(store, options):
    report = PropagationOrchestrator(store, options).run_batch([MOUSE])

    outcome = report.outcomes[MOUSE]
    assert outcome.states == [
        SpeciesState.LOAD_RAW,
        SpeciesState.PROPAGATE_EXPR,
        SpeciesState.FAILED,
    ]


def test_no_propagation_reconciles_in_place(store):
    options = PropagationOptions(axes=(), retry_backoff_seconds=0)

    outcome = PropagationOrchestrator(store, options).run_species(HUMAN)

    assert outcome.states == FULL_TRAIL
    assert set(calls_by_structure(store, HUMAN, CallKind.EXPRESSION)) == {"brain"}
    assert set(calls_by_structure(store, HUMAN, CallKind.NO_EXPRESSION)) == {"head"}


def test_stage_propagation(store, options):
    options = PropagationOptions(
        axes=(ConditionAxis.STRUCTURE, ConditionAxis.STAGE), retry_backoff_seconds=0
    )

    PropagationOrchestrator(store, options).run_species(HUMAN)

    conditions = {
        (call.condition.structure_id, call.condition.stage_id)
        for call in store.fetch_aggregate_calls(HUMAN, CallKind.EXPRESSION)
    }
    assert conditions == {
        (structure, stage)
        for structure in ("brain", "head", "body")
        for stage in ("adult", "life")
    }


def test_contradiction_aborts_species(tmp_path, options):
    with PipelineStore(tmp_path / "conflict.duckdb") as store:
        load_ontologies(store, HUMAN)
        store.load_raw_calls(raw_rows(HUMAN, [
            ("e1", "expression", "G1", "head", "adult", {"affymetrix": "high quality"}),
            ("n1", "no_expression", "G1", "head", "adult", {"affymetrix": "poor quality"}),
        ]))

        report = PropagationOrchestrator(store, options).run_batch([HUMAN])

        outcome = report.outcomes[HUMAN]
        assert outcome.state is SpeciesState.FAILED
        assert outcome.states[-2] is SpeciesState.DETECT_CONFLICTS
        assert isinstance(outcome.error, ContradictoryEvidenceError)
        assert store.fetch_aggregate_calls(HUMAN) == []


def test_exclude_condition_records_conflicts(tmp_path):
    options = PropagationOptions(policy=ConflictPolicy.EXCLUDE_CONDITION, retry_backoff_seconds=0)
    with PipelineStore(tmp_path / "conflict.duckdb") as store:
        load_ontologies(store, HUMAN)
        store.load_raw_calls(raw_rows(HUMAN, [
            ("e1", "expression", "G1", "head", "adult", {"affymetrix": "high quality"}),
            ("n1", "no_expression", "G1", "head", "adult", {"affymetrix": "poor quality"}),
        ]))

        outcome = PropagationOrchestrator(store, options).run_species(HUMAN)

        assert outcome.counts["excluded_conditions"] == 1
        assert "head" not in calls_by_structure(store, HUMAN, CallKind.EXPRESSION)
        assert "head" not in calls_by_structure(store, HUMAN, CallKind.NO_EXPRESSION)
        conflicts = store.fetch_condition_conflicts(HUMAN)
        assert conflicts["structure_id"].to_list() == ["head"]
        assert conflicts["no_expression_raw_call_ids"].to_list() == ["n1"]


# ============================================================================
# Failures, rollback and retries
# ============================================================================

class FailingLinksStore(PipelineStore):
    """Fails after the aggregate calls were written."""

    def insert_provenance_links(self, species_id, links, token=None):
        raise RuntimeError("disk full")


class InterruptedStore(PipelineStore):
    """Raw call fetches are interrupted a number of times."""

    interruptions = 1

    def fetch_raw_calls(self, species_id, kind, filters=None, token=None):
        if self.interruptions > 0:
            self.interruptions -= 1
            raise QueryInterruptedError("interrupted")
        return super().fetch_raw_calls(species_id, kind, filters, token)



class CancelledWriteStore(PipelineStore):
    """The attempt's token is cancelled when aggregate calls are written."""

    cancellations = 1

    def insert_aggregate_calls(self, species_id, calls, token=None):
        if self.cancellations > 0 and token is not None:
            self.cancellations -= 1
            token.cancel()
        return super().insert_aggregate_calls(species_id, calls, token)


def test_persistence_failure_rolls_back_species(tmp_path, options):
    with FailingLinksStore(tmp_path / "test.duckdb") as store:
        load_species(store, HUMAN)

        report = PropagationOrchestrator(store, options).run_batch([HUMAN])

        outcome = report.outcomes[HUMAN]
        assert outcome.states[-2:] == [SpeciesState.PERSIST, SpeciesState.FAILED]
        assert isinstance(outcome.error, RuntimeError)
        assert store.fetch_aggregate_calls(HUMAN) == []


def test_interrupted_attempt_is_retried(tmp_path, options):
    with InterruptedStore(tmp_path / "test.duckdb") as store:
        load_species(store, HUMAN)

        outcome = PropagationOrchestrator(store, options).run_species(HUMAN)

        assert outcome.succeeded
        assert outcome.attempts == 2
        assert outcome.states == FULL_TRAIL


def test_interruptions_exhaust_retries(tmp_path):
    options = PropagationOptions(max_interrupt_retries=1, retry_backoff_seconds=0)
    with InterruptedStore(tmp_path / "test.duckdb") as store:
        store.interruptions = 5
        load_species(store, HUMAN)

        report = PropagationOrchestrator(store, options).run_batch([HUMAN])

        outcome = report.outcomes[HUMAN]
        assert isinstance(outcome.error, QueryInterruptedError)
        assert outcome.attempts == 2
        assert store.interruptions == 3


def test_cancelled_write_rolls_back_and_retries(tmp_path, options):
    with CancelledWriteStore(tmp_path / "test.duckdb") as store:
        load_species(store, HUMAN)

        outcome = PropagationOrchestrator(store, options).run_species(HUMAN)

        assert store.cancellations == 0
        assert outcome.attempts == 2
        assert outcome.states == FULL_TRAIL
        ids = [call.id for call in store.fetch_aggregate_calls(HUMAN)]
        assert sorted(ids) == list(range(1, 6))


# ============================================================================
# Batches
# ============================================================================

def test_batch_isolates_failures(store, options):
    report = PropagationOrchestrator(store, options).run_batch()

    assert report.succeeded == [HUMAN]
    assert set(report.failures) == {MOUSE}
    assert isinstance(report.failures[MOUSE], MissingClosureError)
    assert report.outcomes[MOUSE].attempts == 1
    assert len(store.fetch_aggregate_calls(HUMAN)) == 5

    with pytest.raises(BatchPropagationError) as exc_info:
        report.raise_for_failures()
    assert set(exc_info.value.failures) == {MOUSE}


def test_batch_with_workers(store):
    load_species(store, ZEBRAFISH)
    options = PropagationOptions(max_workers=2, retry_backoff_seconds=0)

    report = PropagationOrchestrator(store, options).run_batch([HUMAN, ZEBRAFISH])

    assert report.succeeded == [ZEBRAFISH, HUMAN]
    human = [call.without_id() for call in store.fetch_aggregate_calls(HUMAN)]
    zebrafish = [call.without_id() for call in store.fetch_aggregate_calls(ZEBRAFISH)]
    assert human == zebrafish


def test_batch_records_provenance(store, options, tmp_path):
    config = PipelineConfig(
        data_dir=tmp_path / "data",
        duckdb_path=tmp_path / "test.duckdb",
        versions={"ontology_release": "uberon-test"},
    )
    tracker = ProvenanceTracker("0.1.0", config)

    PropagationOrchestrator(store, options, tracker).run_batch([HUMAN, MOUSE])

    steps = {step["step_name"]: step["details"] for step in tracker.processing_steps}
    assert steps["species_9606"]["state"] == "done"
    assert steps["species_10090"]["state"] == "failed"
    assert "MissingClosureError" in steps["species_10090"]["error"]
