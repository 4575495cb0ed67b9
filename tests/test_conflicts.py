"""Tests for expression/no-expression conflict detection."""

import pytest

from exprcall_pipeline.calls.closure import OntologyClosure, SpeciesOntology
from exprcall_pipeline.calls.conflicts import ConflictDetector, ConflictPolicy
from exprcall_pipeline.calls.models import (
    CallKind,
    Condition,
    ConditionAxis,
    DataState,
    EvidenceType,
    OriginOfLine,
    RawCall,
)
from exprcall_pipeline.calls.reconciliation import CallIdAllocator, reconcile_calls
from exprcall_pipeline.errors import ContradictoryEvidenceError

HIGH = DataState.HIGH_QUALITY
LOW = DataState.LOW_QUALITY
NONE = DataState.NO_DATA
STAGE = "adult"


@pytest.fixture
def ontology():
    """brain < head < body."""
    return SpeciesOntology(
        OntologyClosure({"brain": {"head", "body"}, "head": {"body"}, "body": set()}),
        OntologyClosure({STAGE: set()}, ConditionAxis.STAGE),
    )


def condition(structure_id, gene_id="G1"):
    return Condition(gene_id=gene_id, structure_id=structure_id, stage_id=STAGE)


def expressed(call_id, structure_id, evidence):
    return RawCall(id=call_id, condition=condition(structure_id), kind=CallKind.EXPRESSION, evidence=evidence)


def not_expressed(call_id, structure_id, evidence):
    return RawCall(id=call_id, condition=condition(structure_id), kind=CallKind.NO_EXPRESSION, evidence=evidence)


def run_detection(ontology, raw_expression, raw_no_expression, detector=None, existing_ids=None):
    allocator = CallIdAllocator()
    expression = reconcile_calls(raw_expression, ontology, CallKind.EXPRESSION, allocator=allocator)
    no_expression = reconcile_calls(
        raw_no_expression,
        ontology,
        CallKind.NO_EXPRESSION,
        allocator=allocator,
        existing_ids=existing_ids,
    )
    detector = detector or ConflictDetector()
    return no_expression, detector.detect(expression, no_expression, raw_expression, raw_no_expression)


# ============================================================================
# Rule A: directly observed contradictions
# ============================================================================

def test_directly_observed_contradiction_aborts_species(ontology):
    """Both kinds observed at the same condition for the same evidence type."""
    raw_expression = [expressed("r1", "head", {EvidenceType.AFFYMETRIX: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.AFFYMETRIX: LOW})]

    with pytest.raises(ContradictoryEvidenceError) as exc_info:
        run_detection(ontology, raw_expression, raw_no_expression)

    conflicts = exc_info.value.conflicts
    assert len(conflicts) == 1
    assert conflicts[0].condition == condition("head")
    assert conflicts[0].evidence_type is EvidenceType.AFFYMETRIX
    assert conflicts[0].expression_state == HIGH
    assert conflicts[0].no_expression_state == LOW
    assert conflicts[0].expression_raw_call_ids == ("r1",)
    assert conflicts[0].no_expression_raw_call_ids == ("n1",)


def test_relaxed_in_situ_checked_against_in_situ(ontology):
    detector = ConflictDetector()
    conflicts = detector.find_contradictions(
        [expressed("r1", "head", {EvidenceType.IN_SITU: LOW})],
        [not_expressed("n1", "head", {EvidenceType.RELAXED_IN_SITU: HIGH})],
    )

    assert [c.evidence_type for c in conflicts] == [EvidenceType.RELAXED_IN_SITU]


def test_different_evidence_types_do_not_conflict(ontology):
    raw_expression = [expressed("r1", "head", {EvidenceType.AFFYMETRIX: HIGH, EvidenceType.EST: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.RNA_SEQ: HIGH})]

    _, resolution = run_detection(ontology, raw_expression, raw_no_expression)

    assert resolution.conflicts == []
    head = resolution.no_expression.by_condition()[condition("head")]
    assert head.call.state(EvidenceType.RNA_SEQ) == HIGH


def test_exclude_condition_policy_drops_both_kinds(ontology):
    raw_expression = [expressed("r1", "head", {EvidenceType.AFFYMETRIX: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.AFFYMETRIX: HIGH})]
    detector = ConflictDetector(policy=ConflictPolicy.EXCLUDE_CONDITION)

    _, resolution = run_detection(ontology, raw_expression, raw_no_expression, detector)

    assert resolution.excluded_conditions == {condition("head")}
    assert len(resolution.conflicts) == 1
    assert condition("head") not in resolution.expression.by_condition()
    assert condition("head") not in resolution.no_expression.by_condition()
    # Propagated calls at other conditions are kept
    assert condition("body") in resolution.expression.by_condition()
    assert all(link.raw_call_id for link in resolution.expression.links)


# ============================================================================
# Rule B: invalidated propagated no-expression
# ============================================================================

def test_propagated_no_expression_deleted_by_observed_expression(ontology):
    raw_expression = [expressed("r1", "brain", {EvidenceType.AFFYMETRIX: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.AFFYMETRIX: HIGH})]

    no_expression, resolution = run_detection(ontology, raw_expression, raw_no_expression)

    brain_id = no_expression.by_condition()[condition("brain")].call.id
    assert resolution.deleted_ids == {brain_id}
    assert condition("brain") not in resolution.no_expression.by_condition()
    # Observed at head, not touched without propagated expression
    assert condition("head") in resolution.no_expression.by_condition()
    assert resolution.raw_conflicts == {EvidenceType.AFFYMETRIX: {"n1"}}


def test_propagated_no_expression_rewritten(ontology):
    raw_expression = [expressed("r1", "brain", {EvidenceType.AFFYMETRIX: HIGH})]
    raw_no_expression = [
        not_expressed("n1", "head", {EvidenceType.AFFYMETRIX: HIGH}),
        not_expressed("n2", "head", {EvidenceType.RNA_SEQ: LOW}),
    ]

    no_expression, resolution = run_detection(ontology, raw_expression, raw_no_expression)

    original = no_expression.by_condition()[condition("brain")]
    rewritten = resolution.no_expression.by_condition()[condition("brain")]
    assert resolution.rewritten_ids == {original.call.id}
    assert rewritten.call.id == original.call.id
    assert rewritten.call.state(EvidenceType.AFFYMETRIX) == NONE
    assert rewritten.call.state(EvidenceType.RNA_SEQ) == LOW
    assert rewritten.raw_call_ids == ("n2",)
    assert resolution.raw_conflicts == {EvidenceType.AFFYMETRIX: {"n1"}}


def test_rewrite_reevaluates_origin(ontology):
    """Once inherited evidence is removed, a SELF call is no longer checked."""
    raw_expression = [expressed("r1", "brain", {EvidenceType.IN_SITU: HIGH})]
    raw_no_expression = [
        not_expressed("n0", "brain", {EvidenceType.AFFYMETRIX: LOW}),
        not_expressed("n1", "head", {EvidenceType.IN_SITU: HIGH}),
    ]

    no_expression, resolution = run_detection(ontology, raw_expression, raw_no_expression)

    assert no_expression.by_condition()[condition("brain")].call.structure_origin is OriginOfLine.BOTH
    brain = resolution.no_expression.by_condition()[condition("brain")].call
    assert brain.structure_origin is OriginOfLine.SELF
    assert brain.observed_directly
    assert brain.state(EvidenceType.AFFYMETRIX) == LOW
    assert brain.state(EvidenceType.IN_SITU) == NONE
    assert resolution.raw_conflicts == {EvidenceType.IN_SITU: {"n1"}}


def test_relaxed_in_situ_invalidated_but_not_flagged(ontology):
    raw_expression = [expressed("r1", "brain", {EvidenceType.IN_SITU: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.RELAXED_IN_SITU: HIGH})]

    _, resolution = run_detection(ontology, raw_expression, raw_no_expression)

    assert condition("brain") not in resolution.no_expression.by_condition()
    assert len(resolution.deleted_ids) == 1
    assert resolution.raw_conflicts == {}


def test_est_expression_never_invalidates(ontology):
    raw_expression = [expressed("r1", "brain", {EvidenceType.EST: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.AFFYMETRIX: HIGH})]

    _, resolution = run_detection(ontology, raw_expression, raw_no_expression)

    assert resolution.deleted_ids == set()
    assert condition("brain") in resolution.no_expression.by_condition()


def test_propagated_expression_option(ontology):
    """Expression inherited from a sub-structure also invalidates observed no-expression."""
    raw_expression = [expressed("r1", "brain", {EvidenceType.AFFYMETRIX: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.AFFYMETRIX: HIGH})]
    detector = ConflictDetector(include_propagated_expression=True)

    _, resolution = run_detection(ontology, raw_expression, raw_no_expression, detector)

    assert resolution.no_expression.calls == []
    assert len(resolution.deleted_ids) == 2
    assert resolution.raw_conflicts == {EvidenceType.AFFYMETRIX: {"n1"}}


def test_deleted_ids_leave_updated_ids(ontology):
    raw_expression = [expressed("r1", "brain", {EvidenceType.AFFYMETRIX: HIGH})]
    raw_no_expression = [not_expressed("n1", "head", {EvidenceType.AFFYMETRIX: HIGH})]
    existing = {condition("brain"): 50, condition("head"): 51}

    _, resolution = run_detection(
        ontology, raw_expression, raw_no_expression, existing_ids=existing
    )

    assert resolution.deleted_ids == {50}
    assert resolution.no_expression.updated_ids == {51}
