"""Propagation and reconciliation of expression calls.

The orchestrator is imported from exprcall_pipeline.calls.orchestrator, as it
depends on the persistence layer.
"""

from exprcall_pipeline.calls.closure import OntologyClosure, SpeciesOntology
from exprcall_pipeline.calls.conflicts import (
    ConditionConflict,
    ConflictDetector,
    ConflictPolicy,
    ConflictResolution,
)
from exprcall_pipeline.calls.models import (
    AggregateCall,
    CallKind,
    Condition,
    ConditionAxis,
    DataState,
    EvidenceType,
    OriginOfLine,
    ProvenanceLink,
    RawCall,
    merge_states,
)
from exprcall_pipeline.calls.propagation import (
    allowed_no_expression_targets,
    group_by_target,
    propagate_call,
    propagate_calls,
)
from exprcall_pipeline.calls.reconciliation import (
    CallIdAllocator,
    ReconciledCall,
    ReconciliationResult,
    rebuild_from_raw,
    reconcile_calls,
    reconcile_group,
)

__all__ = [
    "AggregateCall",
    "CallIdAllocator",
    "CallKind",
    "Condition",
    "ConditionAxis",
    "ConditionConflict",
    "ConflictDetector",
    "ConflictPolicy",
    "ConflictResolution",
    "DataState",
    "EvidenceType",
    "OntologyClosure",
    "OriginOfLine",
    "ProvenanceLink",
    "RawCall",
    "ReconciledCall",
    "ReconciliationResult",
    "SpeciesOntology",
    "allowed_no_expression_targets",
    "group_by_target",
    "merge_states",
    "propagate_call",
    "propagate_calls",
    "rebuild_from_raw",
    "reconcile_calls",
    "reconcile_group",
]
