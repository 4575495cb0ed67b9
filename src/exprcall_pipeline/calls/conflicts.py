"""Detection and repair of expression/no-expression conflicts.

Two kinds of conflicts are checked, for the same condition and evidence type
(a no-expression evidence type is compared to its expression counterpart,
relaxed in situ to in situ):

- Rule A: expression and no-expression were both observed directly at the
  condition. The pipeline cannot decide which side is right; depending on the
  policy, the whole species is aborted, or the condition is excluded from the
  results and recorded for manual review.
- Rule B: a no-expression call inherited from another structure or stage is
  contradicted by expression observed at the condition. The contradicted
  evidence types are removed from the no-expression call, which is deleted
  if no evidence remains. The raw no-expression calls that brought these
  evidence types are flagged as conflicting.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

import structlog
from pydantic import BaseModel, ConfigDict

from exprcall_pipeline.calls.models import (
    CallKind,
    Condition,
    DataState,
    EvidenceType,
    RawCall,
    merge_states,
)
from exprcall_pipeline.calls.reconciliation import (
    ReconciledCall,
    ReconciliationResult,
    rebuild_from_raw,
)
from exprcall_pipeline.errors import ContradictoryEvidenceError

logger = structlog.get_logger(__name__)


class ConflictPolicy(str, Enum):
    """What to do with conditions showing directly observed contradictions."""

    ABORT_SPECIES = "abort_species"
    EXCLUDE_CONDITION = "exclude_condition"


class ConditionConflict(BaseModel):
    """Expression and no-expression both observed at one condition.

    Attributes:
        condition: Condition showing the contradiction
        evidence_type: No-expression evidence type in conflict
        expression_state: Directly observed state of the expression counterpart
        no_expression_state: Directly observed no-expression state
        expression_raw_call_ids: Raw expression calls bringing the evidence
        no_expression_raw_call_ids: Raw no-expression calls bringing the evidence
    """

    model_config = ConfigDict(frozen=True)

    condition: Condition
    evidence_type: EvidenceType
    expression_state: DataState
    no_expression_state: DataState
    expression_raw_call_ids: tuple[str, ...]
    no_expression_raw_call_ids: tuple[str, ...]


@dataclass
class ConflictResolution:
    """Outcome of the conflict pass for one species.

    Attributes:
        expression: Expression calls kept
        no_expression: No-expression calls kept, some of them rewritten
        conflicts: Rule A conflicts (only when conditions are excluded)
        excluded_conditions: Conditions removed from both kinds
        deleted_ids: No-expression call IDs removed by Rule B
        rewritten_ids: No-expression call IDs rewritten by Rule B
        raw_conflicts: Raw no-expression call IDs to flag, per evidence type
    """

    expression: ReconciliationResult
    no_expression: ReconciliationResult
    conflicts: list[ConditionConflict] = field(default_factory=list)
    excluded_conditions: set[Condition] = field(default_factory=set)
    deleted_ids: set[int] = field(default_factory=set)
    rewritten_ids: set[int] = field(default_factory=set)
    raw_conflicts: dict[EvidenceType, set[str]] = field(default_factory=dict)


class _ObservedEvidence:
    """Best directly observed state per condition and evidence type."""

    def __init__(self, raw_calls: Iterable[RawCall]):
        self._states: dict[Condition, dict[EvidenceType, DataState]] = {}
        self._raw_ids: dict[tuple[Condition, EvidenceType], list[str]] = {}
        for raw in raw_calls:
            states = self._states.setdefault(raw.condition, {})
            for evidence_type, state in raw.evidence.items():
                if state.is_no_data:
                    continue
                states[evidence_type] = merge_states(
                    states.get(evidence_type, DataState.NO_DATA), state
                )
                self._raw_ids.setdefault((raw.condition, evidence_type), []).append(raw.id)

    @property
    def conditions(self) -> set[Condition]:
        return set(self._states)

    def state(self, condition: Condition, evidence_type: EvidenceType) -> DataState:
        return self._states.get(condition, {}).get(evidence_type, DataState.NO_DATA)

    def raw_ids(self, condition: Condition, evidence_type: EvidenceType) -> tuple[str, ...]:
        return tuple(sorted(self._raw_ids.get((condition, evidence_type), [])))


class ConflictDetector:
    """Cross-check aggregate expression and no-expression calls of a species.

    Args:
        policy: Handling of directly observed contradictions (Rule A)
        include_propagated_expression: If True, Rule B also considers
            expression inherited from sub-structures or sub-stages, and applies
            to no-expression calls observed directly as well
    """

    def __init__(
        self,
        policy: ConflictPolicy = ConflictPolicy.ABORT_SPECIES,
        include_propagated_expression: bool = False,
    ):
        self.policy = ConflictPolicy(policy)
        self.include_propagated_expression = include_propagated_expression

    def find_contradictions(
        self,
        raw_expression: Iterable[RawCall],
        raw_no_expression: Iterable[RawCall],
    ) -> list[ConditionConflict]:
        """
        Find conditions where both call kinds were observed directly (Rule A).

        Args:
            raw_expression: Raw expression calls of the species
            raw_no_expression: Raw no-expression calls of the species

        Returns:
            ConditionConflict records ordered by condition and evidence type
        """
        expressed = _ObservedEvidence(raw_expression)
        not_expressed = _ObservedEvidence(raw_no_expression)

        conflicts = []
        shared = expressed.conditions & not_expressed.conditions
        for condition in sorted(shared, key=lambda c: c.sort_key):
            for evidence_type in CallKind.NO_EXPRESSION.evidence_types:
                counterpart = evidence_type.expression_counterpart
                if counterpart is None:
                    continue
                no_expr_state = not_expressed.state(condition, evidence_type)
                expr_state = expressed.state(condition, counterpart)
                if no_expr_state.is_no_data or expr_state.is_no_data:
                    continue
                conflicts.append(ConditionConflict(
                    condition=condition,
                    evidence_type=evidence_type,
                    expression_state=expr_state,
                    no_expression_state=no_expr_state,
                    expression_raw_call_ids=expressed.raw_ids(condition, counterpart),
                    no_expression_raw_call_ids=not_expressed.raw_ids(condition, evidence_type),
                ))
        return conflicts

    def detect(
        self,
        expression: ReconciliationResult,
        no_expression: ReconciliationResult,
        raw_expression: list[RawCall],
        raw_no_expression: list[RawCall],
    ) -> ConflictResolution:
        """
        Apply Rule A then Rule B to the aggregate calls of one species.

        Args:
            expression: Reconciled expression calls
            no_expression: Reconciled no-expression calls
            raw_expression: Raw expression calls they were built from
            raw_no_expression: Raw no-expression calls they were built from

        Returns:
            ConflictResolution with the calls to persist

        Raises:
            ContradictoryEvidenceError: On Rule A conflicts with the
                                        ABORT_SPECIES policy
        """
        conflicts = self.find_contradictions(raw_expression, raw_no_expression)
        excluded: set[Condition] = set()
        if conflicts:
            if self.policy is ConflictPolicy.ABORT_SPECIES:
                logger.error("contradictory_evidence", conflict_count=len(conflicts))
                raise ContradictoryEvidenceError(conflicts)
            excluded = {conflict.condition for conflict in conflicts}
            for conflict in conflicts:
                logger.warning(
                    "condition_excluded",
                    gene_id=conflict.condition.gene_id,
                    structure_id=conflict.condition.structure_id,
                    stage_id=conflict.condition.stage_id,
                    evidence_type=conflict.evidence_type.value,
                )

        resolution = ConflictResolution(
            expression=_without_conditions(expression, excluded),
            no_expression=ReconciliationResult(kind=CallKind.NO_EXPRESSION),
            conflicts=conflicts,
            excluded_conditions=excluded,
        )

        observed_expression = _ObservedEvidence(raw_expression)
        expression_by_condition = resolution.expression.by_condition()
        raw_by_id = {raw.id: raw for raw in raw_no_expression}

        kept_no_expression = _without_conditions(no_expression, excluded)
        for reconciled in kept_no_expression.reconciled:
            final = self._invalidate(
                reconciled,
                observed_expression,
                expression_by_condition.get(reconciled.call.condition),
                raw_by_id,
                resolution,
            )
            if final is None:
                resolution.deleted_ids.add(reconciled.call.id)
                continue
            if final is not reconciled:
                resolution.rewritten_ids.add(reconciled.call.id)
            resolution.no_expression.reconciled.append(final)

        kept_ids = {call.id for call in resolution.no_expression.calls}
        resolution.no_expression.updated_ids = kept_no_expression.updated_ids & kept_ids

        logger.info(
            "conflict_detection_complete",
            excluded_conditions=len(excluded),
            deleted_no_expression=len(resolution.deleted_ids),
            rewritten_no_expression=len(resolution.rewritten_ids),
            flagged_raw_calls={
                et.value: len(ids) for et, ids in resolution.raw_conflicts.items()
            },
        )
        return resolution

    def _conflicting_types(
        self,
        reconciled: ReconciledCall,
        observed_expression: _ObservedEvidence,
        expression_call: ReconciledCall | None,
    ) -> set[EvidenceType]:
        call = reconciled.call
        if not (call.is_propagated or self.include_propagated_expression):
            return set()

        conflicting = set()
        for evidence_type, state in call.evidence.items():
            counterpart = evidence_type.expression_counterpart
            if state.is_no_data or counterpart is None:
                continue
            if self.include_propagated_expression and expression_call is not None:
                expr_state = expression_call.call.state(counterpart)
            else:
                expr_state = observed_expression.state(call.condition, counterpart)
            if not expr_state.is_no_data:
                conflicting.add(evidence_type)
        return conflicting

    def _invalidate(
        self,
        reconciled: ReconciledCall,
        observed_expression: _ObservedEvidence,
        expression_call: ReconciledCall | None,
        raw_by_id: dict[str, RawCall],
        resolution: ConflictResolution,
    ) -> ReconciledCall | None:
        """Remove contradicted evidence types from a no-expression call (Rule B).

        Rebuilding the call can change its origin, so it is evaluated again
        until no more evidence type is removed.
        """
        current = reconciled
        removed: set[EvidenceType] = set()
        while True:
            newly_removed = self._conflicting_types(
                current, observed_expression, expression_call
            ) - removed
            if not newly_removed:
                return current

            raw_calls = [raw_by_id[raw_id] for raw_id in current.raw_call_ids]
            for evidence_type in newly_removed:
                if not evidence_type.has_raw_source:
                    continue
                resolution.raw_conflicts.setdefault(evidence_type, set()).update(
                    raw.id for raw in raw_calls if not raw.state(evidence_type).is_no_data
                )

            removed |= newly_removed
            logger.debug(
                "no_expression_evidence_removed",
                call_id=current.call.id,
                gene_id=current.call.condition.gene_id,
                structure_id=current.call.condition.structure_id,
                stage_id=current.call.condition.stage_id,
                evidence_types=sorted(et.value for et in newly_removed),
            )
            rebuilt = rebuild_from_raw(current.call, raw_calls, removed)
            if rebuilt is None:
                return None
            current = rebuilt


def _without_conditions(
    result: ReconciliationResult, excluded: set[Condition]
) -> ReconciliationResult:
    if not excluded:
        return result
    kept = [r for r in result.reconciled if r.call.condition not in excluded]
    kept_ids = {r.call.id for r in kept}
    return ReconciliationResult(
        kind=result.kind,
        reconciled=kept,
        updated_ids=result.updated_ids & kept_ids,
    )
