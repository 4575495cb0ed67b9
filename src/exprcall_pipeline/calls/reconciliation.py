"""Reconciliation of propagated calls into aggregate calls.

All calls propagated to the same condition are collapsed into one aggregate
call:

- the state of each evidence type is the best state over the contributors;
- the call is observed directly if a contributor was observed exactly at the
  condition;
- along each axis, the origin is SELF if all contributors sit at the
  condition's term, PROPAGATED if none does, BOTH otherwise. A contributor
  that is itself an aggregate call and sits at the term passes its own origin
  on, which makes the structure and stage passes composable.

When both axes are propagated, calls are first propagated and reconciled
along the anatomy, then the resulting aggregates are propagated and
reconciled along the stages.
"""

from dataclasses import dataclass, field
from itertools import count
from typing import Iterable, Mapping, Sequence

import structlog

from exprcall_pipeline.calls.closure import SpeciesOntology
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
from exprcall_pipeline.calls.propagation import group_by_target, propagate_calls

logger = structlog.get_logger(__name__)

Contributor = RawCall | AggregateCall


class CallIdAllocator:
    """Sequential IDs for the aggregate calls of one species in one run.

    Each species pipeline owns its allocator; allocators are never shared
    between workers.
    """

    def __init__(self, start: int = 1):
        self.start = start
        self._counter = count(start)

    def allocate(self) -> int:
        return next(self._counter)


@dataclass(frozen=True)
class ReconciledCall:
    """An aggregate call with the IDs of the raw calls it was built from."""

    call: AggregateCall
    raw_call_ids: tuple[str, ...]

    @property
    def links(self) -> list[ProvenanceLink]:
        """Provenance links, one per contributing raw call.

        Raises:
            ValueError: If the aggregate call has no ID yet
        """
        if self.call.id is None:
            raise ValueError(f"Aggregate call at {self.call.condition} has no ID")
        return [
            ProvenanceLink(aggregate_call_id=self.call.id, raw_call_id=raw_id)
            for raw_id in self.raw_call_ids
        ]


@dataclass
class ReconciliationResult:
    """Aggregate calls of one kind for one species.

    Attributes:
        kind: Kind of all calls in the result
        reconciled: Reconciled calls, ordered by condition
        updated_ids: IDs reused from previously persisted aggregate calls
    """

    kind: CallKind
    reconciled: list[ReconciledCall] = field(default_factory=list)
    updated_ids: set[int] = field(default_factory=set)

    @property
    def calls(self) -> list[AggregateCall]:
        return [r.call for r in self.reconciled]

    @property
    def links(self) -> list[ProvenanceLink]:
        return [link for r in self.reconciled for link in r.links]

    def by_condition(self) -> dict[Condition, ReconciledCall]:
        return {r.call.condition: r for r in self.reconciled}

    def __len__(self) -> int:
        return len(self.reconciled)


def _contributor_origin(
    contributor: Contributor, target: Condition, axis: ConditionAxis
) -> OriginOfLine:
    if contributor.condition.entity(axis) != target.entity(axis):
        return OriginOfLine.PROPAGATED
    if isinstance(contributor, AggregateCall):
        return contributor.origin_on(axis)
    return OriginOfLine.SELF


def _observed_at(contributor: Contributor, target: Condition) -> bool:
    if contributor.condition != target:
        return False
    if isinstance(contributor, AggregateCall):
        return contributor.observed_directly
    return True


def reconcile_group(
    target: Condition,
    contributors: Sequence[Contributor],
    call_id: int | None = None,
    raw_ids_by_condition: Mapping[Condition, Iterable[str]] | None = None,
) -> ReconciledCall:
    """
    Collapse all calls propagated to `target` into one aggregate call.

    The result does not depend on the order of `contributors`.

    Args:
        target: Condition of the aggregate call
        contributors: RawCalls or AggregateCalls propagated to `target`,
                      all of the same kind
        call_id: ID to give to the aggregate call
        raw_ids_by_condition: For AggregateCall contributors, the raw call IDs
                              each of them was built from, keyed by condition

    Returns:
        ReconciledCall with the aggregate call and sorted unique raw call IDs

    Raises:
        ValueError: If contributors is empty, mixes call kinds, or an
                    aggregate contributor has no known raw call IDs
    """
    if not contributors:
        raise ValueError(f"No calls to reconcile at {target}")
    kind = contributors[0].kind
    if any(c.kind is not kind for c in contributors):
        raise ValueError(f"Cannot reconcile calls of different kinds at {target}")

    evidence = {
        evidence_type: merge_states(*(c.state(evidence_type) for c in contributors))
        for evidence_type in kind.evidence_types
    }

    raw_ids: set[str] = set()
    for contributor in contributors:
        if isinstance(contributor, RawCall):
            raw_ids.add(contributor.id)
            continue
        if raw_ids_by_condition is None or contributor.condition not in raw_ids_by_condition:
            raise ValueError(
                f"Raw call IDs unknown for aggregate contributor at {contributor.condition}"
            )
        raw_ids.update(raw_ids_by_condition[contributor.condition])

    call = AggregateCall(
        id=call_id,
        condition=target,
        kind=kind,
        evidence=evidence,
        structure_origin=OriginOfLine.fold(
            _contributor_origin(c, target, ConditionAxis.STRUCTURE) for c in contributors
        ),
        stage_origin=OriginOfLine.fold(
            _contributor_origin(c, target, ConditionAxis.STAGE) for c in contributors
        ),
        observed_directly=any(_observed_at(c, target) for c in contributors),
    )
    return ReconciledCall(call=call, raw_call_ids=tuple(sorted(raw_ids)))


def _reconcile_groups(
    groups: Mapping[Condition, Sequence[Contributor]],
    raw_ids_by_condition: Mapping[Condition, Iterable[str]] | None,
) -> list[ReconciledCall]:
    return [
        reconcile_group(target, groups[target], raw_ids_by_condition=raw_ids_by_condition)
        for target in sorted(groups, key=lambda condition: condition.sort_key)
    ]


def reconcile_calls(
    raw_calls: Sequence[RawCall],
    ontology: SpeciesOntology,
    kind: CallKind,
    axes: Sequence[ConditionAxis] = (ConditionAxis.STRUCTURE,),
    target_filters: Mapping[ConditionAxis, frozenset[str]] | None = None,
    existing_ids: Mapping[Condition, int] | None = None,
    allocator: CallIdAllocator | None = None,
    propagated: Mapping[Condition, Sequence[RawCall]] | None = None,
) -> ReconciliationResult:
    """
    Propagate raw calls of one kind along `axes` and reconcile them.

    Axes are applied as successive passes, in the order given: each pass
    propagates the aggregates of the previous one and reconciles again. With
    no axis, raw calls are only reconciled at their own condition.

    Args:
        raw_calls: Raw calls of kind `kind` for one species
        ontology: Closures of the species
        kind: Kind of the calls
        axes: Axes to propagate along, in pass order
        target_filters: Optional allowed target IDs per axis
        existing_ids: IDs of previously persisted aggregate calls of this kind,
                      by condition; reused for the same condition
        allocator: Allocator for new IDs (a fresh one starting at 1 if None)
        propagated: Raw calls already propagated along the first axis, as
                    returned by propagate_calls with the same filter; the
                    first pass then only reconciles them

    Returns:
        ReconciliationResult with aggregate calls ordered by condition

    Raises:
        MissingClosureError: If a call's entity is unknown to the ontology
        ValueError: If a call is not of kind `kind`, or an axis is repeated
    """
    if len(set(axes)) != len(axes):
        raise ValueError(f"Axes must not be repeated: {[a.value for a in axes]}")
    allocator = allocator or CallIdAllocator()
    existing_ids = existing_ids or {}
    target_filters = target_filters or {}

    for call in raw_calls:
        if call.kind is not kind:
            raise ValueError(f"Call {call.id} is not a {kind.value} call")

    contributors: Sequence[Contributor] = raw_calls
    raw_ids_by_condition: dict[Condition, tuple[str, ...]] | None = None

    if not axes:
        reconciled = _reconcile_groups(
            group_by_target((call.condition, call) for call in raw_calls), None
        )
    else:
        reconciled = []
        for axis in axes:
            if propagated is not None and axis is axes[0]:
                groups = propagated
            else:
                groups = propagate_calls(
                    contributors, ontology, kind, axis, target_filters.get(axis)
                )
            reconciled = _reconcile_groups(groups, raw_ids_by_condition)
            contributors = [r.call for r in reconciled]
            raw_ids_by_condition = {r.call.condition: r.raw_call_ids for r in reconciled}
            logger.debug(
                "reconciliation_pass_complete",
                kind=kind.value,
                axis=axis.value,
                aggregate_count=len(reconciled),
            )

    result = ReconciliationResult(kind=kind)
    for r in reconciled:
        condition = r.call.condition
        if condition in existing_ids:
            call_id = existing_ids[condition]
            result.updated_ids.add(call_id)
        else:
            call_id = allocator.allocate()
        result.reconciled.append(
            ReconciledCall(call=r.call.model_copy(update={"id": call_id}), raw_call_ids=r.raw_call_ids)
        )

    logger.info(
        "reconciliation_complete",
        kind=kind.value,
        axes=[axis.value for axis in axes],
        raw_call_count=len(raw_calls),
        aggregate_count=len(result),
        reused_ids=len(result.updated_ids),
    )
    return result


def rebuild_from_raw(
    call: AggregateCall,
    raw_calls: Iterable[RawCall],
    removed_types: Iterable[EvidenceType] = (),
) -> ReconciledCall | None:
    """
    Recompute an aggregate call from its raw calls without some evidence types.

    Raw calls left without any evidence no longer contribute, which can change
    the origin and observed flag of the call. Rebuilding directly from raw
    calls gives the same result as the composed propagation passes.

    Args:
        call: Aggregate call to rebuild; its ID and condition are kept
        raw_calls: Raw calls linked to the aggregate call
        removed_types: Evidence types to set to NO_DATA

    Returns:
        Rebuilt ReconciledCall, or None if no evidence remains
    """
    removed = set(removed_types)
    remaining = []
    for raw in raw_calls:
        masked = raw.model_copy(update={
            "evidence": {
                et: (DataState.NO_DATA if et in removed else state)
                for et, state in raw.evidence.items()
            }
        })
        if masked.has_data:
            remaining.append(masked)

    if not remaining:
        return None
    return reconcile_group(call.condition, remaining, call_id=call.id)
