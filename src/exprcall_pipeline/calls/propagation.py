"""Propagation of calls along one ontology axis.

Expression observed in a structure implies expression in every structure it
is part of, so expression calls propagate to ancestors. Absence of expression
in a structure implies absence in all its parts, so no-expression calls
propagate to descendants. The caller selects the closure oriented accordingly
(see SpeciesOntology.closure_for).
"""

from typing import Iterable, TypeVar

import structlog

from exprcall_pipeline.calls.closure import OntologyClosure, SpeciesOntology
from exprcall_pipeline.calls.models import (
    AggregateCall,
    CallKind,
    Condition,
    ConditionAxis,
    RawCall,
)

logger = structlog.get_logger(__name__)

CallT = TypeVar("CallT", RawCall, AggregateCall)


def propagate_call(
    call: CallT,
    closure: OntologyClosure,
    axis: ConditionAxis,
    target_filter: set[str] | frozenset[str] | None = None,
) -> list[tuple[Condition, CallT]]:
    """
    Expand one call into the conditions it is evidence for along `axis`.

    Args:
        call: RawCall or AggregateCall to propagate
        closure: Closure oriented in the propagation direction of the call kind
        axis: Axis to propagate along; the other axis is left unchanged
        target_filter: Optional set of allowed target IDs. The call's own
                       entity is always kept.

    Returns:
        List of (target condition, call) pairs, the call's own condition first

    Raises:
        MissingClosureError: If the call's entity is unknown to the closure
    """
    own_entity = call.condition.entity(axis)
    targets = closure.targets_for(own_entity, gene_id=call.condition.gene_id)

    pairs = [(call.condition, call)]
    for target_id in sorted(targets):
        if target_id == own_entity:
            continue
        if target_filter is not None and target_id not in target_filter:
            continue
        pairs.append((call.condition.with_entity(axis, target_id), call))
    return pairs


def group_by_target(
    pairs: Iterable[tuple[Condition, CallT]],
) -> dict[Condition, list[CallT]]:
    """Group (target, call) pairs by target condition, preserving order."""
    groups: dict[Condition, list[CallT]] = {}
    for target, call in pairs:
        groups.setdefault(target, []).append(call)
    return groups


def propagate_calls(
    calls: Iterable[CallT],
    ontology: SpeciesOntology,
    kind: CallKind,
    axis: ConditionAxis,
    target_filter: set[str] | frozenset[str] | None = None,
) -> dict[Condition, list[CallT]]:
    """
    Propagate calls of one kind along `axis` and group them by target.

    Args:
        calls: Calls to propagate, all of kind `kind`
        ontology: Closures of the species
        kind: Call kind, selects the propagation direction
        axis: Axis to propagate along
        target_filter: Optional set of allowed target IDs on `axis`

    Returns:
        Dict mapping each target condition to its contributing calls

    Raises:
        ValueError: If a call is not of kind `kind`
        MissingClosureError: If a call's entity is unknown to the closure
    """
    closure = ontology.closure_for(kind, axis)
    groups: dict[Condition, list[CallT]] = {}
    call_count = 0
    for call in calls:
        if call.kind is not kind:
            raise ValueError(
                f"Call {call.id} is a {call.kind.value} call, "
                f"cannot propagate it as {kind.value}"
            )
        call_count += 1
        for target, contributor in propagate_call(call, closure, axis, target_filter):
            groups.setdefault(target, []).append(contributor)

    logger.debug(
        "propagation_complete",
        kind=kind.value,
        axis=axis.value,
        call_count=call_count,
        target_count=len(groups),
    )
    return groups


def allowed_no_expression_targets(
    raw_calls: Iterable[RawCall],
    ontology: SpeciesOntology,
    axis: ConditionAxis = ConditionAxis.STRUCTURE,
) -> frozenset[str]:
    """
    Entities no-expression calls may propagate to.

    Propagating absence to every descendant would create aggregates over the
    whole ontology. Targets are restricted to entities having at least one
    expression or no-expression call, and to their ancestors, so that the
    propagated graph stays connected.

    Args:
        raw_calls: All raw calls of the species, both kinds
        ontology: Closures of the species
        axis: Axis the filter applies to

    Returns:
        Frozen set of allowed entity IDs

    Raises:
        MissingClosureError: If an entity with data is unknown to the closure
    """
    ancestors = ontology.ancestors(axis)
    with_data = {call.condition.entity(axis) for call in raw_calls}
    allowed: set[str] = set()
    for entity_id in with_data:
        allowed |= ancestors.targets_for(entity_id)

    logger.info(
        "no_expression_targets_restricted",
        axis=axis.value,
        entities_with_data=len(with_data),
        allowed_count=len(allowed),
    )
    return frozenset(allowed)
