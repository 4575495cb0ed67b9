"""Read-only access to pre-computed ontology closures of a species.

A closure maps each ontology term to the set of terms calls observed in it
propagate to. Closures are always reflexive: a term propagates at least to
itself. The store supplies ancestor closures (term -> itself + ancestors);
descendant closures, used for no-expression calls, are obtained by inverting
them.
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Iterable, Iterator

import polars as pl

from exprcall_pipeline.calls.models import CallKind, ConditionAxis
from exprcall_pipeline.errors import MissingClosureError


class OntologyClosure(Mapping):
    """Immutable mapping from an entity ID to the IDs it propagates to.

    Args:
        relatives: Mapping of entity ID to related entity IDs. The entity
                   itself is added to its own set if missing.
        axis: Ontology the closure belongs to (used in error messages)
    """

    def __init__(
        self,
        relatives: Mapping[str, Iterable[str]],
        axis: ConditionAxis = ConditionAxis.STRUCTURE,
    ):
        self.axis = axis
        self._relatives = MappingProxyType({
            entity_id: frozenset(related) | {entity_id}
            for entity_id, related in relatives.items()
        })

    def __getitem__(self, entity_id: str) -> frozenset[str]:
        return self._relatives[entity_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._relatives)

    def __len__(self) -> int:
        return len(self._relatives)

    def __repr__(self) -> str:
        return f"OntologyClosure(axis={self.axis.value}, entities={len(self)})"

    def targets_for(self, entity_id: str, gene_id: str | None = None) -> frozenset[str]:
        """
        Get the IDs an entity propagates to, itself included.

        Args:
            entity_id: Ontology term ID
            gene_id: Gene having calls in the term, for error reporting

        Returns:
            Frozen set of target IDs

        Raises:
            MissingClosureError: If the entity is unknown to the closure
        """
        try:
            return self._relatives[entity_id]
        except KeyError:
            raise MissingClosureError(entity_id, self.axis.value, gene_id) from None

    def inverted(self) -> "OntologyClosure":
        """Return the reverse closure (ancestors <-> descendants)."""
        inverse: dict[str, set[str]] = {entity_id: set() for entity_id in self._relatives}
        for entity_id, related in self._relatives.items():
            for related_id in related:
                inverse.setdefault(related_id, set()).add(entity_id)
        return OntologyClosure(inverse, self.axis)

    @classmethod
    def from_relations(
        cls,
        df: pl.DataFrame,
        axis: ConditionAxis = ConditionAxis.STRUCTURE,
        source_col: str = "source_id",
        target_col: str = "target_id",
    ) -> "OntologyClosure":
        """
        Build an ancestor closure from a relation table.

        Every row states that `source_col` is (directly or indirectly) part of
        `target_col`. The table must already be transitively closed. Reflexive
        rows are optional for terms appearing in another row; a term with
        neither ancestors nor descendants needs a `(term, term)` row to be
        known to the closure.

        Args:
            df: polars DataFrame of relations
            axis: Ontology the relations belong to
            source_col: Column holding the child term
            target_col: Column holding the ancestor term

        Returns:
            OntologyClosure mapping each term to itself + its ancestors
        """
        relatives: dict[str, set[str]] = {}
        for source_id, target_id in df.select([source_col, target_col]).iter_rows():
            relatives.setdefault(source_id, set()).add(target_id)
            # Ancestors only seen as targets still need a reflexive entry
            relatives.setdefault(target_id, set())
        return cls(relatives, axis)


class SpeciesOntology:
    """Closures of both ontologies for one species.

    Ancestor closures are supplied; descendant closures are computed once,
    on first use.
    """

    def __init__(self, structure_ancestors: OntologyClosure, stage_ancestors: OntologyClosure):
        self.structure_ancestors = structure_ancestors
        self.stage_ancestors = stage_ancestors
        self._descendants: dict[ConditionAxis, OntologyClosure] = {}

    def ancestors(self, axis: ConditionAxis) -> OntologyClosure:
        if axis is ConditionAxis.STRUCTURE:
            return self.structure_ancestors
        return self.stage_ancestors

    def descendants(self, axis: ConditionAxis) -> OntologyClosure:
        if axis not in self._descendants:
            self._descendants[axis] = self.ancestors(axis).inverted()
        return self._descendants[axis]

    def closure_for(self, kind: CallKind, axis: ConditionAxis) -> OntologyClosure:
        """Closure in the propagation direction of `kind`.

        Expression propagates to ancestors, no-expression to descendants.
        """
        if kind is CallKind.EXPRESSION:
            return self.ancestors(axis)
        return self.descendants(axis)
