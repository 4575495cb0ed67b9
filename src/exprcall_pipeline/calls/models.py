"""Data models for raw and aggregate expression calls."""

from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, model_validator


class DataState(Enum):
    """Confidence of the evidence brought by one evidence type.

    Totally ordered: NO_DATA < LOW_QUALITY < HIGH_QUALITY. Values are the
    labels stored in the database.
    """

    NO_DATA = "no data"
    LOW_QUALITY = "poor quality"
    HIGH_QUALITY = "high quality"

    @property
    def rank(self) -> int:
        return _DATA_STATE_RANKS[self]

    @property
    def is_no_data(self) -> bool:
        return self is DataState.NO_DATA

    def merge(self, other: "DataState") -> "DataState":
        """Return the best of the two states."""
        return self if self.rank >= other.rank else other

    def __lt__(self, other):
        if not isinstance(other, DataState):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, DataState):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, DataState):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, DataState):
            return NotImplemented
        return self.rank >= other.rank


_DATA_STATE_RANKS = {
    DataState.NO_DATA: 0,
    DataState.LOW_QUALITY: 1,
    DataState.HIGH_QUALITY: 2,
}


def merge_states(*states: DataState) -> DataState:
    """Lattice join of any number of states (NO_DATA when given none)."""
    best = DataState.NO_DATA
    for state in states:
        best = best.merge(state)
    return best


class EvidenceType(Enum):
    """Technique a call's evidence was produced with."""

    AFFYMETRIX = "affymetrix"
    EST = "est"
    IN_SITU = "in_situ"
    RNA_SEQ = "rna_seq"
    # Only produced for no-expression calls, no raw data table behind it
    RELAXED_IN_SITU = "relaxed_in_situ"

    @property
    def expression_counterpart(self) -> "EvidenceType | None":
        """Expression evidence type a no-expression type is checked against."""
        if self is EvidenceType.RELAXED_IN_SITU:
            return EvidenceType.IN_SITU
        if self is EvidenceType.EST:
            return None
        return self

    @property
    def has_raw_source(self) -> bool:
        return self is not EvidenceType.RELAXED_IN_SITU


class CallKind(Enum):
    """Whether a call states expression or absence of expression."""

    EXPRESSION = "expression"
    NO_EXPRESSION = "no_expression"

    @property
    def evidence_types(self) -> tuple[EvidenceType, ...]:
        return _EVIDENCE_TYPES_BY_KIND[self]


_EVIDENCE_TYPES_BY_KIND = {
    CallKind.EXPRESSION: (
        EvidenceType.AFFYMETRIX,
        EvidenceType.EST,
        EvidenceType.IN_SITU,
        EvidenceType.RNA_SEQ,
    ),
    CallKind.NO_EXPRESSION: (
        EvidenceType.AFFYMETRIX,
        EvidenceType.IN_SITU,
        EvidenceType.RELAXED_IN_SITU,
        EvidenceType.RNA_SEQ,
    ),
}


class OriginOfLine(Enum):
    """Where the evidence of an aggregate call comes from, along one axis."""

    SELF = "self"
    PROPAGATED = "propagated"
    BOTH = "both"

    @property
    def includes_self(self) -> bool:
        return self is not OriginOfLine.PROPAGATED

    @property
    def includes_propagated(self) -> bool:
        return self is not OriginOfLine.SELF

    @classmethod
    def fold(cls, origins: Iterable["OriginOfLine"]) -> "OriginOfLine":
        """Combine the origins of all contributions to one call.

        Raises:
            ValueError: If no origin is given
        """
        has_self = False
        has_propagated = False
        seen = False
        for origin in origins:
            seen = True
            has_self = has_self or origin.includes_self
            has_propagated = has_propagated or origin.includes_propagated
        if not seen:
            raise ValueError("Cannot fold an empty set of origins")
        if has_self and has_propagated:
            return cls.BOTH
        return cls.SELF if has_self else cls.PROPAGATED


class ConditionAxis(Enum):
    """Ontology a condition can be propagated along."""

    STRUCTURE = "structure"
    STAGE = "stage"


class Condition(BaseModel):
    """A (gene, anatomical structure, developmental stage) triple."""

    model_config = ConfigDict(frozen=True)

    gene_id: str
    structure_id: str
    stage_id: str

    def entity(self, axis: ConditionAxis) -> str:
        """ID of the ontology term of this condition on `axis`."""
        if axis is ConditionAxis.STRUCTURE:
            return self.structure_id
        return self.stage_id

    def with_entity(self, axis: ConditionAxis, entity_id: str) -> "Condition":
        if axis is ConditionAxis.STRUCTURE:
            return self.model_copy(update={"structure_id": entity_id})
        return self.model_copy(update={"stage_id": entity_id})

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.gene_id, self.structure_id, self.stage_id)


def _normalise_evidence(data: Any) -> Any:
    """Coerce evidence keys/values and fill missing types with NO_DATA."""
    if not isinstance(data, dict) or "kind" not in data:
        return data

    kind = CallKind(data["kind"])
    raw_evidence = data.get("evidence") or {}
    evidence = {
        EvidenceType(evidence_type): DataState(state)
        for evidence_type, state in raw_evidence.items()
    }
    invalid = set(evidence) - set(kind.evidence_types)
    if invalid:
        names = sorted(et.value for et in invalid)
        raise ValueError(f"Evidence types {names} are not valid for {kind.value} calls")

    return {
        **data,
        "evidence": {
            et: evidence.get(et, DataState.NO_DATA) for et in kind.evidence_types
        },
    }


class RawCall(BaseModel):
    """Call produced upstream for one experiment-level condition.

    Attributes:
        id: Identifier of the call in its source table
        condition: Condition the call was observed at
        kind: EXPRESSION or NO_EXPRESSION
        evidence: DataState per evidence type valid for `kind`; absent types
                  are filled with NO_DATA
    """

    model_config = ConfigDict(frozen=True)

    id: str
    condition: Condition
    kind: CallKind
    evidence: dict[EvidenceType, DataState]

    @model_validator(mode="before")
    @classmethod
    def _fill_evidence(cls, data: Any) -> Any:
        return _normalise_evidence(data)

    def state(self, evidence_type: EvidenceType) -> DataState:
        return self.evidence.get(evidence_type, DataState.NO_DATA)

    @property
    def has_data(self) -> bool:
        return any(not state.is_no_data for state in self.evidence.values())


class AggregateCall(BaseModel):
    """Call resulting from the reconciliation of propagated raw calls.

    Attributes:
        id: Identifier, scoped to one species; None before allocation
        condition: Target condition
        kind: EXPRESSION or NO_EXPRESSION
        evidence: Best DataState per evidence type over the contributing calls
        structure_origin: Origin of the evidence along the anatomy
        stage_origin: Origin of the evidence along the developmental stages
        observed_directly: True if at least one contributing raw call was
                           observed exactly at `condition`
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    condition: Condition
    kind: CallKind
    evidence: dict[EvidenceType, DataState]
    structure_origin: OriginOfLine = OriginOfLine.SELF
    stage_origin: OriginOfLine = OriginOfLine.SELF
    observed_directly: bool

    @model_validator(mode="before")
    @classmethod
    def _fill_evidence(cls, data: Any) -> Any:
        return _normalise_evidence(data)

    @model_validator(mode="after")
    def _check_observed_flag(self) -> "AggregateCall":
        if self.observed_directly and not (
            self.structure_origin.includes_self and self.stage_origin.includes_self
        ):
            raise ValueError(
                "A call observed directly must have a SELF contribution on both axes"
            )
        return self

    def state(self, evidence_type: EvidenceType) -> DataState:
        return self.evidence.get(evidence_type, DataState.NO_DATA)

    @property
    def has_data(self) -> bool:
        return any(not state.is_no_data for state in self.evidence.values())

    def origin_on(self, axis: ConditionAxis) -> OriginOfLine:
        if axis is ConditionAxis.STRUCTURE:
            return self.structure_origin
        return self.stage_origin

    @property
    def origin_of_line(self) -> OriginOfLine:
        """Origin combined over both axes.

        PROPAGATED when nothing was observed at the condition itself, SELF when
        only observations at the condition contributed, BOTH otherwise.
        """
        if not self.observed_directly:
            return OriginOfLine.PROPAGATED
        if (
            self.structure_origin is OriginOfLine.SELF
            and self.stage_origin is OriginOfLine.SELF
        ):
            return OriginOfLine.SELF
        return OriginOfLine.BOTH

    @property
    def is_propagated(self) -> bool:
        """True if some evidence was inherited along any axis."""
        return (
            self.structure_origin.includes_propagated
            or self.stage_origin.includes_propagated
        )

    def without_id(self) -> "AggregateCall":
        return self.model_copy(update={"id": None})

    def same_call_as(self, other: "AggregateCall") -> bool:
        """Field equality ignoring the ID."""
        return self.without_id() == other.without_id()


class ProvenanceLink(BaseModel):
    """Association between an aggregate call and a raw call it comes from."""

    model_config = ConfigDict(frozen=True)

    aggregate_call_id: int
    raw_call_id: str
