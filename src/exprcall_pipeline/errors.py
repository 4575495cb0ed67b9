"""Exception hierarchy for the propagation pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PipelineError):
    """Input data or configuration is incomplete for the species processed."""


class MissingClosureError(ConfigurationError):
    """An entity referenced by a call has no closure entry in the ontology."""

    def __init__(self, entity_id: str, axis: str, gene_id: str | None = None):
        self.entity_id = entity_id
        self.axis = axis
        self.gene_id = gene_id
        message = (
            f"The {axis} {entity_id!r} is not defined in the ontology closure "
            f"of the species"
        )
        if gene_id is not None:
            message += f", while gene {gene_id!r} has calls in it"
        super().__init__(message)


class ContradictoryEvidenceError(PipelineError):
    """Expression and no-expression were both observed directly at a condition.

    Attributes:
        conflicts: ConditionConflict records found for the species
    """

    def __init__(self, conflicts: list):
        self.conflicts = list(conflicts)
        preview = ", ".join(
            f"{c.condition.gene_id}/{c.condition.structure_id}/{c.condition.stage_id}"
            f" ({c.evidence_type.value})"
            for c in self.conflicts[:5]
        )
        more = len(self.conflicts) - 5
        if more > 0:
            preview += f" and {more} more"
        super().__init__(
            f"{len(self.conflicts)} directly observed expression/no-expression "
            f"conflict(s): {preview}"
        )


class QueryInterruptedError(PipelineError):
    """An in-flight query was cancelled. Callers may retry."""


class PersistenceError(PipelineError):
    """Writing a species' results failed; the transaction was rolled back."""


class BatchPropagationError(PipelineError):
    """One or more species failed in a batch run.

    Attributes:
        failures: mapping of species ID to the exception raised for it
    """

    def __init__(self, failures: dict[int, BaseException]):
        self.failures = dict(failures)
        details = "; ".join(
            f"species {species_id}: {type(exc).__name__}: {exc}"
            for species_id, exc in sorted(self.failures.items())
        )
        super().__init__(f"{len(self.failures)} species failed: {details}")
