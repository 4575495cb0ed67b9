"""Persistence layer for calls, ontology relations and run provenance."""

from exprcall_pipeline.persistence.cancellation import CancellationToken
from exprcall_pipeline.persistence.duckdb_store import CallFilter, PipelineStore
from exprcall_pipeline.persistence.provenance import ProvenanceTracker

__all__ = ["CallFilter", "CancellationToken", "PipelineStore", "ProvenanceTracker"]
