"""Pydantic models for pipeline configuration."""

import hashlib
import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from exprcall_pipeline.calls.conflicts import ConflictPolicy


class DataSourceVersions(BaseModel):
    """Version information for the ontologies and raw call data."""

    ontology_release: str = Field(
        ...,
        min_length=1,
        description="Release of the anatomy and developmental stage ontologies",
    )
    data_release: str = Field(
        default="unreleased",
        description="Release of the raw call data",
    )


class PropagationConfig(BaseModel):
    """Axes calls are propagated along."""

    include_substructures: bool = Field(
        default=True,
        description="Propagate calls along the anatomical part-of ontology",
    )
    include_substages: bool = Field(
        default=False,
        description="Propagate calls along the developmental stage ontology",
    )
    restrict_no_expression_targets: bool = Field(
        default=True,
        description=(
            "Only propagate no-expression calls to structures having data, "
            "or ancestors of such structures"
        ),
    )


class ConflictConfig(BaseModel):
    """Handling of expression/no-expression conflicts."""

    policy: ConflictPolicy = Field(
        default=ConflictPolicy.ABORT_SPECIES,
        description="What to do when both call kinds are observed at one condition",
    )
    include_propagated_expression: bool = Field(
        default=False,
        description=(
            "Invalidate no-expression evidence contradicted by expression "
            "inherited from sub-structures or sub-stages"
        ),
    )


class ExecutionConfig(BaseModel):
    """Worker and retry settings."""

    max_workers: int = Field(
        default=1,
        ge=1,
        description="Number of species processed in parallel",
    )
    max_interrupt_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries of a species after an interrupted query",
    )
    query_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Interrupt a species attempt running longer than this (no limit if unset)",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Base of the exponential wait between retries of an interrupted species",
    )


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""

    data_dir: Path = Field(
        ...,
        description="Directory holding input TSV files and run sidecars",
    )
    duckdb_path: Path = Field(
        ...,
        description="Path to DuckDB database file",
    )
    species_ids: list[int] = Field(
        default_factory=list,
        description="Species to process (all species with raw calls if empty)",
    )
    versions: DataSourceVersions = Field(
        ...,
        description="Ontology and data release information",
    )
    propagation: PropagationConfig = Field(
        default_factory=PropagationConfig,
        description="Propagation settings",
    )
    conflicts: ConflictConfig = Field(
        default_factory=ConflictConfig,
        description="Conflict detection settings",
    )
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Worker and retry settings",
    )

    @field_validator("data_dir")
    @classmethod
    def create_directory(cls, v: Path) -> Path:
        """Create directory if it doesn't exist."""
        v.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("species_ids")
    @classmethod
    def unique_species(cls, v: list[int]) -> list[int]:
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate species IDs: {v}")
        return v

    def config_hash(self) -> str:
        """
        Compute SHA-256 hash of the configuration.

        Returns a deterministic hash based on all config values,
        recorded with every run for reproducibility.
        """
        config_dict = self.model_dump(mode="python")
        # Path and enum values are serialized through str()
        config_json = json.dumps(
            config_dict,
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(config_json.encode()).hexdigest()
