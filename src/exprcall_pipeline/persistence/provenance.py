"""Provenance tracking for propagation runs."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

PROVENANCE_TABLE = "_provenance"


class ProvenanceTracker:
    """
    Tracks provenance metadata for propagation runs.

    Records pipeline version, ontology and data releases, config hash,
    and one processing step per species, so that the aggregate calls in a
    store can be traced back to the run that produced them.
    """

    def __init__(self, pipeline_version: str, config: "PipelineConfig"):
        """
        Initialize provenance tracker.

        Args:
            pipeline_version: Pipeline version string (e.g., "0.1.0")
            config: PipelineConfig instance
        """
        self.pipeline_version = pipeline_version
        self.config_hash = config.config_hash()
        self.data_source_versions = config.versions.model_dump()
        self.processing_steps: list[dict] = []
        self.created_at = datetime.now(timezone.utc)

    def record_step(self, step_name: str, details: Optional[dict] = None) -> None:
        """
        Record a processing step.

        Args:
            step_name: Name of the processing step (e.g. "species_9606")
            details: Optional dictionary of additional details
        """
        step = {
            "step_name": step_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if details:
            step["details"] = details
        self.processing_steps.append(step)

    def create_metadata(self) -> dict:
        """
        Create full provenance metadata dictionary.

        Returns:
            Dictionary with all provenance information
        """
        return {
            "pipeline_version": self.pipeline_version,
            "data_source_versions": self.data_source_versions,
            "config_hash": self.config_hash,
            "created_at": self.created_at.isoformat(),
            "processing_steps": self.processing_steps,
        }

    def save_sidecar(self, output_path: Path) -> Path:
        """
        Save provenance metadata as a JSON sidecar file.

        Args:
            output_path: Path the run's results relate to (usually the
                         DuckDB file). Sidecar is saved as {path}.provenance.json

        Returns:
            Path of the sidecar file
        """
        # Sidecar next to the output, e.g. propagation.provenance.json
        sidecar_path = Path(output_path).with_suffix(".provenance.json")
        sidecar_path.parent.mkdir(parents=True, exist_ok=True)

        with open(sidecar_path, "w") as f:
            json.dump(self.create_metadata(), f, indent=2, default=str)
        return sidecar_path

    def save_to_store(self, store: "PipelineStore") -> None:
        """
        Append this run's provenance record to the store.

        Args:
            store: PipelineStore instance
        """
        metadata = self.create_metadata()

        # Create _provenance table on first use
        store.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {PROVENANCE_TABLE} (
                version VARCHAR,
                config_hash VARCHAR,
                ontology_release VARCHAR,
                data_release VARCHAR,
                created_at TIMESTAMP,
                steps_json VARCHAR
            )
        """)

        # Insert provenance record
        store.conn.execute(f"""
            INSERT INTO {PROVENANCE_TABLE}
            (version, config_hash, ontology_release, data_release, created_at, steps_json)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [
            metadata["pipeline_version"],
            metadata["config_hash"],
            self.data_source_versions.get("ontology_release"),
            self.data_source_versions.get("data_release"),
            self.created_at.replace(tzinfo=None),
            json.dumps(metadata["processing_steps"], default=str),
        ])

    @staticmethod
    def load_sidecar(sidecar_path: Path) -> dict:
        """Load provenance metadata from a .provenance.json file."""
        with open(sidecar_path) as f:
            return json.load(f)

    @classmethod
    def from_config(
        cls,
        config: "PipelineConfig",
        version: Optional[str] = None
    ) -> "ProvenanceTracker":
        """
        Create ProvenanceTracker from a PipelineConfig.

        Args:
            config: PipelineConfig instance
            version: Pipeline version string. If None, uses
                     exprcall_pipeline.__version__

        Returns:
            ProvenanceTracker instance
        """
        if version is None:
            from exprcall_pipeline import __version__
            version = __version__

        return cls(version, config)
