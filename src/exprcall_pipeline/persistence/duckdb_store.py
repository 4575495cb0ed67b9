"""DuckDB-based storage for raw calls, ontology relations and aggregate calls."""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

import duckdb
import polars as pl
import structlog
from pydantic import BaseModel

from exprcall_pipeline.calls.closure import OntologyClosure
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
)
from exprcall_pipeline.errors import PersistenceError, QueryInterruptedError
from exprcall_pipeline.persistence.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

RAW_CALLS_TABLE = "raw_calls"
AGGREGATE_CALLS_TABLE = "aggregate_calls"
PROVENANCE_LINKS_TABLE = "provenance_links"
RAW_CONFLICTS_TABLE = "raw_evidence_conflicts"
CONDITION_CONFLICTS_TABLE = "condition_conflicts"
RELATION_TABLES = {
    ConditionAxis.STRUCTURE: "structure_relations",
    ConditionAxis.STAGE: "stage_relations",
}

# One column per evidence type, named after the enum value
EVIDENCE_COLUMNS = [evidence_type.value for evidence_type in EvidenceType]

_EVIDENCE_DDL = ",\n".join(f"    {col} VARCHAR" for col in EVIDENCE_COLUMNS)

SCHEMA_DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS {RAW_CALLS_TABLE} (
        species_id INTEGER NOT NULL,
        call_id VARCHAR NOT NULL,
        call_kind VARCHAR NOT NULL,
        gene_id VARCHAR NOT NULL,
        structure_id VARCHAR NOT NULL,
        stage_id VARCHAR NOT NULL,
    {_EVIDENCE_DDL}
    )
    """,
    *[
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            species_id INTEGER NOT NULL,
            source_id VARCHAR NOT NULL,
            target_id VARCHAR NOT NULL
        )
        """
        for table in RELATION_TABLES.values()
    ],
    f"""
    CREATE TABLE IF NOT EXISTS {AGGREGATE_CALLS_TABLE} (
        species_id INTEGER NOT NULL,
        call_id INTEGER NOT NULL,
        call_kind VARCHAR NOT NULL,
        gene_id VARCHAR NOT NULL,
        structure_id VARCHAR NOT NULL,
        stage_id VARCHAR NOT NULL,
    {_EVIDENCE_DDL},
        structure_origin VARCHAR NOT NULL,
        stage_origin VARCHAR NOT NULL,
        observed_directly BOOLEAN NOT NULL,
        PRIMARY KEY (species_id, call_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {PROVENANCE_LINKS_TABLE} (
        species_id INTEGER NOT NULL,
        aggregate_call_id INTEGER NOT NULL,
        raw_call_id VARCHAR NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {RAW_CONFLICTS_TABLE} (
        species_id INTEGER NOT NULL,
        evidence_type VARCHAR NOT NULL,
        raw_call_id VARCHAR NOT NULL,
        flagged_at TIMESTAMP,
        PRIMARY KEY (species_id, evidence_type, raw_call_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {CONDITION_CONFLICTS_TABLE} (
        species_id INTEGER NOT NULL,
        gene_id VARCHAR NOT NULL,
        structure_id VARCHAR NOT NULL,
        stage_id VARCHAR NOT NULL,
        evidence_type VARCHAR NOT NULL,
        expression_state VARCHAR NOT NULL,
        no_expression_state VARCHAR NOT NULL,
        expression_raw_call_ids VARCHAR,
        no_expression_raw_call_ids VARCHAR,
        recorded_at TIMESTAMP
    )
    """,
]

_AGGREGATE_SCHEMA = {
    "species_id": pl.Int64,
    "call_id": pl.Int64,
    "call_kind": pl.Utf8,
    "gene_id": pl.Utf8,
    "structure_id": pl.Utf8,
    "stage_id": pl.Utf8,
    **{col: pl.Utf8 for col in EVIDENCE_COLUMNS},
    "structure_origin": pl.Utf8,
    "stage_origin": pl.Utf8,
    "observed_directly": pl.Boolean,
}


def _utc_now() -> datetime:
    """Current UTC time, naive, as stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _validate_raw_calls(df: pl.DataFrame) -> None:
    """
    Check call kinds and evidence labels of raw calls before loading them.

    Raises:
        ValueError: On an unknown call kind or data state label, or on
                    evidence for a type the call's kind does not allow
    """
    invalid_kinds = set(df["call_kind"].unique().to_list()) - {k.value for k in CallKind}
    if invalid_kinds:
        raise ValueError(f"Unknown call kinds: {sorted(map(str, invalid_kinds))}")

    valid_states = {state.value for state in DataState}
    for col in EVIDENCE_COLUMNS:
        invalid_states = set(df[col].drop_nulls().unique().to_list()) - valid_states
        if invalid_states:
            raise ValueError(f"Unknown {col} data states: {sorted(invalid_states)}")

    # "no data" is accepted anywhere, it is stored like NULL
    for kind in CallKind:
        allowed = {et.value for et in kind.evidence_types}
        rows = df.filter(pl.col("call_kind") == kind.value)
        for col in EVIDENCE_COLUMNS:
            if col in allowed:
                continue
            with_data = rows.filter(
                pl.col(col).is_not_null() & (pl.col(col) != DataState.NO_DATA.value)
            )
            if not with_data.is_empty():
                raise ValueError(
                    f"{col} evidence is not valid for {kind.value} calls "
                    f"(call IDs: {sorted(with_data['call_id'].to_list())[:5]})"
                )


class CallFilter(BaseModel):
    """Restricts the raw calls fetched for a species.

    Attributes:
        gene_ids: Only calls for these genes (all genes if None)
        structure_ids: Only calls observed in these structures
        stage_ids: Only calls observed in these stages
    """

    gene_ids: Optional[list[str]] = None
    structure_ids: Optional[list[str]] = None
    stage_ids: Optional[list[str]] = None


class PipelineStore:
    """
    DuckDB-based storage for the propagation pipeline.

    Holds the inputs (raw calls, transitively closed ontology relations) and
    the outputs (aggregate calls, provenance links, conflict records) of all
    species. Writes are set-based, through polars DataFrames.
    """

    def __init__(self, db_path: Path, conn: Optional[duckdb.DuckDBPyConnection] = None):
        """
        Initialize PipelineStore with a DuckDB database.

        Args:
            db_path: Path to DuckDB database file. Parent directories
                     are created automatically.
            conn: Existing connection to reuse (worker cursors)
        """
        self.db_path = Path(db_path)

        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = duckdb.connect(str(self.db_path))
            for ddl in SCHEMA_DDL:
                conn.execute(ddl)
        self.conn = conn

    def worker_store(self) -> "PipelineStore":
        """Store on a new cursor of the same database, for another thread."""
        return PipelineStore(self.db_path, conn=self.conn.cursor())

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        query: str,
        params: Optional[list] = None,
        token: Optional[CancellationToken] = None,
        frames: Optional[dict[str, pl.DataFrame]] = None,
    ) -> duckdb.DuckDBPyConnection:
        """
        Execute a statement, interruptible through `token`.

        Args:
            query: SQL statement
            params: Optional statement parameters
            token: Optional cancellation token
            frames: DataFrames the statement reads, registered as views
                    under their key for the duration of the statement
        """
        frames = frames or {}
        for name, frame in frames.items():
            self.conn.register(name, frame.to_arrow())
        try:
            if token is None:
                return self.conn.execute(query, params or [])
            try:
                with token.on_cancel(self.conn.interrupt):
                    result = self.conn.execute(query, params or [])
            except duckdb.InterruptException as exc:
                raise QueryInterruptedError(f"Query interrupted: {exc}") from exc
            token.raise_if_cancelled()
            return result
        finally:
            for name in frames:
                self.conn.unregister(name)

    def execute_query(
        self,
        query: str,
        params: Optional[list] = None,
        token: Optional[CancellationToken] = None,
    ) -> pl.DataFrame:
        """
        Execute arbitrary SQL query and return polars DataFrame.

        Args:
            query: SQL query to execute
            params: Optional query parameters
            token: Optional cancellation token

        Returns:
            Query results as polars DataFrame
        """
        return self._execute(query, params, token).pl()

    @contextmanager
    def transaction(self) -> Iterator["PipelineStore"]:
        """
        Run the block in one transaction.

        Commits on success; rolls back and re-raises on any exception.
        """
        self.conn.begin()
        try:
            yield self
        except BaseException:
            self.conn.rollback()
            logger.warning("transaction_rolled_back", db_path=str(self.db_path))
            raise
        self.conn.commit()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def load_raw_calls(self, df: pl.DataFrame) -> int:
        """
        Append raw calls to the store.

        Args:
            df: DataFrame with columns species_id, call_id, call_kind, gene_id,
                structure_id, stage_id and any evidence columns (missing
                evidence columns are stored as NULL = no data)

        Returns:
            Number of rows loaded

        Raises:
            ValueError: On unknown call kinds or data states, or on evidence
                        given for a type the call kind does not allow.
                        Nothing is loaded then.
        """
        for col in EVIDENCE_COLUMNS:
            if col not in df.columns:
                df = df.with_columns(pl.lit(None, dtype=pl.Utf8).alias(col))
        df = df.select([
            pl.col("species_id").cast(pl.Int64),
            pl.col("call_id").cast(pl.Utf8),
            pl.col("call_kind").cast(pl.Utf8),
            pl.col("gene_id").cast(pl.Utf8),
            pl.col("structure_id").cast(pl.Utf8),
            pl.col("stage_id").cast(pl.Utf8),
            *[pl.col(col).cast(pl.Utf8) for col in EVIDENCE_COLUMNS],
        ])
        _validate_raw_calls(df)

        self._execute(f"INSERT INTO {RAW_CALLS_TABLE} SELECT * FROM df", frames={"df": df})
        logger.info("raw_calls_loaded", row_count=df.height)
        return df.height

    def load_relations(self, axis: ConditionAxis, df: pl.DataFrame) -> int:
        """
        Append ontology relations (species_id, source_id, target_id).

        Relations must be transitively closed: one row per (term, ancestor).
        """
        df = df.select([
            pl.col("species_id").cast(pl.Int64),
            pl.col("source_id").cast(pl.Utf8),
            pl.col("target_id").cast(pl.Utf8),
        ])
        self._execute(f"INSERT INTO {RELATION_TABLES[axis]} SELECT * FROM df", frames={"df": df})
        logger.info("relations_loaded", axis=axis.value, row_count=df.height)
        return df.height

    def species_ids(self) -> list[int]:
        """IDs of all species having raw calls."""
        rows = self.conn.execute(
            f"SELECT DISTINCT species_id FROM {RAW_CALLS_TABLE} ORDER BY species_id"
        ).fetchall()
        return [row[0] for row in rows]

    def fetch_raw_calls(
        self,
        species_id: int,
        kind: CallKind,
        filters: Optional[CallFilter] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[RawCall]:
        """
        Fetch all raw calls of one kind for a species.

        Args:
            species_id: Species to fetch calls for
            kind: Call kind
            filters: Optional gene/structure/stage restrictions
            token: Optional cancellation token

        Returns:
            List of RawCall ordered by call ID
        """
        clauses = ["species_id = ?", "call_kind = ?"]
        params: list = [species_id, kind.value]
        if filters is not None:
            for col, values in (
                ("gene_id", filters.gene_ids),
                ("structure_id", filters.structure_ids),
                ("stage_id", filters.stage_ids),
            ):
                if values is not None:
                    clauses.append(f"list_contains(?, {col})")
                    params.append(list(values))

        evidence_cols = [et.value for et in kind.evidence_types]
        df = self.execute_query(
            f"""
            SELECT call_id, gene_id, structure_id, stage_id, {", ".join(evidence_cols)}
            FROM {RAW_CALLS_TABLE}
            WHERE {" AND ".join(clauses)}
            ORDER BY call_id
            """,
            params,
            token,
        )

        calls = [
            RawCall(
                id=row["call_id"],
                condition=Condition(
                    gene_id=row["gene_id"],
                    structure_id=row["structure_id"],
                    stage_id=row["stage_id"],
                ),
                kind=kind,
                evidence={
                    EvidenceType(col): DataState(row[col] or DataState.NO_DATA.value)
                    for col in evidence_cols
                },
            )
            for row in df.iter_rows(named=True)
        ]
        logger.info(
            "raw_calls_fetched", species_id=species_id, kind=kind.value, call_count=len(calls)
        )
        return calls

    def _fetch_closure(
        self, species_id: int, axis: ConditionAxis, token: Optional[CancellationToken]
    ) -> OntologyClosure:
        df = self.execute_query(
            f"SELECT source_id, target_id FROM {RELATION_TABLES[axis]} WHERE species_id = ?",
            [species_id],
            token,
        )
        closure = OntologyClosure.from_relations(df, axis)
        logger.info(
            "closure_fetched",
            species_id=species_id,
            axis=axis.value,
            entity_count=len(closure),
            relation_count=df.height,
        )
        return closure

    def fetch_structure_closure(
        self, species_id: int, token: Optional[CancellationToken] = None
    ) -> OntologyClosure:
        """Anatomical structures of a species mapped to themselves + ancestors."""
        return self._fetch_closure(species_id, ConditionAxis.STRUCTURE, token)

    def fetch_stage_closure(
        self, species_id: int, token: Optional[CancellationToken] = None
    ) -> OntologyClosure:
        """Developmental stages of a species mapped to themselves + ancestors."""
        return self._fetch_closure(species_id, ConditionAxis.STAGE, token)

    # ------------------------------------------------------------------
    # Aggregate calls and provenance links
    # ------------------------------------------------------------------

    def fetch_aggregate_calls(
        self,
        species_id: int,
        kind: Optional[CallKind] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[AggregateCall]:
        """Aggregate calls of a species (optionally of one kind), by call ID."""
        query = f"SELECT * FROM {AGGREGATE_CALLS_TABLE} WHERE species_id = ?"
        params: list = [species_id]
        if kind is not None:
            query += " AND call_kind = ?"
            params.append(kind.value)
        df = self.execute_query(query + " ORDER BY call_id", params, token)

        calls = []
        for row in df.iter_rows(named=True):
            row_kind = CallKind(row["call_kind"])
            calls.append(AggregateCall(
                id=row["call_id"],
                condition=Condition(
                    gene_id=row["gene_id"],
                    structure_id=row["structure_id"],
                    stage_id=row["stage_id"],
                ),
                kind=row_kind,
                evidence={
                    et: DataState(row[et.value] or DataState.NO_DATA.value)
                    for et in row_kind.evidence_types
                },
                structure_origin=OriginOfLine(row["structure_origin"]),
                stage_origin=OriginOfLine(row["stage_origin"]),
                observed_directly=row["observed_directly"],
            ))
        return calls

    def existing_call_ids(
        self,
        species_id: int,
        kind: CallKind,
        token: Optional[CancellationToken] = None,
    ) -> dict[Condition, int]:
        """IDs of the persisted aggregate calls of one kind, by condition."""
        df = self.execute_query(
            f"""
            SELECT call_id, gene_id, structure_id, stage_id
            FROM {AGGREGATE_CALLS_TABLE}
            WHERE species_id = ? AND call_kind = ?
            """,
            [species_id, kind.value],
            token,
        )
        return {
            Condition(gene_id=gene_id, structure_id=structure_id, stage_id=stage_id): call_id
            for call_id, gene_id, structure_id, stage_id in df.iter_rows()
        }

    def max_aggregate_call_id(
        self, species_id: int, token: Optional[CancellationToken] = None
    ) -> int:
        """Highest aggregate call ID of a species, 0 if it has none."""
        row = self._execute(
            f"SELECT COALESCE(MAX(call_id), 0) FROM {AGGREGATE_CALLS_TABLE} WHERE species_id = ?",
            [species_id],
            token,
        ).fetchone()
        return int(row[0])

    @staticmethod
    def _aggregate_frame(species_id: int, calls: Iterable[AggregateCall]) -> pl.DataFrame:
        rows = []
        for call in calls:
            if call.id is None:
                raise ValueError(f"Aggregate call at {call.condition} has no ID")
            rows.append({
                "species_id": species_id,
                "call_id": call.id,
                "call_kind": call.kind.value,
                "gene_id": call.condition.gene_id,
                "structure_id": call.condition.structure_id,
                "stage_id": call.condition.stage_id,
                **{
                    et.value: (call.evidence[et].value if et in call.evidence else None)
                    for et in EvidenceType
                },
                "structure_origin": call.structure_origin.value,
                "stage_origin": call.stage_origin.value,
                "observed_directly": call.observed_directly,
            })
        return pl.DataFrame(rows, schema=_AGGREGATE_SCHEMA)

    @staticmethod
    def _ids_frame(ids: Iterable[int]) -> pl.DataFrame:
        return pl.DataFrame({"call_id": sorted(ids)}, schema={"call_id": pl.Int64})

    def insert_aggregate_calls(
        self,
        species_id: int,
        calls: Iterable[AggregateCall],
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Insert new aggregate calls. Returns the number of rows inserted."""
        df = self._aggregate_frame(species_id, calls)
        if df.is_empty():
            return 0
        self._execute(
            f"INSERT INTO {AGGREGATE_CALLS_TABLE} SELECT * FROM df", token=token, frames={"df": df}
        )
        return df.height

    def update_aggregate_calls(
        self,
        species_id: int,
        calls: Iterable[AggregateCall],
        token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Overwrite persisted aggregate calls, matched on call ID.

        Raises:
            PersistenceError: If some calls do not exist in the store
        """
        df = self._aggregate_frame(species_id, calls)
        if df.is_empty():
            return 0
        assignments = ", ".join(
            f"{col} = df.{col}"
            for col in _AGGREGATE_SCHEMA
            if col not in ("species_id", "call_id")
        )
        row = self._execute(
            f"""
            UPDATE {AGGREGATE_CALLS_TABLE} SET {assignments}
            FROM df
            WHERE {AGGREGATE_CALLS_TABLE}.species_id = df.species_id
              AND {AGGREGATE_CALLS_TABLE}.call_id = df.call_id
            """,
            token=token,
            frames={"df": df},
        ).fetchone()
        updated = row[0] if row else 0
        if updated != df.height:
            raise PersistenceError(
                f"Incorrect number of aggregate calls updated, "
                f"expected: {df.height} but was: {updated}"
            )
        return updated

    def delete_aggregate_calls(
        self,
        species_id: int,
        call_ids: Iterable[int],
        token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Delete aggregate calls and their provenance links.

        Raises:
            PersistenceError: If some calls do not exist in the store
        """
        ids_df = self._ids_frame(call_ids)
        if ids_df.is_empty():
            return 0
        self.delete_provenance_links(species_id, ids_df["call_id"].to_list(), token)
        row = self._execute(
            f"""
            DELETE FROM {AGGREGATE_CALLS_TABLE}
            WHERE species_id = ? AND call_id IN (SELECT call_id FROM ids_df)
            """,
            [species_id],
            token,
            frames={"ids_df": ids_df},
        ).fetchone()
        deleted = row[0] if row else 0
        if deleted != ids_df.height:
            raise PersistenceError(
                f"Incorrect number of aggregate calls deleted, "
                f"expected: {ids_df.height} but was: {deleted}"
            )
        return deleted

    def insert_provenance_links(
        self,
        species_id: int,
        links: Iterable[ProvenanceLink],
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Insert provenance links. Returns the number of rows inserted."""
        df = pl.DataFrame(
            [
                {
                    "species_id": species_id,
                    "aggregate_call_id": link.aggregate_call_id,
                    "raw_call_id": link.raw_call_id,
                }
                for link in links
            ],
            schema={"species_id": pl.Int64, "aggregate_call_id": pl.Int64, "raw_call_id": pl.Utf8},
        )
        if df.is_empty():
            return 0
        self._execute(
            f"INSERT INTO {PROVENANCE_LINKS_TABLE} SELECT * FROM df", token=token, frames={"df": df}
        )
        return df.height

    def delete_provenance_links(
        self,
        species_id: int,
        aggregate_call_ids: Iterable[int],
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Delete all provenance links of the given aggregate calls."""
        ids_df = self._ids_frame(aggregate_call_ids)
        if ids_df.is_empty():
            return 0
        row = self._execute(
            f"""
            DELETE FROM {PROVENANCE_LINKS_TABLE}
            WHERE species_id = ? AND aggregate_call_id IN (SELECT call_id FROM ids_df)
            """,
            [species_id],
            token,
            frames={"ids_df": ids_df},
        ).fetchone()
        return row[0] if row else 0

    def fetch_provenance_links(
        self, species_id: int, aggregate_call_ids: Optional[Iterable[int]] = None
    ) -> list[ProvenanceLink]:
        """Provenance links of a species, optionally for some aggregate calls."""
        query = f"SELECT aggregate_call_id, raw_call_id FROM {PROVENANCE_LINKS_TABLE} WHERE species_id = ?"
        params: list = [species_id]
        if aggregate_call_ids is not None:
            query += " AND list_contains(?, aggregate_call_id)"
            params.append(sorted(aggregate_call_ids))
        rows = self.conn.execute(query + " ORDER BY aggregate_call_id, raw_call_id", params).fetchall()
        return [
            ProvenanceLink(aggregate_call_id=aggregate_call_id, raw_call_id=raw_call_id)
            for aggregate_call_id, raw_call_id in rows
        ]

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def flag_raw_evidence_conflict(
        self,
        species_id: int,
        evidence_type: EvidenceType,
        raw_call_ids: Iterable[str],
        token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Mark raw calls of one evidence source as conflicting.

        Raises:
            ValueError: If the evidence type has no raw data source
        """
        if not evidence_type.has_raw_source:
            raise ValueError(f"{evidence_type.value} evidence has no raw data source")
        df = pl.DataFrame(
            {"raw_call_id": sorted(set(raw_call_ids))}, schema={"raw_call_id": pl.Utf8}
        )
        if df.is_empty():
            return 0
        self._execute(
            f"""
            INSERT INTO {RAW_CONFLICTS_TABLE}
            SELECT ?, ?, raw_call_id, ? FROM df
            ON CONFLICT DO NOTHING
            """,
            [species_id, evidence_type.value, _utc_now()],
            token,
            frames={"df": df},
        )
        logger.info(
            "raw_evidence_flagged",
            species_id=species_id,
            evidence_type=evidence_type.value,
            raw_call_count=df.height,
        )
        return df.height

    def record_condition_conflicts(
        self,
        species_id: int,
        conflicts: Iterable,
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Store ConditionConflict records for manual review."""
        recorded_at = _utc_now()
        df = pl.DataFrame(
            [
                {
                    "species_id": species_id,
                    "gene_id": c.condition.gene_id,
                    "structure_id": c.condition.structure_id,
                    "stage_id": c.condition.stage_id,
                    "evidence_type": c.evidence_type.value,
                    "expression_state": c.expression_state.value,
                    "no_expression_state": c.no_expression_state.value,
                    "expression_raw_call_ids": ",".join(c.expression_raw_call_ids),
                    "no_expression_raw_call_ids": ",".join(c.no_expression_raw_call_ids),
                    "recorded_at": recorded_at,
                }
                for c in conflicts
            ],
            schema={
                "species_id": pl.Int64,
                "gene_id": pl.Utf8,
                "structure_id": pl.Utf8,
                "stage_id": pl.Utf8,
                "evidence_type": pl.Utf8,
                "expression_state": pl.Utf8,
                "no_expression_state": pl.Utf8,
                "expression_raw_call_ids": pl.Utf8,
                "no_expression_raw_call_ids": pl.Utf8,
                "recorded_at": pl.Datetime("us"),
            },
        )
        if df.is_empty():
            return 0
        self._execute(
            f"INSERT INTO {CONDITION_CONFLICTS_TABLE} SELECT * FROM df", token=token, frames={"df": df}
        )
        return df.height

    def fetch_condition_conflicts(self, species_id: Optional[int] = None) -> pl.DataFrame:
        """Recorded condition conflicts, optionally for one species."""
        query = f"SELECT * FROM {CONDITION_CONFLICTS_TABLE}"
        params: list = []
        if species_id is not None:
            query += " WHERE species_id = ?"
            params.append(species_id)
        return self.execute_query(
            query + " ORDER BY species_id, gene_id, structure_id, stage_id, evidence_type",
            params,
        )

    def fetch_raw_conflicts(self, species_id: int) -> dict[EvidenceType, set[str]]:
        """Raw call IDs flagged as conflicting, per evidence source."""
        rows = self.conn.execute(
            f"SELECT evidence_type, raw_call_id FROM {RAW_CONFLICTS_TABLE} WHERE species_id = ?",
            [species_id],
        ).fetchall()
        flagged: dict[EvidenceType, set[str]] = {}
        for evidence_type, raw_call_id in rows:
            flagged.setdefault(EvidenceType(evidence_type), set()).add(raw_call_id)
        return flagged

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes connection."""
        self.close()
        return False

    @classmethod
    def from_config(cls, config: "PipelineConfig") -> "PipelineStore":
        """
        Create PipelineStore from a PipelineConfig.

        Args:
            config: PipelineConfig instance

        Returns:
            PipelineStore instance
        """
        return cls(config.duckdb_path)
