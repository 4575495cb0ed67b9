"""Load command: import raw calls and ontology relations from TSV files."""

import logging
import sys
from pathlib import Path

import click
import polars as pl

from exprcall_pipeline.calls.models import ConditionAxis
from exprcall_pipeline.config.loader import load_config
from exprcall_pipeline.persistence import PipelineStore

logger = logging.getLogger(__name__)

RAW_CALL_COLUMNS = ["species_id", "call_id", "call_kind", "gene_id", "structure_id", "stage_id"]
RELATION_COLUMNS = ["species_id", "source_id", "target_id"]


def read_tsv(path: Path, required_columns: list[str]) -> pl.DataFrame:
    """
    Read a TSV file with all columns as strings.

    Args:
        path: TSV file with a header line
        required_columns: Columns that must be present

    Returns:
        polars DataFrame; empty fields are null

    Raises:
        click.ClickException: If required columns are missing
    """
    df = pl.read_csv(path, separator="\t", infer_schema_length=0)
    missing = [col for col in required_columns if col not in df.columns]
    if missing:
        raise click.ClickException(f"{path}: missing columns {missing}")
    return df


@click.command('load')
@click.option(
    '--raw-calls',
    'raw_call_paths',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    multiple=True,
    help='TSV of raw calls (species_id, call_id, call_kind, gene_id, '
         'structure_id, stage_id, one column per evidence type)'
)
@click.option(
    '--structure-relations',
    'structure_paths',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    multiple=True,
    help='TSV of transitively closed anatomical relations (species_id, source_id, target_id); '
         'isolated structures need a (structure, structure) row'
)
@click.option(
    '--stage-relations',
    'stage_paths',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    multiple=True,
    help='TSV of transitively closed developmental stage relations'
)
@click.pass_context
def load(ctx, raw_call_paths, structure_paths, stage_paths):
    """Import raw calls and ontology relations into the DuckDB store.

    All files are loaded in one transaction: if one fails, nothing is loaded.

    Examples:

        exprcall-pipeline load --raw-calls calls.tsv --structure-relations anatomy.tsv
    """
    config_path = ctx.obj['config_path']

    if not (raw_call_paths or structure_paths or stage_paths):
        click.echo(click.style("Nothing to load: pass at least one TSV file", fg='yellow'))
        return

    store = None
    try:
        config = load_config(config_path)
        store = PipelineStore.from_config(config)

        with store.transaction():
            for path in raw_call_paths:
                count = store.load_raw_calls(read_tsv(path, RAW_CALL_COLUMNS))
                click.echo(click.style(f"  Loaded {count} raw calls from {path}", fg='green'))
            for axis, paths in (
                (ConditionAxis.STRUCTURE, structure_paths),
                (ConditionAxis.STAGE, stage_paths),
            ):
                for path in paths:
                    count = store.load_relations(axis, read_tsv(path, RELATION_COLUMNS))
                    click.echo(click.style(
                        f"  Loaded {count} {axis.value} relations from {path}", fg='green'
                    ))

        click.echo()
        click.echo(f"DuckDB Path: {config.duckdb_path}")
        click.echo(click.style("Load complete!", fg='green', bold=True))

    except click.ClickException:
        raise
    except Exception as e:
        click.echo(click.style(f"Load command failed: {e}", fg='red'), err=True)
        logger.exception("Load command failed")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()
