"""Conflicts command: list conditions excluded for contradictory evidence."""

import logging
import sys

import click

from exprcall_pipeline.config.loader import load_config
from exprcall_pipeline.persistence import PipelineStore

logger = logging.getLogger(__name__)


@click.command('conflicts')
@click.option(
    '--species',
    'species_id',
    type=int,
    default=None,
    help='Only show conflicts of this species'
)
@click.pass_context
def conflicts(ctx, species_id):
    """List recorded expression/no-expression conflicts for manual review.

    Conflicts are recorded when propagation runs with the
    exclude_condition policy.
    """
    config_path = ctx.obj['config_path']

    store = None
    try:
        config = load_config(config_path)
        store = PipelineStore.from_config(config)
        df = store.fetch_condition_conflicts(species_id)

        if df.is_empty():
            click.echo(click.style("No conflicts recorded", fg='green'))
            return

        click.echo(click.style(f"{df.height} conflict(s) recorded:", bold=True))
        for row in df.iter_rows(named=True):
            click.echo(
                f"  species {row['species_id']}  {row['gene_id']}  "
                f"{row['structure_id']}  {row['stage_id']}  {row['evidence_type']}: "
                f"expression {row['expression_state']} "
                f"[{row['expression_raw_call_ids']}] vs "
                f"no-expression {row['no_expression_state']} "
                f"[{row['no_expression_raw_call_ids']}]"
            )

    except Exception as e:
        click.echo(click.style(f"Conflicts command failed: {e}", fg='red'), err=True)
        logger.exception("Conflicts command failed")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()
