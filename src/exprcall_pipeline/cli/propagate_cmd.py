"""Propagate command: build aggregate calls for one or more species.

Runs, for each species:
- propagation of expression and no-expression calls along the ontologies
- reconciliation into aggregate calls with provenance links
- conflict detection and invalidation of contradicted no-expression evidence
"""

import logging
import sys
from pathlib import Path

import click

from exprcall_pipeline.calls.conflicts import ConflictPolicy
from exprcall_pipeline.calls.orchestrator import PropagationOrchestrator
from exprcall_pipeline.config.loader import load_config_with_overrides
from exprcall_pipeline.persistence import PipelineStore, ProvenanceTracker

logger = logging.getLogger(__name__)


@click.command('propagate')
@click.option(
    '--species',
    'species_ids',
    type=int,
    multiple=True,
    help='Species ID to process (repeatable). Defaults to config species_ids, then all species.'
)
@click.option(
    '--include-substages/--no-include-substages',
    default=None,
    help='Also propagate calls along developmental stages (overrides config)'
)
@click.option(
    '--conflict-policy',
    type=click.Choice([policy.value for policy in ConflictPolicy]),
    default=None,
    help='Handling of directly observed contradictions (overrides config)'
)
@click.option(
    '--workers',
    type=click.IntRange(min=1),
    default=None,
    help='Number of species processed in parallel (overrides config)'
)
@click.pass_context
def propagate(ctx, species_ids, include_substages, conflict_policy, workers):
    """Propagate and reconcile calls, then detect conflicts.

    Each species is processed in its own transaction. A failing species is
    rolled back and reported; the other species are still processed.

    Examples:

        # All species, settings from the config file
        exprcall-pipeline propagate

        # Two species, with stage propagation, 4 workers
        exprcall-pipeline propagate --species 9606 --species 10090 --include-substages --workers 4
    """
    config_path = ctx.obj['config_path']

    click.echo(click.style("=== Call Propagation ===", bold=True))
    click.echo()

    store = None
    try:
        config = load_config_with_overrides(config_path, {
            'propagation.include_substages': include_substages,
            'conflicts.policy': conflict_policy,
            'execution.max_workers': workers,
        })
        store = PipelineStore.from_config(config)
        provenance = ProvenanceTracker.from_config(config)

        selected = list(species_ids) or config.species_ids or store.species_ids()
        if not selected:
            click.echo(click.style("No species with raw calls in the store", fg='yellow'))
            return
        click.echo(f"Species: {', '.join(str(s) for s in selected)}")
        click.echo(f"Conflict policy: {config.conflicts.policy.value}")
        click.echo()

        orchestrator = PropagationOrchestrator.from_config(store, config, provenance)
        report = orchestrator.run_batch(selected)

        provenance.save_to_store(store)
        provenance_path = provenance.save_sidecar(Path(config.data_dir) / "propagation.json")

        for species_id, outcome in sorted(report.outcomes.items()):
            if outcome.succeeded:
                counts = outcome.counts
                click.echo(click.style(f"  Species {species_id}: done", fg='green'))
                click.echo(
                    f"    expression: {counts['expression_calls']}, "
                    f"no-expression: {counts['no_expression_calls']}, "
                    f"links: {counts['provenance_links']}"
                )
                if counts['invalidated_no_expression'] or counts['rewritten_no_expression']:
                    click.echo(
                        f"    no-expression invalidated: {counts['invalidated_no_expression']}, "
                        f"rewritten: {counts['rewritten_no_expression']}, "
                        f"raw calls flagged: {counts['flagged_raw_calls']}"
                    )
                if counts['excluded_conditions']:
                    click.echo(click.style(
                        f"    conditions excluded for conflicts: {counts['excluded_conditions']}",
                        fg='yellow'
                    ))
            else:
                click.echo(click.style(
                    f"  Species {species_id}: FAILED ({type(outcome.error).__name__}: {outcome.error})",
                    fg='red'
                ), err=True)

        click.echo()
        click.echo(f"DuckDB Path: {config.duckdb_path}")
        click.echo(f"Provenance: {provenance_path}")
        click.echo()

        report.raise_for_failures()
        click.echo(click.style("Propagation complete!", fg='green', bold=True))

    except Exception as e:
        click.echo(click.style(f"Propagate command failed: {e}", fg='red'), err=True)
        logger.exception("Propagate command failed")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()
