"""Main CLI entry point for exprcall-pipeline.

Provides command group with global options and subcommands for pipeline operations.
"""

import logging
from pathlib import Path

import click

from exprcall_pipeline import __version__
from exprcall_pipeline.config.loader import load_config
from exprcall_pipeline.cli.conflicts_cmd import conflicts
from exprcall_pipeline.cli.load_cmd import load
from exprcall_pipeline.cli.propagate_cmd import propagate


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@click.group()
@click.option(
    '--config',
    type=click.Path(exists=True, path_type=Path),
    default='config/default.yaml',
    help='Path to pipeline configuration YAML file'
)
@click.option(
    '--verbose',
    is_flag=True,
    help='Enable verbose logging (DEBUG level)'
)
@click.pass_context
def cli(ctx, config, verbose):
    """exprcall-pipeline: propagation and reconciliation of gene expression calls.

    Loads raw expression/no-expression calls and ontology relations, propagates
    calls along anatomy and developmental stages, reconciles them into
    aggregate calls and detects conflicting evidence.
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Verbose logging enabled")


@cli.command()
@click.pass_context
def info(ctx):
    """Display pipeline information and configuration summary."""
    config_path = ctx.obj['config_path']

    click.echo(f"exprcall-pipeline v{__version__}")
    click.echo(f"Config: {config_path}")
    click.echo()

    try:
        config = load_config(config_path)

        click.echo(f"Config Hash: {config.config_hash()[:16]}...")
        click.echo()

        click.echo(click.style("Releases:", bold=True))
        click.echo(f"  Ontology Release: {config.versions.ontology_release}")
        click.echo(f"  Data Release:     {config.versions.data_release}")
        click.echo()

        click.echo(click.style("Paths:", bold=True))
        click.echo(f"  Data Directory: {config.data_dir}")
        click.echo(f"  DuckDB Path: {config.duckdb_path}")
        click.echo()

        species = ", ".join(str(s) for s in config.species_ids) or "all"
        click.echo(click.style("Propagation:", bold=True))
        click.echo(f"  Species: {species}")
        click.echo(f"  Substructures: {config.propagation.include_substructures}")
        click.echo(f"  Substages: {config.propagation.include_substages}")
        click.echo(
            f"  Restrict no-expression targets: "
            f"{config.propagation.restrict_no_expression_targets}"
        )
        click.echo(f"  Conflict policy: {config.conflicts.policy.value}")
        click.echo()

        click.echo(click.style("Execution:", bold=True))
        click.echo(f"  Workers: {config.execution.max_workers}")
        click.echo(f"  Interrupt retries: {config.execution.max_interrupt_retries}")
        timeout = config.execution.query_timeout_seconds
        click.echo(f"  Query timeout: {f'{timeout}s' if timeout else 'none'}")

    except Exception as e:
        click.echo(click.style(f"Error loading config: {e}", fg='red'), err=True)
        ctx.exit(1)


# Register commands
cli.add_command(load)
cli.add_command(propagate)
cli.add_command(conflicts)


if __name__ == '__main__':
    cli()
