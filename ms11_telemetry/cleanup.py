"""
Clean old telemetry data.

Removes telemetry samples, events and hourly statistics older than the
configured retention period. Run via cron daily:

    0 2 * * * ms11-cleanup
"""

import logging
import sys
from datetime import timedelta

import click
import psycopg2

from . import config
from .store import TelemetryStore
from .timeutil import get_local_now

logger = logging.getLogger(__name__)

LABELS = {
    'telemetry_data': 'Telemetry data',
    'events': 'Events',
    'statistics_hourly': 'Statistics',
}


def retention_cutoff(retention_days, now=None):
    return (now or get_local_now()) - timedelta(days=retention_days)


def run_cleanup(store, retention_days, dry_run=False, now=None, echo=click.echo):
    """
    Count, then (unless dry_run) delete, rows strictly older than the cutoff.

    retention_days <= 0 keeps everything.
    """
    report = {
        'cutoff': None,
        'dry_run': dry_run,
        'to_delete': {},
        'deleted': {},
        'tables': [],
    }

    if retention_days <= 0:
        echo("Retention disabled (0 = keep forever) - nothing to do")
        report['tables'] = store.storage_report()
        echo_storage(report['tables'], echo)
        return report

    cutoff = retention_cutoff(retention_days, now)
    report['cutoff'] = cutoff
    echo(f"Removing data older than: {cutoff.isoformat()}\n")

    counts = store.count_older_than(cutoff)
    report['to_delete'] = counts
    total = sum(counts.values())

    echo("Records to be deleted:")
    for table, count in counts.items():
        echo(f"- {LABELS.get(table, table)}: {count}")
    echo(f"- Total: {total}\n")

    if dry_run:
        echo("DRY RUN - No records deleted")
    else:
        # every table, rows may have arrived since counting
        echo("Deleting records...")
        report['deleted'] = store.delete_older_than(cutoff)
        for table, deleted in report['deleted'].items():
            echo(f"Deleting {LABELS.get(table, table).lower()}... Done ({deleted})")
        echo("\nCleanup complete!")

    report['tables'] = store.storage_report()
    echo_storage(report['tables'], echo)
    return report


def echo_storage(tables, echo=click.echo):
    echo("\nCurrent database size:")
    for table in tables:
        echo(f"- {table['table_name']}: {table['total_size']} ({table['row_count']} rows)")


@click.command()
@click.option("--dry-run", is_flag=True, help="Only count what would be deleted.")
@click.option(
    "--days",
    type=int,
    default=None,
    help="Retention period in days (default: DATA_RETENTION_DAYS)."
)
def main(dry_run, days):
    """Delete time-series data older than the retention period."""
    config.setup_logging()
    retention_days = config.DATA_RETENTION_DAYS if days is None else days

    click.echo("========================================")
    click.echo("MS11 Telemetry - Data Cleanup")
    click.echo("========================================\n")
    click.echo(f"Retention period: {retention_days} days")
    click.echo(f"Mode: {'DRY RUN (no changes)' if dry_run else 'LIVE'}\n")

    store = TelemetryStore()
    try:
        run_cleanup(store, retention_days, dry_run=dry_run)
    except psycopg2.Error as e:
        logger.error(f"Cleanup aborted: {e}")
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    click.echo("\n========================================")
    click.echo("Cleanup script complete")
    click.echo("========================================")


if __name__ == '__main__':
    main()
