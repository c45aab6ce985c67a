"""
Aggregate hourly statistics.

Folds the previous hour's telemetry into one statistics_hourly row per active
device. Run via cron every hour:

    0 * * * * ms11-aggregate
"""

import logging
import sys
from datetime import timedelta

import click
import psycopg2

from . import config
from .store import TelemetryStore
from .timeutil import floor_hour, parse_timestamp, previous_hour

logger = logging.getLogger(__name__)


def aggregate_hour(store, hour_start, echo=click.echo):
    """
    Compute and save the rollup for every active device for one hour.

    Devices without samples (with a temperature) in that hour are skipped.
    A failure on one device is logged and the next device is processed;
    failing to list the devices propagates.
    """
    hour_end = hour_start + timedelta(hours=1)
    devices = store.active_device_ids()

    echo(f"Aggregating data for hour: {hour_start.isoformat()}")
    echo(f"Found {len(devices)} active device(s)\n")

    report = {
        'hour': hour_start,
        'devices': len(devices),
        'aggregated': 0,
        'skipped': 0,
        'failed': [],
    }

    for device_id in devices:
        try:
            summary = store.hourly_summary(device_id, hour_start, hour_end)
            if not summary['sample_count']:
                echo(f"Processing device: {device_id}... No data")
                report['skipped'] += 1
                continue

            store.save_hourly_summary(device_id, hour_start, summary)
        except psycopg2.Error as e:
            logger.error(f"Aggregation failed for {device_id} at {hour_start.isoformat()}: {e}")
            echo(f"Processing device: {device_id}... FAILED")
            report['failed'].append(device_id)
            continue

        echo(f"Processing device: {device_id}... OK ({summary['sample_count']} samples)")
        report['aggregated'] += 1

    return report


@click.command()
@click.option(
    "--hour",
    default=None,
    help="Aggregate the hour containing this timestamp (ISO or unix) instead of the previous hour."
)
def main(hour):
    """Aggregate telemetry into hourly statistics."""
    config.setup_logging()

    click.echo("========================================")
    click.echo("MS11 Telemetry - Hourly Aggregation")
    click.echo("========================================\n")

    if hour is not None:
        target = parse_timestamp(hour)
        if target is None:
            raise click.BadParameter(f"Could not parse timestamp: {hour}", param_hint="--hour")
        hour_start = floor_hour(target)
    else:
        hour_start = previous_hour()

    store = TelemetryStore()
    try:
        report = aggregate_hour(store, hour_start)
    except psycopg2.Error as e:
        logger.error(f"Aggregation aborted: {e}")
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    click.echo("\n========================================")
    click.echo(f"Aggregation complete: {report['aggregated']} device(s) processed")
    if report['failed']:
        click.echo(f"Failed: {', '.join(report['failed'])}")
    click.echo("========================================")

    if report['failed']:
        sys.exit(1)


if __name__ == '__main__':
    main()
