"""
Prometheus textfile export.

Writes ``proxmox_backup.prom`` for the node-exporter textfile collector.
The registry is built fresh for every export so no series leak between
runs in the scheduler daemon.
"""

import logging
import os
from typing import Optional

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from pvebackup.models import RunSummary, Tier
from pvebackup.utils.counters import CONNECTIVITY_VALUES, TIERS, CounterSet


logger = logging.getLogger(__name__)

METRICS_FILENAME = 'proxmox_backup.prom'


def build_registry(summary: RunSummary, counters: Optional[CounterSet] = None) -> CollectorRegistry:
    registry = CollectorRegistry()
    labels = ['hostname', 'type']
    values = (summary.hostname, summary.backup_type)

    Gauge('proxmox_backup_duration_seconds', 'Duration of the last backup run',
          labels, registry=registry).labels(*values).set(summary.duration)
    Gauge('proxmox_backup_size_bytes', 'Size of the last backup archive',
          labels, registry=registry).labels(*values).set(summary.archive_size)
    Gauge('proxmox_backup_exit_code', 'Exit code of the last backup run (0 ok, 1 warning, 2 error)',
          labels, registry=registry).labels(*values).set(summary.exit_code)
    Gauge('proxmox_backup_warnings_total', 'Warnings logged by the last backup run',
          labels, registry=registry).labels(*values).set(summary.warnings)
    Gauge('proxmox_backup_errors_total', 'Errors logged by the last backup run',
          labels, registry=registry).labels(*values).set(summary.errors)
    Gauge('proxmox_backup_last_run_timestamp_seconds', 'Start time of the last backup run',
          labels, registry=registry).labels(*values).set(summary.started_at.timestamp())

    tier_success = Gauge('proxmox_backup_tier_success', 'Whether the last run delivered to a tier',
                         labels + ['tier'], registry=registry)
    for tier in Tier:
        tier_success.labels(*values, tier.value).set(1 if summary.tier_success(tier) else 0)

    if counters is not None:
        backup_count = Gauge('proxmox_backup_count', 'Archives stored per tier',
                             labels + ['tier'], registry=registry)
        log_count = Gauge('proxmox_backup_log_count', 'Run logs stored per tier',
                          labels + ['tier'], registry=registry)
        for tier in TIERS:
            backup_count.labels(*values, tier).set(counters.backups.get(tier, 0))
            log_count.labels(*values, tier).set(counters.logs.get(tier, 0))
        Gauge('proxmox_backup_cloud_connectivity', 'Cloud status (1 ok, 0 error, -1 disabled, -2 unknown)',
              labels, registry=registry).labels(*values).set(CONNECTIVITY_VALUES[counters.cloud_connectivity])
    return registry


def export_metrics(summary: RunSummary, counters: Optional[CounterSet], textfile_dir: str) -> str:
    """
    Write the metrics file.

    Args:
        summary: Finished run summary
        counters: Finalized counters
        textfile_dir: node-exporter textfile directory

    Returns:
        Path of the written file

    Raises:
        OSError: If the file cannot be written
    """
    os.makedirs(textfile_dir, exist_ok=True)
    path = os.path.join(textfile_dir, METRICS_FILENAME)
    # write_to_textfile writes a temp file and renames it into place
    write_to_textfile(path, build_registry(summary, counters))
    logger.info(f"Metrics written to {path}", extra={'category': 'METRICS'})
    return path
