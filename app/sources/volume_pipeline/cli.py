import dataclasses
import logging
from pathlib import Path
from typing import Optional

import typer

from app.sources.volume_pipeline.config.settings import Settings
from app.sources.volume_pipeline.errors import ConfigError, StoreError
from app.sources.volume_pipeline.orchestrator import run_volume_update
from app.storage.alerts import AlertLog
from app.storage.store import VolumeStore, normalize_pool_volume, read_json
from app.utils.metrics import RunMetrics

log = logging.getLogger(__name__)

app = typer.Typer(help="Reconcile stablecoin transfer volume for configured pools")


def _settings(data_dir: Optional[Path], **overrides) -> Settings:
    settings = Settings.from_env()
    changes = {k: v for k, v in overrides.items() if v is not None}
    if data_dir is not None:
        changes["data_dir"] = data_dir
    return dataclasses.replace(settings, **changes) if changes else settings


@app.command("run")
def run(
    data_dir: Optional[Path] = typer.Option(None, help="Directory holding the pool/checkpoint/run/alert files"),
    max_jitter: Optional[int] = typer.Option(None, help="Upper bound for the per-pool start delay, seconds"),
    window_seconds: Optional[int] = typer.Option(None, help="Lookback for pools with no checkpoint"),
):
    """
    One pass over every pool: resolve the window since its checkpoint, sum
    stablecoin transfers, add to the running total.
    """
    try:
        settings = _settings(data_dir, max_jitter=max_jitter, window_seconds=window_seconds)
        settings.validate()
    except ConfigError as e:
        log.error(f"[cli] Configuration error: {e}")
        raise typer.Exit(code=2)

    try:
        summary = run_volume_update(settings)
    except StoreError as e:
        log.error(f"[cli] Store I/O failed, aborting run: {e}")
        raise typer.Exit(code=1)

    log.info(f"[cli] Run completed (alert={summary.alert})")


@app.command("show")
def show(
    data_dir: Optional[Path] = typer.Option(None, help="Directory holding the pool/checkpoint/run/alert files"),
):
    """Print per-pool totals the way the dashboard reads them, plus the last alert status."""
    try:
        settings = _settings(data_dir)
    except ConfigError as e:
        log.error(f"[cli] Configuration error: {e}")
        raise typer.Exit(code=2)

    store = VolumeStore(settings.data_dir)
    try:
        volumes = normalize_pool_volume(read_json(store.pool_path, default={}))
    except StoreError as e:
        log.error(f"[cli] {e}")
        raise typer.Exit(code=1)

    for address, total in volumes.items():
        typer.echo(f"{address}  {'N/A' if total is None else f'{total:,.2f} USD'}")

    status = AlertLog(settings.data_dir, RunMetrics()).load()
    if status:
        typer.echo(
            f"alert={status.get('alert')} reasons={len(status.get('reasons') or [])} "
            f"calls={status.get('apiCallCount')} retries={status.get('retryCount')} at {status.get('timestamp')}"
        )
