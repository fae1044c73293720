"""
app/cli.py — `flask ledger ...` maintenance commands.

  flask ledger sweep                    one pass over every dirty group
  flask ledger run-sweeper [--interval] sweep forever on a fixed interval
  flask ledger rebuild [GROUP_ID ...]   synchronous full recompute

Only one sweeper should run per database. Each command uses the app's
shared ReconciliationCoordinator and therefore the same session handling
as the HTTP handlers.
"""

from __future__ import annotations

import time

import click
from flask import current_app
from flask.cli import AppGroup
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ledger_service.app.errors import AppError, ErrorCode
from ledger_service.app.extensions import db, get_coordinator
from ledger_service.app.models.group import Group

ledger_cli = AppGroup("ledger", help="Balance ledger maintenance.")


def _echo_report(report) -> None:
    click.echo(
        f"recomputed={len(report.recomputed)} dropped={len(report.dropped)} "
        f"deferred={len(report.deferred)} failed={len(report.failed)}"
    )


@ledger_cli.command("sweep")
def sweep_command():
    """Recompute every group marked dirty, once."""
    report = get_coordinator().sweep()
    _echo_report(report)
    if report.failed:
        raise SystemExit(1)


@ledger_cli.command("run-sweeper")
@click.option(
    "--interval",
    type=click.IntRange(min=1),
    default=None,
    help="Seconds between sweeps (default: LEDGER_SWEEP_INTERVAL_SECONDS).",
)
@click.option(
    "--max-runs",
    type=click.IntRange(min=1),
    default=None,
    hidden=True,
)
def run_sweeper_command(interval: int | None, max_runs: int | None):
    """Run the periodic sweep until interrupted."""
    interval = interval or current_app.config["LEDGER_SWEEP_INTERVAL_SECONDS"]
    coordinator = get_coordinator()

    click.echo(f"Sweeping every {interval}s (policy: {coordinator.policy.value}). Ctrl+C to stop.")
    runs = 0
    try:
        while True:
            report = coordinator.sweep()
            if report.processed:
                _echo_report(report)
            # A fresh session per pass; the scoped session would otherwise
            # keep identity-map state between sweeps.
            db.session.remove()

            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        click.echo("Sweeper stopped.")


@ledger_cli.command("rebuild")
@click.argument("group_ids", nargs=-1, type=int)
def rebuild_command(group_ids: tuple[int, ...]):
    """
    Full recompute of the given groups (all groups when none are given),
    whether or not they are marked dirty.
    """
    coordinator = get_coordinator()
    if not group_ids:
        group_ids = tuple(db.session.execute(select(Group.id).order_by(Group.id)).scalars())

    failures = 0
    for group_id in group_ids:
        try:
            snapshot = coordinator.reconcile_group(group_id)
            db.session.commit()
        except AppError as exc:
            db.session.rollback()
            failures += 1
            click.echo(f"group {group_id}: {exc.code} {exc.message}", err=True)
            continue
        except SQLAlchemyError as exc:
            db.session.rollback()
            failures += 1
            current_app.logger.exception("Rebuild of group %s failed", group_id)
            click.echo(f"group {group_id}: {ErrorCode.INTERNAL_ERROR} {exc.__class__.__name__}", err=True)
            continue
        click.echo(
            f"group {group_id}: {snapshot.expenses_count} expenses, "
            f"{len(snapshot.balances)} users with a balance"
        )

    if failures:
        raise SystemExit(1)
