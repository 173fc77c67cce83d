"""CLI tools for forwarding schedule administration."""

import asyncio
import sys
from uuid import UUID

import click

from ooo_forwarding.db.session import SessionLocal
from ooo_forwarding.services import forwarding_service
from ooo_forwarding.services.forwarding_service import ForwardingServiceError
from ooo_forwarding.services.mail_rule_gateway import get_mail_rule_gateway
from ooo_forwarding.services.reconciler_service import run_reconciliation


@click.group()
def cli():
    """OOO forwarding CLI tools."""
    pass


@cli.command()
def reconcile():
    """
    Run one forwarding reconciliation pass now.

    Same pass as the interval loop and the internal cron endpoint.
    Exits non-zero when any schedule failed.

    Example:
        python -m ooo_forwarding.cli reconcile
    """
    gateway = get_mail_rule_gateway()
    if gateway is None:
        click.echo("⚠ Mail system not configured (AZURE_* settings); nothing to do")

    with SessionLocal() as db:
        result = asyncio.run(run_reconciliation(db, gateway, trigger="cli"))

    click.echo(
        f"activated: {result.activated}, deactivated: {result.deactivated}, "
        f"missed: {result.missed}, cleaned up: {result.cleaned_up}, "
        f"repaired: {result.repaired}"
    )
    for error in result.errors:
        click.echo(f"❌ {error}")
    if result.errors:
        sys.exit(1)


@cli.command()
@click.option("--email", required=True, help="Mailbox to list schedules for")
@click.option("--limit", default=20, help="Number of schedules (newest first)")
def list_schedules(email: str, limit: int):
    """Show a mailbox's forwarding schedule history."""
    with SessionLocal() as db:
        schedules = forwarding_service.list_schedules(db, email, limit=limit)
        if not schedules:
            click.echo(f"No forwarding schedules for {email}")
            return
        for s in schedules:
            click.echo(
                f"{s.id}  {s.status:<9}  {s.starts_at:%Y-%m-%d %H:%M} → "
                f"{s.ends_at:%Y-%m-%d %H:%M}  to {s.forward_to_email}"
                + ("  [rule cleanup pending]" if s.rule_cleanup_pending else "")
            )


@cli.command()
@click.option("--email", required=True, help="Mailbox the schedule belongs to")
@click.option("--id", "schedule_id", default=None, help="Schedule ID (default: current)")
def cancel_schedule(email: str, schedule_id: str | None):
    """Cancel a mailbox's pending/active forwarding schedule."""
    gateway = get_mail_rule_gateway()
    with SessionLocal() as db:
        try:
            if schedule_id:
                result = asyncio.run(
                    forwarding_service.cancel_schedule(
                        db, gateway, UUID(schedule_id), user_email=email
                    )
                )
            else:
                result = asyncio.run(
                    forwarding_service.cancel_current_schedule(db, gateway, email)
                )
        except (ForwardingServiceError, ValueError) as e:
            click.echo(f"❌ {e}")
            sys.exit(1)

        click.echo(f"✓ Cancelled schedule {result.schedule.id}")
        if not result.rule_disabled:
            click.echo("→ Forwarding rule could not be confirmed disabled; the reconciler will retry")


if __name__ == "__main__":
    cli()
