# Overview: Flask CLI command groups for bootstrap, background jobs, and maintenance.

# backend/kindplate/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Schema:
# - python -m flask db upgrade
#   Apply migrations (Flask-Migrate / Alembic). Preferred over init-db.
# - python -m flask system init-db
#   DEV/TEST only: create all tables from the models.
# - python -m flask system seed-demo
#   Create a demo business with two offers.
#
# Background jobs (schedule with cron or a process manager, every minute is fine):
# - python -m flask jobs sweep-reservations
#   Cancel draft/confirmed orders whose holds expired; release orphaned holds.
# - python -m flask jobs expire-payments
#   Poll or fail payments stuck in pending/processing.
# - python -m flask jobs publish-offers
#   Apply offer publish_at / unpublish_at.
# - python -m flask jobs run-all
#   All of the above, then waitlist dispatch and stale quality recompute.
#
# Waitlist:
# - python -m flask waitlist dispatch [--limit 100]
#   Send notifications for unprocessed availability events.
#
# Quality badge:
# - python -m flask quality recompute [--business-id 3] [--all]
#   Recompute badges (default: only businesses with new completions/cancellations/reviews).
#
# Maintenance:
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.

from datetime import time

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Business, Offer
from .services import (
    offer_service,
    order_service,
    payment_service,
    quality_service,
    security_service,
    waitlist_service,
)


@click.group('system')
def system_group():
    """Schema bootstrap and demo data."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (DEV/TEST only; use `flask db upgrade` elsewhere)."""
    db.create_all()
    click.echo("PASS Tables created")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a demo business with two offers (idempotent)."""
    business = db.session.query(Business).filter_by(name="Demo Bakery").first()
    if business:
        click.echo(f"PASS Using existing business: {business.name} (ID: {business.id})")
        return

    business = Business(name="Demo Bakery", latitude=55.7558, longitude=37.6173)
    db.session.add(business)
    db.session.flush()
    db.session.add_all([
        Offer(
            business_id=business.id,
            title="Surprise pastry box",
            original_price_cents=90000,
            discounted_price_cents=35000,
            quantity_available=5,
            pickup_time_start=time(19, 0),
            pickup_time_end=time(21, 0),
        ),
        Offer(
            business_id=business.id,
            title="Day-old bread bag",
            original_price_cents=40000,
            discounted_price_cents=15000,
            quantity_available=0,
            pickup_time_start=time(20, 0),
            pickup_time_end=time(21, 30),
        ),
    ])
    db.session.commit()
    click.echo(f"PASS Created business {business.name} (ID: {business.id}) with 2 offers")


@click.group('jobs')
def jobs_group():
    """Periodic background jobs."""


@jobs_group.command('sweep-reservations')
@with_appcontext
def sweep_reservations():
    result = order_service.sweep_expired_reservations()
    click.echo(f"PASS Cancelled {result['cancelled_orders']} order(s), released {result['released_orphans']} orphan hold(s)")


@jobs_group.command('expire-payments')
@with_appcontext
def expire_payments():
    result = payment_service.expire_stale_payments()
    click.echo(f"PASS Expired {result['expired']} payment(s), {result['settled']} settled by provider")


@jobs_group.command('publish-offers')
@with_appcontext
def publish_offers():
    result = offer_service.process_schedule()
    click.echo(f"PASS Published {result['published']}, unpublished {result['unpublished']} offer(s)")


@jobs_group.command('run-all')
@with_appcontext
def run_all():
    """Run every periodic job once, in dependency order."""
    ctx = click.get_current_context()
    ctx.invoke(publish_offers)
    ctx.invoke(expire_payments)
    ctx.invoke(sweep_reservations)
    ctx.invoke(dispatch_waitlist)
    ctx.invoke(recompute_quality)


@click.group('waitlist')
def waitlist_group():
    """Waitlist notifications."""


@waitlist_group.command('dispatch')
@click.option('--limit', default=100, show_default=True, help='Max events to process')
@with_appcontext
def dispatch_waitlist(limit=100):
    result = waitlist_service.dispatch_pending(limit=limit)
    click.echo(
        f"PASS {result['events']} event(s): sent {result['sent']}, "
        f"throttled {result['throttled']}, failed {result['failed']}"
    )


@click.group('quality')
def quality_group():
    """Quality badge scoring."""


@quality_group.command('recompute')
@click.option('--business-id', type=int, default=None, help='Recompute one business')
@click.option('--all', 'all_businesses', is_flag=True, help='Recompute every business')
@with_appcontext
def recompute_quality(business_id=None, all_businesses=False):
    if business_id:
        result = quality_service.recompute_many([business_id])
    elif all_businesses:
        result = quality_service.recompute_all()
    else:
        result = quality_service.recompute_stale()
    click.echo(f"PASS Recomputed {result['recomputed']} business(es), {result['failed']} failed")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', default=90, show_default=True, help='Delete events older than this many days')
@with_appcontext
def cleanup_security_events(retention_days):
    deleted = security_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"PASS Deleted {deleted} security event(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(jobs_group)
    app.cli.add_command(waitlist_group)
    app.cli.add_command(quality_group)
    app.cli.add_command(maintenance_group)
