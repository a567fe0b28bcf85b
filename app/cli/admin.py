import click
from app.core.clock import utcnow
from app.core.config import settings
from app.core.database import SessionLocal
from app.models.price_change import ClientApprovalStatus, PriceChangeStatus, SubscriptionPriceChange
from app.models.product_price_change import ProductPriceChange
from app.services.price_change_scheduler import APPROVAL_SATISFIED, is_date_eligible
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


@click.group()
def cli():
    """Price change engine CLI commands"""
    pass


@cli.command()
@click.option('--dry-run', is_flag=True, help='List what the sweep would do without writing')
def sweep(dry_run):
    """Run one price change sweep"""
    db = SessionLocal()
    try:
        if dry_run:
            # Read-only listing (avoids Firebase init)
            now = utcnow()
            pending = db.query(SubscriptionPriceChange).filter(
                SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
                SubscriptionPriceChange.client_approval_status.in_(APPROVAL_SATISFIED),
            ).order_by(SubscriptionPriceChange.created_at).all()
            eligible = [record for record in pending if is_date_eligible(record, now)]
            click.echo(f"\n{len(eligible)} changes would be applied:\n")
            for record in eligible:
                click.echo(f"  - {record.id} (subscription {record.subscription_id}): "
                           f"{record.old_amount} -> {record.new_amount} [{record.application_type.value}]")

            cutoff = now - timedelta(days=settings.approval_window_days)
            expiring = db.query(SubscriptionPriceChange).filter(
                SubscriptionPriceChange.status == PriceChangeStatus.PENDING,
                SubscriptionPriceChange.client_approval_status == ClientApprovalStatus.PENDING,
                SubscriptionPriceChange.created_at <= cutoff,
            ).order_by(SubscriptionPriceChange.created_at).all()
            click.echo(f"\n{len(expiring)} approvals would be auto-approved:\n")
            for record in expiring:
                click.echo(f"  - {record.id} (subscription {record.subscription_id}), "
                           f"requested {record.created_at.isoformat()}")
            return

        from app.core.firebase import init_firebase
        from app.core.redis_lock import get_sweep_lock
        from app.services.price_change_scheduler import PriceChangeScheduler
        init_firebase()
        summary = PriceChangeScheduler(lock=get_sweep_lock()).run_sweep(db)
        if summary.skipped_locked:
            click.echo("✓ Another sweep is running, nothing done")
            return
        click.echo(f"✓ Applied {summary.applied}, auto-approved {summary.auto_approved}, failed {summary.failed}")
        for error in summary.errors:
            click.echo(f"  ❌ {error.price_change_id} (subscription {error.subscription_id}): {error.error}", err=True)
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command()
@click.option('--id', 'product_price_change_id', required=True, help='Product price change id')
def progress(product_price_change_id):
    """Show progress of a bulk price change"""
    db = SessionLocal()
    try:
        parent = db.query(ProductPriceChange).filter(ProductPriceChange.id == product_price_change_id).first()
        if not parent:
            click.echo(f"❌ Product price change not found: {product_price_change_id}", err=True)
            return

        total = parent.total_subscriptions_affected
        percentage = round(parent.subscriptions_applied / total * 100, 2) if total else 100.0
        click.echo(f"Product {parent.product_id}: {parent.old_base_amount} -> {parent.new_base_amount}")
        click.echo(f"  Total:            {total}")
        click.echo(f"  Applied:          {parent.subscriptions_applied}")
        click.echo(f"  Pending approval: {parent.subscriptions_pending_approval}")
        click.echo(f"  Failed:           {parent.subscriptions_failed} ({parent.subscriptions_skipped} skipped)")
        click.echo(f"  Complete:         {percentage}%")
    except Exception as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command()
@click.option('--token', required=True, help='Approval token from a client link')
def token(token):
    """Inspect the price change behind an approval token"""
    db = SessionLocal()
    try:
        record = db.query(SubscriptionPriceChange).filter(SubscriptionPriceChange.approval_token == token).first()
        if not record:
            click.echo("❌ Unknown token", err=True)
            return

        usable = (record.status == PriceChangeStatus.PENDING
                  and record.client_approval_status == ClientApprovalStatus.PENDING)
        expires_at = record.created_at + timedelta(days=settings.approval_window_days)
        click.echo(f"Price change {record.id} (subscription {record.subscription_id})")
        click.echo(f"  Amount:   {record.old_amount} -> {record.new_amount}")
        click.echo(f"  Status:   {record.status.value}, approval: {record.client_approval_status.value}")
        click.echo(f"  Usable:   {'yes' if usable else 'no'}")
        click.echo(f"  Auto-approves at: {expires_at.isoformat()}")
    except Exception as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


if __name__ == '__main__':
    cli()
