"""
Deleted-product history retention and cleanup
Purges delete history snapshots and delete batches older than the retention window
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from flask import current_app
from sqlalchemy import delete, update, select, func
from sqlalchemy.exc import SQLAlchemyError
from app import db
from models import ProductDeleteBatch, ProductDeleteHistory
from error_handlers import DependencyError
from validation_utils import InputValidator

logger = logging.getLogger(__name__)


class DeleteHistoryRetention:
    """Manages delete history retention and cleanup"""

    @staticmethod
    def default_retention_days() -> int:
        days = current_app.config['DELETE_HISTORY_RETENTION_DAYS']
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            logger.error(f"DELETE_HISTORY_RETENTION_DAYS is misconfigured: {days!r}")
            raise DependencyError('Retention window is misconfigured')
        return days

    @staticmethod
    def get_retention_cutoff_date(retention_days: int, now: Optional[datetime] = None) -> datetime:
        """Rows with deleted_at strictly before this moment are expired"""
        return (now or datetime.utcnow()) - timedelta(days=retention_days)

    @staticmethod
    def count_expired(days=None, now: Optional[datetime] = None) -> dict:
        """Report what a cleanup would remove without deleting anything"""
        retention_days = (DeleteHistoryRetention.default_retention_days() if days is None
                          else InputValidator.validate_retention_days(days))
        cutoff = DeleteHistoryRetention.get_retention_cutoff_date(retention_days, now)

        histories = db.session.execute(
            select(func.count(ProductDeleteHistory.id)).where(ProductDeleteHistory.deleted_at < cutoff)
        ).scalar_one()
        batches = db.session.execute(
            select(func.count(ProductDeleteBatch.id)).where(ProductDeleteBatch.deleted_at < cutoff)
        ).scalar_one()

        return {
            'dry_run': True,
            'would_delete_history': histories,
            'would_delete_batches': batches,
            'retention_days': retention_days,
            'cutoff': cutoff.isoformat(),
        }

    @staticmethod
    def cleanup(days=None, now: Optional[datetime] = None) -> dict:
        """
        Delete history and batch rows older than ``days`` in one transaction.

        Args:
            days: Retention window; defaults to DELETE_HISTORY_RETENTION_DAYS
            now: Reference time (defaults to utcnow)

        Returns:
            Dict with deleted_history, deleted_batches and cutoff

        Raises:
            ValidationError: days is non-numeric or not positive
        """
        retention_days = (DeleteHistoryRetention.default_retention_days() if days is None
                          else InputValidator.validate_retention_days(days))
        cutoff = DeleteHistoryRetention.get_retention_cutoff_date(retention_days, now)

        try:
            history_result = db.session.execute(
                delete(ProductDeleteHistory)
                .where(ProductDeleteHistory.deleted_at < cutoff)
                .execution_options(synchronize_session=False)
            )

            expired_batches = select(ProductDeleteBatch.id).where(ProductDeleteBatch.deleted_at < cutoff)
            # Surviving histories keep their snapshot but lose the batch link
            db.session.execute(
                update(ProductDeleteHistory)
                .where(ProductDeleteHistory.batch_id.in_(expired_batches))
                .values(batch_id=None)
                .execution_options(synchronize_session=False)
            )
            batch_result = db.session.execute(
                delete(ProductDeleteBatch)
                .where(ProductDeleteBatch.deleted_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise DependencyError('Delete history cleanup failed', original=e)

        deleted_history = history_result.rowcount or 0
        deleted_batches = batch_result.rowcount or 0

        if deleted_history or deleted_batches:
            logger.info(
                f"Purged {deleted_history} delete history rows and {deleted_batches} delete batches "
                f"older than {retention_days} days"
            )

        return {
            'deleted_history': deleted_history,
            'deleted_batches': deleted_batches,
            'retention_days': retention_days,
            'cutoff': cutoff.isoformat(),
        }


# CLI convenience function for manage.py
def run_history_cleanup(days=None, dry_run: bool = False):
    """
    Purge expired delete history - can be called from manage.py or a scheduled task.

    Usage:
        python manage.py cleanup_history            # default retention
        python manage.py cleanup_history 60         # custom window
        python manage.py cleanup_history --dry-run
    """
    from app import app

    with app.app_context():
        if dry_run:
            result = DeleteHistoryRetention.count_expired(days)
        else:
            result = DeleteHistoryRetention.cleanup(days)

        print("\n" + "=" * 60)
        print("DELETE HISTORY RETENTION REPORT")
        print("=" * 60)
        print(f"\nRetention window: {result['retention_days']} days (cutoff {result['cutoff']})")

        if dry_run:
            print("\nDRY RUN MODE - No changes made")
            print(f"   Would delete: {result['would_delete_history']:,} history rows")
            print(f"   Would delete: {result['would_delete_batches']:,} delete batches")
        else:
            print(f"\n   Deleted: {result['deleted_history']:,} history rows")
            print(f"   Deleted: {result['deleted_batches']:,} delete batches")

        print("\n" + "=" * 60)
        print()

        return result
