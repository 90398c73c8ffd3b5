"""
Public verification of serial codes and gram item codes.

Every successful scan increments the record's counter with a single SQL
UPDATE and appends a scan log row in the same transaction. Unknown codes
touch no rows.
"""
import re
import datetime
import logging
from sqlalchemy import update, select, func
from sqlalchemy.exc import SQLAlchemyError

from app import db
from models import QrRecord, QrScanLog, GramProductItem, GramQrScanLog
from error_handlers import ValidationError, NotFoundError, AuthorizationError, DependencyError
from serial_utils import check_root_key

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 64
COUNTERFEIT_MESSAGE = 'Serial code not recognized. This item may be counterfeit.'


class VerificationResult:
    """Outcome of a successful verification"""

    def __init__(self, product, scan_count, kind='product', first_scanned_at=None):
        self.verified = True
        self.product = product
        self.scan_count = scan_count
        self.kind = kind
        self.first_scanned_at = first_scanned_at

    def to_dict(self):
        data = {
            'verified': self.verified,
            'success': True,
            'kind': self.kind,
            'product': self.product,
            'scan_count': self.scan_count,
        }
        if self.first_scanned_at:
            data['first_scanned_at'] = self.first_scanned_at.isoformat()
        return data


def normalize_code(raw):
    """Trim, upper-case and strip non-alphanumerics; reject empty or oversized codes"""
    code = re.sub(r'[^A-Z0-9]', '', (raw or '').strip().upper())
    if not code or len(code) > MAX_CODE_LENGTH:
        raise ValidationError(
            'Invalid code format',
            fields={'code': [f"Code must be 1-{MAX_CODE_LENGTH} letters or digits"]},
            payload={'verified': False}
        )
    return code


def _truncate(value, length):
    return value[:length] if value else None


def _not_found(code, ip):
    logger.warning(f"Verification failed for unknown code {code!r} from {ip}")
    return NotFoundError(COUNTERFEIT_MESSAGE, payload={'verified': False})


def _vanished(kind, row_id):
    logger.warning(f"{kind} {row_id} was deleted before its scan could be recorded")
    return NotFoundError(COUNTERFEIT_MESSAGE, payload={'verified': False})


def _record_product_scan(record_id, ip, user_agent):
    """Increment the record's counter and append a scan log; NotFoundError if the record is gone"""
    now = datetime.datetime.utcnow()
    try:
        result = db.session.execute(
            update(QrRecord)
            .where(QrRecord.id == record_id)
            .values(scan_count=QrRecord.scan_count + 1, last_scanned_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.session.rollback()
            raise _vanished('QR record', record_id)

        db.session.add(QrScanLog(
            qr_record_id=record_id,
            scanned_at=now,
            ip=_truncate(ip, 45),
            user_agent=_truncate(user_agent, 500),
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Could not record scan', original=e)

    scan_count = db.session.execute(
        select(QrRecord.scan_count).where(QrRecord.id == record_id)
    ).scalar_one_or_none()
    if scan_count is None:
        raise _vanished('QR record', record_id)
    return scan_count


def _record_gram_scan(item_id, ip, user_agent):
    now = datetime.datetime.utcnow()
    try:
        result = db.session.execute(
            update(GramProductItem)
            .where(GramProductItem.id == item_id)
            .values(scan_count=GramProductItem.scan_count + 1, last_scanned_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.session.rollback()
            raise _vanished('Gram item', item_id)

        db.session.add(GramQrScanLog(
            item_id=item_id,
            scanned_at=now,
            ip=_truncate(ip, 45),
            user_agent=_truncate(user_agent, 500),
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Could not record scan', original=e)

    row = db.session.execute(
        select(GramProductItem.scan_count, func.min(GramQrScanLog.scanned_at))
        .outerjoin(GramQrScanLog, GramQrScanLog.item_id == GramProductItem.id)
        .where(GramProductItem.id == item_id)
        .group_by(GramProductItem.id, GramProductItem.scan_count)
    ).one_or_none()
    if row is None:
        raise _vanished('Gram item', item_id)
    return row[0], row[1]


def _public_product(record):
    product = record.product
    return {
        'name': product.name,
        'weight': product.weight,
        'serial_code': record.serial_code,
        'price': product.price,
        'stock': product.stock,
        'qr_image_url': record.qr_image_url,
        'created_at': product.created_at.isoformat() if product.created_at else None,
    }


def _public_gram_item(item):
    batch = item.batch
    return {
        'name': batch.name,
        'weight': batch.weight,
        'uniq_code': item.uniq_code,
        'serial_code': item.serial_code,
        'weight_group': batch.weight_group,
        'qr_image_url': item.qr_image_url,
        'created_at': item.created_at.isoformat() if item.created_at else None,
    }


def _find_product_record(code):
    try:
        return QrRecord.query.filter_by(serial_code=code).first()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Verification lookup failed', original=e)


def _find_gram_item(code, include_serial=False):
    try:
        item = GramProductItem.query.filter_by(uniq_code=code).first()
        if item is None and include_serial:
            item = GramProductItem.query.filter_by(serial_code=code).first()
        return item
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Verification lookup failed', original=e)


def _verify_gram_item(item, ip, user_agent):
    public = _public_gram_item(item)
    scan_count, first_scanned_at = _record_gram_scan(item.id, ip, user_agent)
    logger.info(f"Verified gram item {public['uniq_code']} (scan #{scan_count})")
    return VerificationResult(public, scan_count, kind='gram', first_scanned_at=first_scanned_at)


def verify_code(raw_code, ip=None, user_agent=None):
    """
    Verify a scanned or typed code against products, then gram items.

    Returns:
        VerificationResult

    Raises:
        ValidationError: code is empty or malformed
        NotFoundError: no product or item carries the code
        DependencyError: the database failed while recording the scan
    """
    code = normalize_code(raw_code)

    record = _find_product_record(code)
    if record is not None and record.product is not None:
        public = _public_product(record)
        scan_count = _record_product_scan(record.id, ip, user_agent)
        logger.info(f"Verified product {code} (scan #{scan_count})")
        return VerificationResult(public, scan_count)

    item = _find_gram_item(code)
    if item is not None and item.batch is not None:
        return _verify_gram_item(item, ip, user_agent)

    raise _not_found(code, ip)


def verify_gram_code(raw_code, ip=None, user_agent=None):
    """Verify a gram item by its QR-embedded unique code"""
    code = normalize_code(raw_code)

    item = _find_gram_item(code)
    if item is None or item.batch is None:
        raise _not_found(code, ip)

    return _verify_gram_item(item, ip, user_agent)


def verify_root_key(uniq_code, root_key):
    """
    Second-step check for gram items.

    ``uniq_code`` may also be the item's printed serial code. Returns the
    item's serial code when the root key matches. Does not count as a scan.
    """
    item = _find_gram_item(uniq_code, include_serial=True)
    if item is None:
        raise NotFoundError('Product not found', payload={'verified': False})

    if not item.root_key_hash or not check_root_key(item.root_key_hash, root_key):
        logger.warning(f"Invalid root key attempt for {uniq_code}")
        raise AuthorizationError('Invalid root key', payload={'verified': False})

    return {'verified': True, 'serial_code': item.serial_code}
