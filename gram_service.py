"""
Admin workflow for gram-based production batches.

A batch of ``quantity`` items gets one QR-embedded unique code, one printed
sequential serial and one root key per item. All QR assets are rendered and
stored before the batch and its items are written in a single commit.
"""
import logging
from flask import current_app
from sqlalchemy import delete, select, func
from sqlalchemy.exc import SQLAlchemyError

from app import db
from models import GramProductBatch, GramProductItem, GramQrScanLog, WeightGroup, QrMode
from error_handlers import NotFoundError, ConflictError, DependencyError
from validation_utils import InputValidator
from serial_utils import (
    generate_serial_code, generate_sequential_serials, find_highest_serial_number,
    generate_root_key, hash_root_key
)
from qr_utils import build_verify_url, render_qr_png
from storage_utils import get_asset_store, gram_qr_key
from product_service import cleanup_assets, commit_or_cleanup, chunked

logger = logging.getLogger(__name__)

SMALL_WEIGHT_LIMIT = 100  # grams
PROGRESS_LOG_EVERY = 1000


def weight_group_for(weight):
    return WeightGroup.SMALL.value if weight < SMALL_WEIGHT_LIMIT else WeightGroup.LARGE.value


def qr_mode_for(quantity):
    return QrMode.MULTI_QR.value if quantity > 1 else QrMode.SINGLE_QR.value


def _uniq_code_exists(code):
    return db.session.execute(
        select(GramProductItem.id).where(GramProductItem.uniq_code == code)
    ).first() is not None


def allocate_uniq_codes(count, prefix=None):
    """Allocate ``count`` unique codes not used by any item or by each other"""
    prefix = prefix or current_app.config['GRAM_UNIQ_PREFIX']
    attempts = current_app.config['SERIAL_MAX_ATTEMPTS']
    codes = []
    reserved = set()
    for _ in range(count):
        for attempt in range(1, attempts + 1):
            candidate = generate_serial_code(prefix)
            if candidate not in reserved and not _uniq_code_exists(candidate):
                reserved.add(candidate)
                codes.append(candidate)
                break
            logger.warning(f"Uniq code collision on {candidate} (attempt {attempt}/{attempts})")
        else:
            raise ConflictError('Could not allocate unique code')
    return codes


def allocate_item_serials(prefix, count):
    """Sequential printed serials continuing after the highest existing number"""
    existing = db.session.execute(
        select(GramProductItem.serial_code).where(GramProductItem.serial_code.like(f"{prefix}%"))
    ).scalars().all()
    start = find_highest_serial_number(existing, prefix) + 1
    serials = generate_sequential_serials(prefix, count, start)

    conflicts = []
    for chunk in chunked(serials):
        conflicts.extend(db.session.execute(
            select(GramProductItem.serial_code).where(GramProductItem.serial_code.in_(chunk))
        ).scalars().all())
    if conflicts:
        raise ConflictError('Some serial numbers already exist', payload={'existing_serials': conflicts})
    return serials


def render_gram_qr(uniq_code, batch_name):
    return render_qr_png(build_verify_url(uniq_code), overlay_text=batch_name)


def create_gram_batch(payload, store=None):
    """
    Create a batch with one item per unit.

    Returns:
        (batch, items) tuple
    """
    store = store or get_asset_store()
    cleaned = InputValidator.validate_gram_create(payload, current_app.config['GRAM_BATCH_MAX_QUANTITY'])
    quantity = cleaned['quantity']
    serial_prefix = cleaned['serial_prefix'] or current_app.config['GRAM_SERIAL_PREFIX']

    serials = allocate_item_serials(serial_prefix, quantity)
    uniq_codes = allocate_uniq_codes(quantity)

    uploaded = []
    urls = {}
    try:
        for i, uniq_code in enumerate(uniq_codes, start=1):
            key = gram_qr_key(uniq_code)
            urls[uniq_code] = store.put(key, render_gram_qr(uniq_code, cleaned['name']))
            uploaded.append(key)
            if i % PROGRESS_LOG_EVERY == 0:
                logger.info(f"Gram batch '{cleaned['name']}': stored {i}/{quantity} QR images")
    except DependencyError:
        cleanup_assets(store, uploaded)
        raise

    batch = GramProductBatch(
        name=cleaned['name'],
        weight=cleaned['weight'],
        quantity=quantity,
        weight_group=weight_group_for(cleaned['weight']),
        qr_mode=qr_mode_for(quantity),
    )
    db.session.add(batch)

    items = []
    for uniq_code, serial_code in zip(uniq_codes, serials):
        root_key = generate_root_key()
        item = GramProductItem(
            batch=batch,
            uniq_code=uniq_code,
            serial_code=serial_code,
            root_key=root_key,
            root_key_hash=hash_root_key(root_key),
            qr_image_url=urls[uniq_code],
        )
        db.session.add(item)
        items.append(item)

    commit_or_cleanup(store, uploaded, 'gram batch')
    logger.info(f"Created gram batch {batch.id} '{batch.name}' with {len(items)} items "
                f"({serials[0]}..{serials[-1]})")
    return batch, items


def get_batch(batch_id):
    batch = db.session.get(GramProductBatch, batch_id)
    if batch is None:
        raise NotFoundError(f"Gram batch {batch_id} not found")
    return batch


def list_batches():
    """Batches newest first with item and scan totals"""
    totals = dict(
        (row[0], (row[1], row[2])) for row in db.session.execute(
            select(
                GramProductItem.batch_id,
                func.count(GramProductItem.id),
                func.coalesce(func.sum(GramProductItem.scan_count), 0),
            ).group_by(GramProductItem.batch_id)
        )
    )

    result = []
    for batch in GramProductBatch.query.order_by(GramProductBatch.created_at.desc(),
                                                 GramProductBatch.id.desc()).all():
        data = batch.to_dict()
        qr_count, total_scans = totals.get(batch.id, (0, 0))
        data['qr_count'] = qr_count
        data['total_scan_count'] = int(total_scans)
        result.append(data)
    return result


def get_batch_detail(batch_id, include_items=False):
    batch = get_batch(batch_id)
    data = {'batch': batch.to_dict()}
    if include_items:
        items = batch.items.order_by(GramProductItem.serial_code.asc()).all()
        data['items'] = [item.to_dict(include_root_key=True) for item in items]
    return data


def update_gram_batch(batch_id, payload):
    cleaned = InputValidator.validate_gram_update(payload)
    batch = get_batch(batch_id)

    if 'name' in cleaned:
        batch.name = cleaned['name']
    if 'weight' in cleaned:
        batch.weight = cleaned['weight']
        batch.weight_group = weight_group_for(cleaned['weight'])

    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Could not update gram batch', original=e)

    logger.info(f"Updated gram batch {batch_id}")
    return batch


def _delete_items_and_batches(item_ids, batch_ids):
    # Children before parents
    for chunk in chunked(item_ids):
        db.session.execute(
            delete(GramQrScanLog).where(GramQrScanLog.item_id.in_(chunk))
            .execution_options(synchronize_session='fetch')
        )
        db.session.execute(
            delete(GramProductItem).where(GramProductItem.id.in_(chunk))
            .execution_options(synchronize_session='fetch')
        )
    for chunk in chunked(batch_ids):
        db.session.execute(
            delete(GramProductBatch).where(GramProductBatch.id.in_(chunk))
            .execution_options(synchronize_session='fetch')
        )


def _asset_keys(store, items):
    return [store.key_from_url(url) or gram_qr_key(code) for code, url in items]


def delete_gram_batch(batch_id, store=None):
    """Delete a batch with its items and their scan logs"""
    store = store or get_asset_store()
    get_batch(batch_id)

    items = db.session.execute(
        select(GramProductItem.id, GramProductItem.uniq_code, GramProductItem.qr_image_url)
        .where(GramProductItem.batch_id == batch_id)
    ).all()
    item_ids = [row[0] for row in items]
    keys = _asset_keys(store, [(row[1], row[2]) for row in items])

    try:
        _delete_items_and_batches(item_ids, [batch_id])
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Could not delete gram batch', original=e)

    cleanup_assets(store, keys)
    logger.info(f"Deleted gram batch {batch_id} with {len(item_ids)} items")
    return {'deleted_batches': 1, 'deleted_items': len(item_ids)}


def delete_all_gram_products(store=None):
    """Delete every gram batch and item. Returns ``{deleted_batches, deleted_items}``."""
    store = store or get_asset_store()

    items = db.session.execute(
        select(GramProductItem.id, GramProductItem.uniq_code, GramProductItem.qr_image_url)
    ).all()
    item_ids = [row[0] for row in items]
    batch_ids = db.session.execute(select(GramProductBatch.id)).scalars().all()
    keys = _asset_keys(store, [(row[1], row[2]) for row in items])

    try:
        _delete_items_and_batches(item_ids, batch_ids)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Could not delete gram products', original=e)

    cleanup_assets(store, keys)
    logger.info(f"Deleted all gram products: {len(batch_ids)} batches, {len(item_ids)} items")
    return {'deleted_batches': len(batch_ids), 'deleted_items': len(item_ids)}
