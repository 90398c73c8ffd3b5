"""
Admin workflow for single-unit products.

Creation runs validate -> resolve code -> render QR -> store asset ->
persist, so a failure before the final commit never leaves a database row
pointing at a missing asset. Deletion commits the database work first and
treats asset removal as best-effort.
"""
import datetime
import logging
from flask import current_app
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app import db
from models import Product, QrRecord, QrScanLog, ProductDeleteBatch, ProductDeleteHistory
from error_handlers import ValidationError, NotFoundError, ConflictError, DependencyError
from validation_utils import InputValidator
from serial_utils import (
    generate_serial_code, generate_sequential_serials, find_highest_serial_number
)
from qr_utils import build_verify_url, render_qr_png
from storage_utils import get_asset_store, product_qr_key

logger = logging.getLogger(__name__)

# Bound the size of IN (...) lists in bulk deletes
DELETE_CHUNK_SIZE = 500


def chunked(values, size=DELETE_CHUNK_SIZE):
    for i in range(0, len(values), size):
        yield values[i:i + size]


def cleanup_assets(store, keys):
    """Best-effort removal of stored assets; returns how many were removed"""
    removed = 0
    for key in keys:
        if store.delete_quietly(key):
            removed += 1
    return removed


def commit_or_cleanup(store, keys, what, flush_only=False):
    """
    Commit (or just flush) the session. On failure roll back, remove the
    assets that were uploaded for this operation and re-raise as a
    JSON-mappable error.
    """
    try:
        if flush_only:
            db.session.flush()
        else:
            db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        cleanup_assets(store, keys)
        logger.warning(f"Unique constraint hit while saving {what}: {e.orig}")
        raise ConflictError(f"Could not save {what}: code already exists")
    except SQLAlchemyError as e:
        db.session.rollback()
        cleanup_assets(store, keys)
        raise DependencyError(f"Could not save {what}", original=e)


def serial_exists(serial_code):
    return db.session.execute(
        select(Product.id).where(Product.serial_code == serial_code)
    ).first() is not None


def allocate_random_serial(prefix, reserved=None):
    """Generate a code not used by any product, retrying on collision"""
    reserved = reserved or set()
    attempts = current_app.config['SERIAL_MAX_ATTEMPTS']
    for attempt in range(1, attempts + 1):
        code = generate_serial_code(prefix)
        if code not in reserved and not serial_exists(code):
            return code
        logger.warning(f"Serial collision on {code} (attempt {attempt}/{attempts})")
    raise ConflictError('Could not allocate unique code')


def next_serial_number(prefix):
    """Next free sequence number for ``prefix`` among live products"""
    serials = db.session.execute(
        select(Product.serial_code).where(Product.serial_code.like(f"{prefix}%"))
    ).scalars().all()
    return find_highest_serial_number(serials, prefix) + 1


def check_serial(name, prefix):
    """Report the last used and next sequence number for a prefix"""
    errors = {}
    prefix = InputValidator.validate_prefix(prefix, errors)
    if errors or not prefix:
        raise ValidationError('A valid serial_prefix is required',
                              fields=errors or {'serial_prefix': ["serial_prefix is required"]})

    query = select(Product.serial_code).where(Product.serial_code.like(f"{prefix}%"))
    if name:
        query = query.where(Product.name == name.strip())
    serials = db.session.execute(query).scalars().all()

    last_number = find_highest_serial_number(serials, prefix)
    return {
        'exists': last_number > 0,
        'serial_prefix': prefix,
        'last_number': last_number,
        'next_number': last_number + 1,
        'total_existing': len(serials),
    }


def _resolve_serials(cleaned):
    """Return the list of serial codes to create for a validated payload"""
    quantity = cleaned['quantity']

    if cleaned['serial_code']:
        if serial_exists(cleaned['serial_code']):
            raise ConflictError('Serial code already exists',
                                payload={'existing_serials': [cleaned['serial_code']]})
        return [cleaned['serial_code']]

    if cleaned['serial_prefix']:
        prefix = cleaned['serial_prefix']
        serials = generate_sequential_serials(prefix, quantity, next_serial_number(prefix))
        conflicts = []
        for chunk in chunked(serials):
            conflicts.extend(db.session.execute(
                select(Product.serial_code).where(Product.serial_code.in_(chunk))
            ).scalars().all())
        if conflicts:
            raise ConflictError('Some serial numbers already exist', payload={'existing_serials': conflicts})
        return serials

    prefix = current_app.config['SERIAL_PREFIX']
    reserved = set()
    for _ in range(quantity):
        reserved.add(allocate_random_serial(prefix, reserved))
    return sorted(reserved)


def render_and_store(serial_code, store, overlay_text=None):
    """Render the verification QR for a serial and store it; returns (key, url)"""
    png = render_qr_png(build_verify_url(serial_code), overlay_text=overlay_text)
    key = product_qr_key(serial_code)
    return key, store.put(key, png)


def create_products(payload, store=None):
    """
    Create one product, or a run of ``quantity`` products.

    Returns:
        list of created Product rows
    """
    store = store or get_asset_store()
    cleaned = InputValidator.validate_product_create(payload, current_app.config['PRODUCT_BATCH_MAX_QUANTITY'])
    serials = _resolve_serials(cleaned)
    is_run = len(serials) > 1 or bool(cleaned['serial_prefix'])

    uploaded = []
    urls = {}
    try:
        for serial_code in serials:
            key, url = render_and_store(serial_code, store)
            uploaded.append(key)
            urls[serial_code] = url
    except DependencyError:
        cleanup_assets(store, uploaded)
        raise

    products = []
    for serial_code in serials:
        product = Product(
            name=cleaned['name'],
            weight=cleaned['weight'],
            price=cleaned['price'],
            # Each serial in a run is one physical unit
            stock=1 if is_run else (cleaned['stock'] if cleaned['stock'] is not None else 1),
            serial_code=serial_code,
        )
        product.qr_record = QrRecord(serial_code=serial_code, qr_image_url=urls[serial_code])
        db.session.add(product)
        products.append(product)

    commit_or_cleanup(store, uploaded, 'product')
    logger.info(f"Created {len(products)} product(s): {serials[0]}{'...' + serials[-1] if len(serials) > 1 else ''}")
    return products


def get_product(product_id):
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def list_products(search=None):
    query = Product.query
    if search:
        term = f"%{InputValidator.sanitize_text(search, 100)}%"
        query = query.filter(db.or_(Product.name.ilike(term), Product.serial_code.ilike(term)))
    return query.order_by(Product.created_at.desc(), Product.id.desc()).all()


def update_product(product_id, payload, store=None):
    """
    Partially update a product. A new serial code gets a freshly rendered QR
    before the row changes; the old asset is removed after the commit.
    """
    cleaned = InputValidator.validate_product_update(payload)
    product = get_product(product_id)
    record = product.qr_record

    new_serial = cleaned.pop('serial_code', None)
    old_key = None
    new_keys = []

    if new_serial and new_serial != product.serial_code:
        if serial_exists(new_serial):
            raise ConflictError('Serial code already exists', payload={'existing_serials': [new_serial]})

        store = store or get_asset_store()
        key, url = render_and_store(new_serial, store)
        new_keys.append(key)

        if record is not None:
            old_key = store.key_from_url(record.qr_image_url) or product_qr_key(record.serial_code)
            record.serial_code = new_serial
            record.qr_image_url = url
        else:
            product.qr_record = QrRecord(serial_code=new_serial, qr_image_url=url)
        product.serial_code = new_serial

    for field, value in cleaned.items():
        setattr(product, field, value)

    commit_or_cleanup(store, new_keys, 'product')
    if old_key and old_key not in new_keys:
        store.delete_quietly(old_key)

    logger.info(f"Updated product {product.id} ({product.serial_code})")
    return product


def _snapshot(product, batch, deleted_by):
    record = product.qr_record
    return ProductDeleteHistory(
        product_id=product.id,
        name=product.name,
        weight=product.weight,
        serial_code=product.serial_code,
        price=product.price,
        stock=product.stock,
        qr_image_url=record.qr_image_url if record else None,
        scan_count=record.scan_count if record else 0,
        deleted_by=deleted_by,
        batch=batch,
    )


def _delete_rows(products, deleted_by, store):
    """
    Snapshot and delete ``products`` in the current transaction.

    Returns the asset keys to remove once the transaction commits.
    """
    batch = ProductDeleteBatch(deleted_by=deleted_by, item_count=len(products))
    db.session.add(batch)

    keys = []
    product_ids = []
    for product in products:
        db.session.add(_snapshot(product, batch, deleted_by))
        product_ids.append(product.id)
        if product.qr_record is not None:
            record = product.qr_record
            keys.append(store.key_from_url(record.qr_image_url) or product_qr_key(record.serial_code))

    db.session.flush()

    # Children before parents
    for chunk in chunked(product_ids):
        record_ids = db.session.execute(
            select(QrRecord.id).where(QrRecord.product_id.in_(chunk))
        ).scalars().all()
        if record_ids:
            db.session.execute(
                delete(QrScanLog).where(QrScanLog.qr_record_id.in_(record_ids))
                .execution_options(synchronize_session='fetch')
            )
            db.session.execute(
                delete(QrRecord).where(QrRecord.id.in_(record_ids))
                .execution_options(synchronize_session='fetch')
            )
        db.session.execute(
            delete(Product).where(Product.id.in_(chunk))
            .execution_options(synchronize_session='fetch')
        )

    return batch, keys


def _commit_delete(what):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError(f"Could not delete {what}", original=e)


def delete_product(product_id, deleted_by=None, store=None):
    """Delete one product with its record and scan logs, keeping a history snapshot"""
    store = store or get_asset_store()
    product = get_product(product_id)
    serial_code = product.serial_code

    batch, keys = _delete_rows([product], deleted_by, store)
    batch_id = batch.id
    _commit_delete('product')

    cleanup_assets(store, keys)
    logger.info(f"Deleted product {product_id} ({serial_code}) by {deleted_by}")
    return {'deleted': 1, 'serial_code': serial_code, 'delete_batch_id': batch_id}


def delete_all_products(deleted_by=None, store=None):
    """Delete every product under a single delete batch"""
    store = store or get_asset_store()
    products = Product.query.all()
    if not products:
        return {'deleted': 0, 'delete_batch_id': None}

    batch, keys = _delete_rows(products, deleted_by, store)
    batch_id = batch.id
    count = len(products)
    _commit_delete('products')

    cleanup_assets(store, keys)
    logger.info(f"Deleted all {count} products by {deleted_by}")
    return {'deleted': count, 'delete_batch_id': batch_id}


def list_deleted():
    """Delete batches (newest first) with their histories, after purging expired ones"""
    from audit_retention import DeleteHistoryRetention
    DeleteHistoryRetention.cleanup()

    batches = ProductDeleteBatch.query.order_by(ProductDeleteBatch.deleted_at.desc()).all()
    unbatched = ProductDeleteHistory.query.filter(
        ProductDeleteHistory.batch_id.is_(None)
    ).order_by(ProductDeleteHistory.deleted_at.desc()).all()

    return {
        'batches': [b.to_dict(include_histories=True) for b in batches],
        'unbatched': [h.to_dict() for h in unbatched],
    }


def delete_history(history_id):
    history = db.session.get(ProductDeleteHistory, history_id)
    if history is None:
        raise NotFoundError(f"Delete history {history_id} not found")
    db.session.delete(history)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Could not delete history entry', original=e)


def _restore(histories, store):
    """Re-create products for un-restored histories; returns created products"""
    serials = [h.serial_code for h in histories]
    conflicts = db.session.execute(
        select(Product.serial_code).where(Product.serial_code.in_(serials))
    ).scalars().all()
    if conflicts:
        raise ConflictError('Serial already in use', payload={'conflicts': conflicts})

    uploaded = []
    urls = {}
    try:
        for history in histories:
            key, url = render_and_store(history.serial_code, store)
            uploaded.append(key)
            urls[history.id] = url
    except DependencyError:
        cleanup_assets(store, uploaded)
        raise

    now = datetime.datetime.utcnow()
    restored = []
    for history in histories:
        product = Product(
            name=history.name,
            weight=history.weight,
            price=history.price,
            stock=history.stock,
            serial_code=history.serial_code,
        )
        product.qr_record = QrRecord(
            serial_code=history.serial_code,
            qr_image_url=urls[history.id],
            scan_count=history.scan_count or 0,
        )
        db.session.add(product)
        restored.append((history, product))

    commit_or_cleanup(store, uploaded, 'restored product', flush_only=True)
    for history, product in restored:
        history.restored_at = now
        history.restored_product_id = product.id

    commit_or_cleanup(store, uploaded, 'restored product')
    return [product for _, product in restored]


def restore_history(history_id, store=None):
    store = store or get_asset_store()
    history = db.session.get(ProductDeleteHistory, history_id)
    if history is None:
        raise NotFoundError(f"Delete history {history_id} not found")
    if history.restored_at:
        raise ConflictError('Already restored')

    products = _restore([history], store)
    logger.info(f"Restored product {history.serial_code} from history {history_id}")
    return products[0]


def restore_delete_batch(batch_id, store=None):
    store = store or get_asset_store()
    batch = db.session.get(ProductDeleteBatch, batch_id)
    if batch is None:
        raise NotFoundError(f"Delete batch {batch_id} not found")

    histories = batch.histories.filter(ProductDeleteHistory.restored_at.is_(None)).all()
    if not histories:
        raise ConflictError('Already restored')

    products = _restore(histories, store)
    logger.info(f"Restored {len(products)} product(s) from delete batch {batch_id}")
    return products
