"""
JSON API endpoints - public verification, QR images and the admin back office
"""
import re
import logging
from datetime import datetime
from flask import jsonify, request, make_response, send_from_directory, abort
from flask_wtf.csrf import generate_csrf
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from app import app, db, limiter, csrf
from models import (
    Product, QrRecord, QrScanLog, GramProductBatch, GramProductItem, GramQrScanLog, Feedback
)
from auth_utils import admin_required, authenticate, logout, get_principal
from validation_utils import InputValidator, get_json_body
from error_handlers import NotFoundError, DependencyError, ValidationError
import verification_service
import product_service
import gram_service
from audit_retention import DeleteHistoryRetention
from export_utils import ProductExporter, GramExporter
from qr_utils import build_verify_url, render_qr_png, render_labelled_qr_png, render_qr_sheet_png
from storage_utils import get_asset_store

logger = logging.getLogger(__name__)

QR_CACHE_CONTROL = 'public, max-age=31536000, immutable'


def _client_info():
    return request.remote_addr, request.headers.get('User-Agent')


def _deleted_by():
    principal = get_principal()
    return principal.email if principal else None


# =============================================================================
# PUBLIC VERIFICATION
# =============================================================================

@app.route('/api/verify/<code>', methods=['GET'])
def verify_product(code):
    """Verify a serial code (or gram uniq code) and count the scan"""
    ip, user_agent = _client_info()
    result = verification_service.verify_code(code, ip=ip, user_agent=user_agent)
    response = jsonify(result.to_dict())
    response.headers['Cache-Control'] = 'no-store'
    return response


@app.route('/api/verify-gram/<code>', methods=['GET'])
def verify_gram_product(code):
    ip, user_agent = _client_info()
    result = verification_service.verify_gram_code(code, ip=ip, user_agent=user_agent)
    response = jsonify(result.to_dict())
    response.headers['Cache-Control'] = 'no-store'
    return response


@app.route('/api/verify/root-key', methods=['POST'])
@csrf.exempt
@limiter.limit("30 per minute")
def verify_root_key():
    """Second-step root key check for gram items"""
    uniq_code, root_key = InputValidator.validate_root_key_request(get_json_body(request))
    result = verification_service.verify_root_key(uniq_code, root_key)
    response = jsonify(result)
    response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
    return response


# =============================================================================
# QR IMAGES
# =============================================================================

def _png_response(png, code):
    response = make_response(png)
    response.headers['Content-Type'] = 'image/png'
    response.headers['Cache-Control'] = QR_CACHE_CONTROL
    response.set_etag(code)
    return response


def _not_modified(code):
    if request.if_none_match and request.if_none_match.contains(code):
        response = make_response('', 304)
        response.set_etag(code)
        response.headers['Cache-Control'] = QR_CACHE_CONTROL
        return response
    return None


@app.route('/api/qr/<code>', methods=['GET'])
def product_qr_image(code):
    """PNG QR code for a product serial, rendered on demand"""
    serial_code = InputValidator.normalize_code(code)
    if not serial_code:
        abort(400, description='Serial code missing')

    exists = db.session.execute(
        select(QrRecord.id).where(QrRecord.serial_code == serial_code)
    ).first()
    if not exists:
        raise NotFoundError('Serial code not found')

    cached = _not_modified(serial_code)
    if cached is not None:
        return cached

    return _png_response(render_qr_png(build_verify_url(serial_code)), serial_code)


@app.route('/api/qr-gram/<code>', methods=['GET'])
def gram_qr_image(code):
    """PNG QR code for a gram item with its batch name as caption"""
    uniq_code = InputValidator.normalize_code(code)
    if not uniq_code:
        abort(400, description='Code missing')

    row = db.session.execute(
        select(GramProductBatch.name)
        .join(GramProductItem, GramProductItem.batch_id == GramProductBatch.id)
        .where(GramProductItem.uniq_code == uniq_code)
    ).first()
    if not row:
        raise NotFoundError('Code not found')

    cached = _not_modified(uniq_code)
    if cached is not None:
        return cached

    return _png_response(render_qr_png(build_verify_url(uniq_code), overlay_text=row[0]), uniq_code)


@app.route('/assets/<path:key>', methods=['GET'])
def serve_asset(key):
    """Serve assets written by the local asset store"""
    store = get_asset_store()
    if store.mode != 'LOCAL':
        abort(404)
    return send_from_directory(store.local_folder, key, max_age=31536000)


# =============================================================================
# PRINTABLE QR DOWNLOADS
# =============================================================================

def _download_filename(code, name):
    """``QR-SKA000001-Silver-Anklet.png``"""
    slug = re.sub(r'-+', '-', re.sub(r'[^A-Za-z0-9-]', '', re.sub(r'\s+', '-', (name or '').strip()))).strip('-')
    return f"QR-{code}-{slug}.png" if slug else f"QR-{code}.png"


def _png_download(png, filename):
    response = make_response(png)
    response.headers['Content-Type'] = 'image/png'
    response.headers['Content-Disposition'] = f'attachment; filename="{filename}"'
    response.headers['Cache-Control'] = 'no-cache'
    return response


def _sheet_labels(rows):
    return [(build_verify_url(serial_code), name, serial_code) for name, serial_code in rows]


@app.route('/api/qr/<code>/download', methods=['GET'])
@admin_required
def download_product_qr(code):
    """Labelled PNG (name above, serial below) for printing on a tag"""
    serial_code = InputValidator.normalize_code(code)
    if not serial_code:
        abort(400, description='Serial code missing')

    row = db.session.execute(
        select(Product.name, QrRecord.serial_code)
        .join(QrRecord, QrRecord.product_id == Product.id)
        .where(QrRecord.serial_code == serial_code)
    ).first()
    if not row:
        raise NotFoundError('Product not found')

    name, serial_code = row
    png = render_labelled_qr_png(build_verify_url(serial_code), name, serial_code)
    return _png_download(png, _download_filename(serial_code, name))


@app.route('/api/qr-gram/<code>/download-png', methods=['GET'])
@admin_required
def download_gram_qr(code):
    """Labelled PNG for a gram item: batch name above, unique code below"""
    uniq_code = InputValidator.normalize_code(code)
    if not uniq_code:
        abort(400, description='Code missing')

    row = db.session.execute(
        select(GramProductBatch.name, GramProductItem.uniq_code)
        .join(GramProductItem, GramProductItem.batch_id == GramProductBatch.id)
        .where(GramProductItem.uniq_code == uniq_code)
    ).first()
    if not row:
        raise NotFoundError('Product not found')

    name, uniq_code = row
    png = render_labelled_qr_png(build_verify_url(uniq_code), name, uniq_code)
    return _png_download(png, _download_filename(uniq_code, name))


@app.route('/api/qr/download-selected-png', methods=['POST'])
@admin_required
def download_selected_qr_sheet():
    """Grid sheet of labelled codes for the products named in ``serial_codes``"""
    codes = InputValidator.validate_qr_selection(get_json_body(request), app.config['QR_SHEET_MAX_CODES'])

    rows = db.session.execute(
        select(Product.name, QrRecord.serial_code)
        .join(QrRecord, QrRecord.product_id == Product.id)
        .where(QrRecord.serial_code.in_(codes))
        .order_by(QrRecord.serial_code.asc())
    ).all()
    if not rows:
        raise NotFoundError('No products with QR codes found for the selected serial codes')

    png = render_qr_sheet_png(_sheet_labels(rows), 'SilverSeal - Selected QR Codes')
    filename = f"SilverSeal-Selected-QR-Codes-{len(rows)}-{datetime.utcnow():%Y-%m-%d}.png"
    return _png_download(png, filename)


@app.route('/api/qr/download-all-png', methods=['GET'])
@admin_required
def download_all_qr_sheet():
    """Grid sheet of every product code"""
    max_codes = app.config['QR_SHEET_MAX_CODES']
    rows = db.session.execute(
        select(Product.name, QrRecord.serial_code)
        .join(QrRecord, QrRecord.product_id == Product.id)
        .order_by(QrRecord.serial_code.asc())
        .limit(max_codes + 1)
    ).all()
    if not rows:
        raise NotFoundError('No products with QR codes found')
    if len(rows) > max_codes:
        raise ValidationError(
            'Too many products for one sheet',
            fields={'serial_codes': [f"At most {max_codes} codes fit on one sheet; download a selection instead"]}
        )

    png = render_qr_sheet_png(_sheet_labels(rows), 'SilverSeal - All QR Codes')
    filename = f"SilverSeal-All-QR-Codes-{len(rows)}-{datetime.utcnow():%Y-%m-%d}.png"
    return _png_download(png, filename)


# =============================================================================
# FEEDBACK
# =============================================================================

@app.route('/api/feedback', methods=['POST'])
@csrf.exempt
@limiter.limit("10 per minute")
def submit_feedback():
    cleaned = InputValidator.validate_feedback(get_json_body(request))
    feedback = Feedback(**cleaned)
    db.session.add(feedback)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyError('Could not save feedback', original=e)

    logger.info(f"Feedback received from {feedback.email}")
    return jsonify({'success': True, 'feedback': feedback.to_dict()}), 201


# =============================================================================
# AUTHENTICATION
# =============================================================================

@app.route('/api/auth/login', methods=['POST'])
@csrf.exempt
@limiter.limit(lambda: app.config['LOGIN_RATE_LIMIT'])
def api_login():
    data = get_json_body(request)
    user = authenticate(data.get('email'), data.get('password'))
    return jsonify({
        'success': True,
        'user': {'user_id': user.id, 'email': user.email, 'role': user.role},
    })


@app.route('/api/auth/logout', methods=['POST'])
@csrf.exempt
def api_logout():
    logout()
    return jsonify({'success': True})


@app.route('/api/admin/me', methods=['GET'])
@admin_required
def admin_me():
    """Current principal plus a CSRF token for subsequent mutations"""
    return jsonify({
        'success': True,
        'user': get_principal().to_dict(),
        'csrf_token': generate_csrf(),
    })


# =============================================================================
# PRODUCTS
# =============================================================================

@app.route('/api/products', methods=['GET'])
@admin_required
def list_products():
    products = product_service.list_products(request.args.get('search'))
    return jsonify({
        'success': True,
        'products': [p.to_dict() for p in products],
        'count': len(products),
    })


@app.route('/api/products', methods=['POST'])
@admin_required
def create_products():
    products = product_service.create_products(get_json_body(request))
    data = [p.to_dict() for p in products]
    return jsonify({
        'success': True,
        'product': data[0],
        'products': data,
        'count': len(data),
        'message': f"Successfully created {len(data)} product(s)",
    }), 201


@app.route('/api/products', methods=['DELETE'])
@admin_required
def delete_all_products():
    result = product_service.delete_all_products(deleted_by=_deleted_by())
    return jsonify({'success': True, **result})


@app.route('/api/products/check-serial', methods=['GET'])
@admin_required
def check_serial():
    result = product_service.check_serial(request.args.get('name'), request.args.get('serial_prefix'))
    return jsonify({'success': True, **result})


@app.route('/api/products/<int:product_id>', methods=['GET'])
@admin_required
def get_product(product_id):
    return jsonify({'success': True, 'product': product_service.get_product(product_id).to_dict()})


@app.route('/api/products/<int:product_id>', methods=['PATCH'])
@admin_required
def update_product(product_id):
    product = product_service.update_product(product_id, get_json_body(request))
    return jsonify({'success': True, 'product': product.to_dict()})


@app.route('/api/products/<int:product_id>', methods=['DELETE'])
@admin_required
def delete_product(product_id):
    result = product_service.delete_product(product_id, deleted_by=_deleted_by())
    return jsonify({'success': True, **result})


@app.route('/api/products/deleted', methods=['GET'])
@admin_required
def list_deleted_products():
    return jsonify({'success': True, **product_service.list_deleted()})


@app.route('/api/products/deleted/<int:history_id>', methods=['DELETE'])
@admin_required
def delete_history_entry(history_id):
    product_service.delete_history(history_id)
    return jsonify({'success': True})


@app.route('/api/products/deleted/cleanup', methods=['POST'])
@admin_required
def cleanup_deleted_products():
    data = get_json_body(request)
    result = DeleteHistoryRetention.cleanup(days=data.get('days'))
    return jsonify({'success': True, **result})


@app.route('/api/products/restore/<int:history_id>', methods=['POST'])
@admin_required
def restore_product(history_id):
    product = product_service.restore_history(history_id)
    return jsonify({'success': True, 'product': product.to_dict()})


@app.route('/api/products/restore-batch/<int:batch_id>', methods=['POST'])
@admin_required
def restore_product_batch(batch_id):
    products = product_service.restore_delete_batch(batch_id)
    return jsonify({'success': True, 'restored_count': len(products)})


@app.route('/api/export/excel', methods=['GET'])
@admin_required
def export_products_excel():
    return ProductExporter.export_products_excel(db)


# =============================================================================
# GRAM PRODUCTS
# =============================================================================

@app.route('/api/gram-products', methods=['GET'])
@admin_required
def list_gram_batches():
    batches = gram_service.list_batches()
    response = jsonify({'success': True, 'batches': batches, 'count': len(batches)})
    response.headers['Cache-Control'] = 'no-store'
    return response


@app.route('/api/gram-products', methods=['POST'])
@admin_required
def create_gram_batch():
    batch, items = gram_service.create_gram_batch(get_json_body(request))
    return jsonify({
        'success': True,
        'batch': batch.to_dict(),
        'items': [item.to_dict(include_root_key=True) for item in items],
        'count': len(items),
    }), 201


@app.route('/api/gram-products', methods=['DELETE'])
@admin_required
def delete_all_gram_products():
    result = gram_service.delete_all_gram_products()
    return jsonify({'success': True, **result})


@app.route('/api/gram-products/batch/<int:batch_id>', methods=['GET'])
@admin_required
def get_gram_batch(batch_id):
    include_items = request.args.get('include_items', '').lower() == 'true'
    return jsonify({'success': True, **gram_service.get_batch_detail(batch_id, include_items)})


@app.route('/api/gram-products/batch/<int:batch_id>', methods=['PATCH'])
@admin_required
def update_gram_batch(batch_id):
    batch = gram_service.update_gram_batch(batch_id, get_json_body(request))
    return jsonify({'success': True, 'batch': batch.to_dict()})


@app.route('/api/gram-products/batch/<int:batch_id>', methods=['DELETE'])
@admin_required
def delete_gram_batch(batch_id):
    result = gram_service.delete_gram_batch(batch_id)
    return jsonify({'success': True, **result})


@app.route('/api/gram-products/export', methods=['GET'])
@admin_required
def export_gram_excel():
    return GramExporter.export_gram_items_excel(db)


# =============================================================================
# ADMIN DASHBOARD DATA
# =============================================================================

@app.route('/api/admin/feedback', methods=['GET'])
@admin_required
def list_feedback():
    limit = InputValidator.parse_limit(request.args.get('limit'), default=100)
    entries = Feedback.query.order_by(Feedback.created_at.desc(), Feedback.id.desc()).limit(limit).all()
    return jsonify({'success': True, 'feedback': [f.to_dict() for f in entries], 'count': len(entries)})


@app.route('/api/admin/stats', methods=['GET'])
@admin_required
def admin_stats():
    today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

    product_scans = db.session.execute(select(func.coalesce(func.sum(QrRecord.scan_count), 0))).scalar_one()
    gram_scans = db.session.execute(select(func.coalesce(func.sum(GramProductItem.scan_count), 0))).scalar_one()
    scans_today = (
        db.session.execute(select(func.count(QrScanLog.id)).where(QrScanLog.scanned_at >= today)).scalar_one()
        + db.session.execute(
            select(func.count(GramQrScanLog.id)).where(GramQrScanLog.scanned_at >= today)
        ).scalar_one()
    )

    return jsonify({
        'success': True,
        'stats': {
            'total_products': db.session.execute(select(func.count(Product.id))).scalar_one(),
            'total_gram_batches': db.session.execute(select(func.count(GramProductBatch.id))).scalar_one(),
            'total_gram_items': db.session.execute(select(func.count(GramProductItem.id))).scalar_one(),
            'total_scans': int(product_scans) + int(gram_scans),
            'scans_today': scans_today,
            'total_feedback': db.session.execute(select(func.count(Feedback.id))).scalar_one(),
        }
    })


@app.route('/api/admin/logs', methods=['GET'])
@admin_required
def admin_scan_logs():
    """Recent product and gram scans, newest first"""
    limit = InputValidator.parse_limit(request.args.get('limit'))

    product_rows = db.session.execute(
        select(QrScanLog.scanned_at, QrScanLog.ip, QrScanLog.user_agent, QrRecord.serial_code, Product.name)
        .join(QrRecord, QrScanLog.qr_record_id == QrRecord.id)
        .join(Product, QrRecord.product_id == Product.id)
        .order_by(QrScanLog.scanned_at.desc(), QrScanLog.id.desc())
        .limit(limit)
    ).all()
    gram_rows = db.session.execute(
        select(GramQrScanLog.scanned_at, GramQrScanLog.ip, GramQrScanLog.user_agent,
               GramProductItem.uniq_code, GramProductBatch.name)
        .join(GramProductItem, GramQrScanLog.item_id == GramProductItem.id)
        .join(GramProductBatch, GramProductItem.batch_id == GramProductBatch.id)
        .order_by(GramQrScanLog.scanned_at.desc(), GramQrScanLog.id.desc())
        .limit(limit)
    ).all()

    logs = [
        {'kind': 'product', 'scanned_at': r[0], 'ip': r[1], 'user_agent': r[2], 'code': r[3], 'name': r[4]}
        for r in product_rows
    ] + [
        {'kind': 'gram', 'scanned_at': r[0], 'ip': r[1], 'user_agent': r[2], 'code': r[3], 'name': r[4]}
        for r in gram_rows
    ]
    logs.sort(key=lambda entry: entry['scanned_at'], reverse=True)
    logs = logs[:limit]
    for entry in logs:
        entry['scanned_at'] = entry['scanned_at'].isoformat()

    return jsonify({'success': True, 'logs': logs, 'count': len(logs)})
