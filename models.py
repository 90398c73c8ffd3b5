import datetime
import enum
from flask_login import UserMixin
from sqlalchemy import event
from werkzeug.security import generate_password_hash, check_password_hash
from app import db


class UserRole(enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"


class WeightGroup(enum.Enum):
    SMALL = "SMALL"
    LARGE = "LARGE"


class QrMode(enum.Enum):
    SINGLE_QR = "SINGLE_QR"
    MULTI_QR = "MULTI_QR"


class User(UserMixin, db.Model):
    """Back-office account allowed to manage products"""
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=UserRole.STAFF.value)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow)
    last_login_at = db.Column(db.DateTime, nullable=True)

    def set_password(self, password):
        """Set user password hash"""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Check password against stored hash"""
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def is_admin(self):
        return self.role == UserRole.ADMIN.value

    def __repr__(self):
        return f"<User {self.email}>"


class Product(db.Model):
    """A single physical unit identified by its serial code"""
    __tablename__ = 'product'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    weight = db.Column(db.Integer, nullable=False)  # grams
    price = db.Column(db.Float, nullable=True)
    stock = db.Column(db.Integer, nullable=True)
    serial_code = db.Column(db.String(64), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    qr_record = db.relationship('QrRecord', back_populates='product', uselist=False)

    __table_args__ = (
        db.Index('idx_product_created_at', 'created_at'),
        db.Index('idx_product_name', 'name'),
    )

    def to_dict(self):
        record = self.qr_record
        return {
            'id': self.id,
            'name': self.name,
            'weight': self.weight,
            'price': self.price,
            'stock': self.stock,
            'serial_code': self.serial_code,
            'qr_image_url': record.qr_image_url if record else None,
            'scan_count': record.scan_count if record else 0,
            'last_scanned_at': record.last_scanned_at.isoformat() if record and record.last_scanned_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Product {self.serial_code}>"


class QrRecord(db.Model):
    """Verification record: binds a product's serial code to its QR asset and scan statistics"""
    __tablename__ = 'qr_record'
    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id', ondelete='CASCADE'), unique=True, nullable=False)
    serial_code = db.Column(db.String(64), unique=True, nullable=False)
    qr_image_url = db.Column(db.String(500), nullable=False, default='')
    scan_count = db.Column(db.Integer, nullable=False, default=0)
    last_scanned_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow)

    product = db.relationship('Product', back_populates='qr_record')

    __table_args__ = (
        db.CheckConstraint('scan_count >= 0', name='ck_qr_record_scan_count'),
    )

    def __repr__(self):
        return f"<QrRecord {self.serial_code} scans={self.scan_count}>"


class QrScanLog(db.Model):
    """Append-only log of product verification scans"""
    __tablename__ = 'qr_scan_log'
    id = db.Column(db.Integer, primary_key=True)
    qr_record_id = db.Column(db.Integer, db.ForeignKey('qr_record.id', ondelete='CASCADE'), nullable=False)
    scanned_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)
    ip = db.Column(db.String(45), nullable=True)  # Support IPv6
    user_agent = db.Column(db.String(500), nullable=True)

    qr_record = db.relationship('QrRecord', backref=db.backref('scan_logs', lazy='dynamic'))

    __table_args__ = (
        db.Index('idx_qr_scan_log_record', 'qr_record_id'),
        db.Index('idx_qr_scan_log_scanned_at', 'scanned_at'),
    )

    def __repr__(self):
        return f"<QrScanLog record:{self.qr_record_id} at {self.scanned_at}>"


class GramProductBatch(db.Model):
    """A production run of gram-based items sharing name and nominal weight"""
    __tablename__ = 'gram_product_batch'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    weight = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    weight_group = db.Column(db.String(10), nullable=False)
    qr_mode = db.Column(db.String(10), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    items = db.relationship('GramProductItem', back_populates='batch', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'weight': self.weight,
            'quantity': self.quantity,
            'weight_group': self.weight_group,
            'qr_mode': self.qr_mode,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<GramProductBatch {self.name} x{self.quantity}>"


class GramProductItem(db.Model):
    """One physical unit inside a gram batch"""
    __tablename__ = 'gram_product_item'
    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey('gram_product_batch.id', ondelete='CASCADE'), nullable=False)
    uniq_code = db.Column(db.String(64), unique=True, nullable=False)
    serial_code = db.Column(db.String(64), unique=True, nullable=False)
    root_key = db.Column(db.String(8), nullable=True)  # Plain text, admin display only
    root_key_hash = db.Column(db.String(256), nullable=True)
    scan_count = db.Column(db.Integer, nullable=False, default=0)
    last_scanned_at = db.Column(db.DateTime, nullable=True)
    qr_image_url = db.Column(db.String(500), nullable=False, default='')
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)

    batch = db.relationship('GramProductBatch', back_populates='items')

    __table_args__ = (
        db.Index('idx_gram_item_batch', 'batch_id'),
        db.CheckConstraint('scan_count >= 0', name='ck_gram_item_scan_count'),
    )

    def to_dict(self, include_root_key=False):
        data = {
            'id': self.id,
            'batch_id': self.batch_id,
            'uniq_code': self.uniq_code,
            'serial_code': self.serial_code,
            'qr_image_url': self.qr_image_url,
            'scan_count': self.scan_count,
            'last_scanned_at': self.last_scanned_at.isoformat() if self.last_scanned_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_root_key:
            data['root_key'] = self.root_key
        return data

    def __repr__(self):
        return f"<GramProductItem {self.uniq_code}>"


class GramQrScanLog(db.Model):
    """Append-only log of gram item verification scans"""
    __tablename__ = 'gram_qr_scan_log'
    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey('gram_product_item.id', ondelete='CASCADE'), nullable=False)
    scanned_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)
    ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)

    item = db.relationship('GramProductItem', backref=db.backref('scan_logs', lazy='dynamic'))

    __table_args__ = (
        db.Index('idx_gram_scan_log_item', 'item_id'),
        db.Index('idx_gram_scan_log_scanned_at', 'scanned_at'),
    )


class Feedback(db.Model):
    """Customer feedback submitted from the public site"""
    __tablename__ = 'feedback'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), nullable=False)
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'message': self.message,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ProductDeleteBatch(db.Model):
    """One delete action by an admin; groups the history rows it produced"""
    __tablename__ = 'product_delete_batch'
    id = db.Column(db.Integer, primary_key=True)
    deleted_by = db.Column(db.String(120), nullable=True)
    item_count = db.Column(db.Integer, nullable=False, default=0)
    deleted_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)

    histories = db.relationship('ProductDeleteHistory', back_populates='batch', lazy='dynamic')

    __table_args__ = (
        db.Index('idx_delete_batch_deleted_at', 'deleted_at'),
    )

    def to_dict(self, include_histories=False):
        data = {
            'id': self.id,
            'deleted_by': self.deleted_by,
            'item_count': self.item_count,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None,
        }
        if include_histories:
            data['histories'] = [
                h.to_dict() for h in self.histories.order_by(ProductDeleteHistory.deleted_at.desc())
            ]
        return data


class ProductDeleteHistory(db.Model):
    """Snapshot of a deleted product, kept for restore until retention expires"""
    __tablename__ = 'product_delete_history'
    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    weight = db.Column(db.Integer, nullable=False)
    serial_code = db.Column(db.String(64), nullable=False)
    price = db.Column(db.Float, nullable=True)
    stock = db.Column(db.Integer, nullable=True)
    qr_image_url = db.Column(db.String(500), nullable=True)
    scan_count = db.Column(db.Integer, nullable=False, default=0)
    deleted_by = db.Column(db.String(120), nullable=True)
    deleted_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey('product_delete_batch.id', ondelete='SET NULL'), nullable=True)
    restored_at = db.Column(db.DateTime, nullable=True)
    restored_product_id = db.Column(db.Integer, nullable=True)

    batch = db.relationship('ProductDeleteBatch', back_populates='histories')

    __table_args__ = (
        db.Index('idx_delete_history_deleted_at', 'deleted_at'),
        db.Index('idx_delete_history_serial', 'serial_code'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'name': self.name,
            'weight': self.weight,
            'serial_code': self.serial_code,
            'price': self.price,
            'stock': self.stock,
            'scan_count': self.scan_count,
            'deleted_by': self.deleted_by,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None,
            'restored_at': self.restored_at.isoformat() if self.restored_at else None,
            'restored_product_id': self.restored_product_id,
        }


# SQLAlchemy event listeners for automatic code normalization
@event.listens_for(Product, 'before_insert')
@event.listens_for(Product, 'before_update')
@event.listens_for(QrRecord, 'before_insert')
@event.listens_for(QrRecord, 'before_update')
def normalize_serial_code(mapper, connection, target):
    """Store serial codes upper-cased so lookups stay case-insensitive"""
    if target.serial_code:
        target.serial_code = target.serial_code.upper()


@event.listens_for(GramProductItem, 'before_insert')
@event.listens_for(GramProductItem, 'before_update')
def normalize_gram_codes(mapper, connection, target):
    if target.uniq_code:
        target.uniq_code = target.uniq_code.upper()
    if target.serial_code:
        target.serial_code = target.serial_code.upper()
