import pytest
from sqlalchemy.exc import IntegrityError
from models import (
    User, UserRole, Product, QrRecord, GramProductBatch, GramProductItem,
    ProductDeleteBatch, ProductDeleteHistory, WeightGroup, QrMode
)


class TestUserModel:
    def test_create_user(self, db_session):
        """Test creating a user"""
        user = User()
        user.email = 'test@example.com'
        user.set_password('password123')
        db_session.add(user)
        db_session.commit()

        assert user.id is not None
        assert user.role == UserRole.STAFF.value
        assert user.check_password('password123')
        assert not user.check_password('wrongpassword')

    def test_user_roles(self, admin_user, staff_user):
        """Test user role checking methods"""
        assert admin_user.is_admin()
        assert not staff_user.is_admin()

    def test_email_is_unique(self, db_session, admin_user):
        duplicate = User(email=admin_user.email, password_hash='x')
        db_session.add(duplicate)
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


class TestProductModel:
    def test_serial_code_upper_cased_on_insert(self, db_session):
        """Codes are stored upper-cased by the model listeners"""
        product = Product(name='Ring', weight=12, serial_code='ska000001')
        product.qr_record = QrRecord(serial_code='ska000001', qr_image_url='/assets/qr/SKA000001.png')
        db_session.add(product)
        db_session.commit()

        assert product.serial_code == 'SKA000001'
        assert product.qr_record.serial_code == 'SKA000001'

    def test_serial_code_upper_cased_on_update(self, db_session):
        product = Product(name='Ring', weight=12, serial_code='SKA000001')
        db_session.add(product)
        db_session.commit()

        product.serial_code = 'skb000001'
        db_session.commit()
        assert Product.query.filter_by(serial_code='SKB000001').count() == 1

    def test_serial_code_unique(self, db_session):
        db_session.add(Product(name='A', weight=1, serial_code='DUP000001'))
        db_session.commit()
        db_session.add(Product(name='B', weight=1, serial_code='dup000001'))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_to_dict_without_record(self, db_session):
        product = Product(name='Chain', weight=40, price=120.5, stock=3, serial_code='CHN000001')
        db_session.add(product)
        db_session.commit()

        data = product.to_dict()
        assert data['name'] == 'Chain'
        assert data['price'] == 120.5
        assert data['qr_image_url'] is None
        assert data['scan_count'] == 0
        assert data['last_scanned_at'] is None

    def test_to_dict_with_record(self, db_session):
        product = Product(name='Chain', weight=40, serial_code='CHN000002')
        product.qr_record = QrRecord(serial_code='CHN000002', qr_image_url='/assets/qr/CHN000002.png',
                                     scan_count=4)
        db_session.add(product)
        db_session.commit()

        data = product.to_dict()
        assert data['qr_image_url'] == '/assets/qr/CHN000002.png'
        assert data['scan_count'] == 4


class TestGramModels:
    def test_item_codes_upper_cased(self, db_session):
        batch = GramProductBatch(name='Coin', weight=5, quantity=1,
                                 weight_group=WeightGroup.SMALL.value, qr_mode=QrMode.SINGLE_QR.value)
        item = GramProductItem(batch=batch, uniq_code='gkabc123', serial_code='skp000001')
        db_session.add_all([batch, item])
        db_session.commit()

        assert item.uniq_code == 'GKABC123'
        assert item.serial_code == 'SKP000001'
        assert batch.items.count() == 1

    def test_root_key_hidden_by_default(self, db_session):
        batch = GramProductBatch(name='Coin', weight=5, quantity=1,
                                 weight_group=WeightGroup.SMALL.value, qr_mode=QrMode.SINGLE_QR.value)
        item = GramProductItem(batch=batch, uniq_code='GK1', serial_code='SKP000001', root_key='AB12')
        db_session.add_all([batch, item])
        db_session.commit()

        assert 'root_key' not in item.to_dict()
        assert item.to_dict(include_root_key=True)['root_key'] == 'AB12'


class TestDeleteHistoryModels:
    def test_batch_groups_histories(self, db_session):
        batch = ProductDeleteBatch(deleted_by='admin@test.com', item_count=2)
        db_session.add(batch)
        for i in range(2):
            db_session.add(ProductDeleteHistory(
                product_id=i + 1, name='Bar', weight=10, serial_code=f'SKA00000{i + 1}', batch=batch
            ))
        db_session.commit()

        data = batch.to_dict(include_histories=True)
        assert data['item_count'] == 2
        assert len(data['histories']) == 2
        assert data['histories'][0]['restored_at'] is None
