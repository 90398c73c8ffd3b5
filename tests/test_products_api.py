import io
import os
import pytest
from openpyxl import load_workbook
from models import Product, QrRecord, QrScanLog, ProductDeleteBatch, ProductDeleteHistory

pytestmark = pytest.mark.integration


def _asset_path(store, url):
    return store.local_path(store.key_from_url(url))


class TestProductAccess:
    def test_requires_authentication(self, client, db_session):
        response = client.get('/api/products')
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Authentication required'

    def test_requires_admin_role(self, staff_client):
        response = staff_client.post('/api/products', json={'name': 'Bar', 'weight': 10})
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Admin role required'
        assert Product.query.count() == 0


class TestProductCreation:
    def test_create_single_product(self, admin_client, asset_store):
        response = admin_client.post('/api/products', json={
            'name': 'Gold Bar 10g', 'weight': 10, 'price': 799.0, 'stock': 4
        })

        assert response.status_code == 201
        data = response.get_json()
        assert data['count'] == 1
        product = data['product']
        assert product['serial_code'].startswith('SK')
        assert product['stock'] == 4
        assert product['qr_image_url'] == f"/assets/qr/{product['serial_code']}.png"
        assert os.path.exists(_asset_path(asset_store, product['qr_image_url']))
        assert QrRecord.query.filter_by(serial_code=product['serial_code']).count() == 1

    def test_stock_defaults_to_one(self, make_product):
        assert make_product()['stock'] == 1

    def test_supplied_serial_is_normalised(self, make_product):
        product = make_product(serial_code=' my ring 01 ')
        assert product['serial_code'] == 'MYRING01'

    def test_duplicate_serial_conflict(self, admin_client, make_product):
        make_product(serial_code='SKA000001')
        response = admin_client.post('/api/products', json={
            'name': 'Other', 'weight': 5, 'serial_code': 'ska000001'
        })
        assert response.status_code == 409
        assert response.get_json()['existing_serials'] == ['SKA000001']
        assert Product.query.count() == 1

    def test_prefix_run(self, admin_client):
        response = admin_client.post('/api/products', json={
            'name': 'Anklet', 'weight': 20, 'serial_prefix': 'ska', 'quantity': 3, 'stock': 9
        })
        assert response.status_code == 201
        products = response.get_json()['products']
        assert [p['serial_code'] for p in products] == ['SKA000001', 'SKA000002', 'SKA000003']
        assert all(p['stock'] == 1 for p in products)

    def test_prefix_run_continues_numbering(self, admin_client, make_product):
        make_product(serial_prefix='SKA', quantity=2)
        response = admin_client.post('/api/products', json={
            'name': 'Different Name', 'weight': 20, 'serial_prefix': 'SKA', 'quantity': 2
        })
        assert [p['serial_code'] for p in response.get_json()['products']] == ['SKA000003', 'SKA000004']

    def test_random_codes_for_quantity(self, admin_client):
        response = admin_client.post('/api/products', json={'name': 'Toe Ring', 'weight': 3, 'quantity': 4})
        serials = [p['serial_code'] for p in response.get_json()['products']]
        assert len(set(serials)) == 4

    def test_validation_errors(self, admin_client):
        response = admin_client.post('/api/products', json={'name': '  ', 'weight': 0, 'price': 'cheap'})
        assert response.status_code == 400
        fields = response.get_json()['fields']
        assert set(fields) == {'name', 'weight', 'price'}
        assert Product.query.count() == 0

    def test_serial_code_with_quantity_rejected(self, admin_client):
        response = admin_client.post('/api/products', json={
            'name': 'Bar', 'weight': 10, 'serial_code': 'SKA000001', 'quantity': 2
        })
        assert response.status_code == 400
        assert 'quantity' in response.get_json()['fields']

    def test_quantity_limit(self, app, admin_client):
        limit = app.config['PRODUCT_BATCH_MAX_QUANTITY']
        response = admin_client.post('/api/products', json={'name': 'Bar', 'weight': 10, 'quantity': limit + 1})
        assert response.status_code == 400

    def test_html_stripped_from_name(self, make_product):
        assert make_product(name='<b>Silver</b> Cuff')['name'] == 'Silver Cuff'

    def test_malformed_json(self, admin_client):
        response = admin_client.post('/api/products', data='{not json', content_type='application/json')
        assert response.status_code == 400


class TestCheckSerial:
    def test_next_number(self, admin_client, make_product):
        make_product(name='Anklet', serial_prefix='SKA', quantity=5)
        data = admin_client.get('/api/products/check-serial?serial_prefix=ska').get_json()
        assert data['exists'] is True
        assert data['last_number'] == 5
        assert data['next_number'] == 6
        assert data['total_existing'] == 5

    def test_filtered_by_name(self, admin_client, make_product):
        make_product(name='Anklet', serial_prefix='SKA', quantity=2)
        data = admin_client.get('/api/products/check-serial?serial_prefix=SKA&name=Bracelet').get_json()
        assert data['exists'] is False
        assert data['next_number'] == 1

    def test_prefix_required(self, admin_client):
        assert admin_client.get('/api/products/check-serial').status_code == 400


class TestProductReadUpdate:
    def test_list_and_search(self, admin_client, make_product):
        make_product(name='Silver Chain')
        make_product(name='Gold Bar')

        data = admin_client.get('/api/products').get_json()
        assert data['count'] == 2

        data = admin_client.get('/api/products?search=chain').get_json()
        assert [p['name'] for p in data['products']] == ['Silver Chain']

    def test_get_product(self, admin_client, make_product):
        product = make_product()
        data = admin_client.get(f"/api/products/{product['id']}").get_json()
        assert data['product']['serial_code'] == product['serial_code']

    def test_get_missing_product(self, admin_client):
        assert admin_client.get('/api/products/9999').status_code == 404

    def test_update_fields(self, admin_client, make_product):
        product = make_product()
        response = admin_client.patch(f"/api/products/{product['id']}", json={'name': 'Renamed', 'price': 10.5})
        assert response.status_code == 200
        assert response.get_json()['product']['name'] == 'Renamed'
        assert response.get_json()['product']['price'] == 10.5

    def test_update_requires_fields(self, admin_client, make_product):
        product = make_product()
        assert admin_client.patch(f"/api/products/{product['id']}", json={}).status_code == 400

    def test_serial_change_replaces_qr(self, admin_client, client, make_product, asset_store):
        product = make_product(serial_code='OLDCODE01')
        old_path = _asset_path(asset_store, product['qr_image_url'])

        response = admin_client.patch(f"/api/products/{product['id']}", json={'serial_code': 'newcode01'})
        assert response.status_code == 200
        updated = response.get_json()['product']
        assert updated['serial_code'] == 'NEWCODE01'
        assert os.path.exists(_asset_path(asset_store, updated['qr_image_url']))
        assert not os.path.exists(old_path)

        assert client.get('/api/verify/OLDCODE01').status_code == 404
        assert client.get('/api/verify/NEWCODE01').status_code == 200

    def test_serial_change_conflict(self, admin_client, make_product):
        make_product(serial_code='TAKEN0001')
        product = make_product(serial_code='MINE00001')
        response = admin_client.patch(f"/api/products/{product['id']}", json={'serial_code': 'TAKEN0001'})
        assert response.status_code == 409


class TestProductDeletion:
    def test_delete_removes_record_and_logs(self, admin_client, client, make_product, asset_store):
        product = make_product()
        client.get(f"/api/verify/{product['serial_code']}")
        client.get(f"/api/verify/{product['serial_code']}")
        path = _asset_path(asset_store, product['qr_image_url'])

        response = admin_client.delete(f"/api/products/{product['id']}")
        assert response.status_code == 200
        data = response.get_json()
        assert data['deleted'] == 1
        assert data['serial_code'] == product['serial_code']

        assert Product.query.count() == 0
        assert QrRecord.query.count() == 0
        assert QrScanLog.query.count() == 0
        assert not os.path.exists(path)

        history = ProductDeleteHistory.query.one()
        assert history.scan_count == 2
        assert history.deleted_by == 'admin@test.com'
        assert history.batch_id == data['delete_batch_id']

    def test_deleted_code_no_longer_verifies(self, admin_client, client, make_product):
        product = make_product()
        admin_client.delete(f"/api/products/{product['id']}")
        assert client.get(f"/api/verify/{product['serial_code']}").status_code == 404

    def test_delete_missing_product(self, admin_client):
        assert admin_client.delete('/api/products/9999').status_code == 404

    def test_delete_all(self, admin_client, make_product):
        make_product(serial_prefix='SKA', quantity=3)
        data = admin_client.delete('/api/products').get_json()
        assert data['deleted'] == 3
        assert Product.query.count() == 0
        assert ProductDeleteBatch.query.one().item_count == 3

    def test_delete_all_when_empty(self, admin_client):
        data = admin_client.delete('/api/products').get_json()
        assert data['deleted'] == 0
        assert ProductDeleteBatch.query.count() == 0

    def test_list_deleted(self, admin_client, make_product):
        product = make_product()
        admin_client.delete(f"/api/products/{product['id']}")

        data = admin_client.get('/api/products/deleted').get_json()
        assert len(data['batches']) == 1
        assert data['batches'][0]['histories'][0]['serial_code'] == product['serial_code']
        assert data['unbatched'] == []

    def test_delete_history_entry(self, admin_client, make_product):
        product = make_product()
        admin_client.delete(f"/api/products/{product['id']}")
        history = ProductDeleteHistory.query.one()

        assert admin_client.delete(f'/api/products/deleted/{history.id}').status_code == 200
        assert ProductDeleteHistory.query.count() == 0
        assert admin_client.delete(f'/api/products/deleted/{history.id}').status_code == 404


class TestProductRestore:
    def test_restore_history(self, admin_client, client, make_product):
        product = make_product(name='Heirloom', serial_code='HEIR00001')
        client.get('/api/verify/HEIR00001')
        admin_client.delete(f"/api/products/{product['id']}")
        history = ProductDeleteHistory.query.one()

        response = admin_client.post(f'/api/products/restore/{history.id}')
        assert response.status_code == 200
        restored = response.get_json()['product']
        assert restored['serial_code'] == 'HEIR00001'
        assert restored['scan_count'] == 1
        assert restored['qr_image_url']

        history = ProductDeleteHistory.query.one()
        assert history.restored_at is not None
        assert history.restored_product_id == restored['id']

        assert client.get('/api/verify/HEIR00001').get_json()['scan_count'] == 2

    def test_restore_twice_conflicts(self, admin_client, make_product):
        product = make_product()
        admin_client.delete(f"/api/products/{product['id']}")
        history_id = ProductDeleteHistory.query.one().id

        assert admin_client.post(f'/api/products/restore/{history_id}').status_code == 200
        assert admin_client.post(f'/api/products/restore/{history_id}').status_code == 409

    def test_restore_serial_in_use(self, admin_client, make_product):
        product = make_product(serial_code='REUSED001')
        admin_client.delete(f"/api/products/{product['id']}")
        make_product(serial_code='REUSED001')
        history_id = ProductDeleteHistory.query.one().id

        response = admin_client.post(f'/api/products/restore/{history_id}')
        assert response.status_code == 409
        assert response.get_json()['conflicts'] == ['REUSED001']

    def test_restore_batch(self, admin_client, make_product):
        make_product(serial_prefix='SKA', quantity=3)
        batch_id = admin_client.delete('/api/products').get_json()['delete_batch_id']

        response = admin_client.post(f'/api/products/restore-batch/{batch_id}')
        assert response.status_code == 200
        assert response.get_json()['restored_count'] == 3
        assert Product.query.count() == 3

        assert admin_client.post(f'/api/products/restore-batch/{batch_id}').status_code == 409

    def test_restore_missing(self, admin_client):
        assert admin_client.post('/api/products/restore/9999').status_code == 404
        assert admin_client.post('/api/products/restore-batch/9999').status_code == 404


class TestProductExport:
    def test_excel_export(self, admin_client, make_product):
        make_product(name='Gold Bar 10g', serial_code='XLS000001')
        response = admin_client.get('/api/export/excel')

        assert response.status_code == 200
        assert response.headers['Content-Type'].startswith(
            'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet')
        assert 'attachment' in response.headers['Content-Disposition']

        ws = load_workbook(io.BytesIO(response.data)).active
        assert ws.title == 'Products'
        headers = [cell.value for cell in ws[1]]
        assert headers[:3] == ['Name', 'Weight (g)', 'Serial Code']
        assert ws.cell(row=2, column=3).value == 'XLS000001'

    def test_export_requires_admin(self, client, db_session):
        assert client.get('/api/export/excel').status_code == 401
