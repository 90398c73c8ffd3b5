import io
import os
import re
import pytest
from openpyxl import load_workbook
from models import GramProductBatch, GramProductItem, GramQrScanLog
import gram_service

pytestmark = pytest.mark.integration


class TestGramBatchCreation:
    def test_create_batch(self, admin_client, asset_store):
        response = admin_client.post('/api/gram-products', json={'name': 'Silver Coin', 'weight': 5, 'quantity': 3})

        assert response.status_code == 201
        data = response.get_json()
        assert data['count'] == 3
        assert data['batch']['weight_group'] == 'SMALL'
        assert data['batch']['qr_mode'] == 'MULTI_QR'

        items = data['items']
        assert [i['serial_code'] for i in items] == ['SKP000001', 'SKP000002', 'SKP000003']
        assert len({i['uniq_code'] for i in items}) == 3
        for item in items:
            assert item['uniq_code'].startswith('GK')
            assert re.match(r'^[A-Z0-9]{4}$', item['root_key'])
            assert os.path.exists(asset_store.local_path(asset_store.key_from_url(item['qr_image_url'])))

    def test_root_keys_stored_hashed(self, make_gram_batch):
        created = make_gram_batch(quantity=1)
        item = GramProductItem.query.filter_by(uniq_code=created['items'][0]['uniq_code']).one()
        assert item.root_key_hash
        assert item.root_key_hash != item.root_key

    def test_single_large_item(self, make_gram_batch):
        batch = make_gram_batch(weight=250, quantity=1)['batch']
        assert batch['weight_group'] == 'LARGE'
        assert batch['qr_mode'] == 'SINGLE_QR'

    def test_serials_continue_across_batches(self, make_gram_batch):
        make_gram_batch(quantity=2)
        items = make_gram_batch(name='Silver Bar', quantity=2)['items']
        assert [i['serial_code'] for i in items] == ['SKP000003', 'SKP000004']

    def test_custom_serial_prefix(self, make_gram_batch):
        items = make_gram_batch(serial_prefix='cn', quantity=1)['items']
        assert items[0]['serial_code'] == 'CN000001'

    def test_validation(self, admin_client):
        response = admin_client.post('/api/gram-products', json={'name': '', 'weight': -1})
        assert response.status_code == 400
        assert set(response.get_json()['fields']) == {'name', 'weight', 'quantity'}
        assert GramProductBatch.query.count() == 0

    def test_quantity_limit(self, app, admin_client):
        limit = app.config['GRAM_BATCH_MAX_QUANTITY']
        response = admin_client.post('/api/gram-products', json={'name': 'Coin', 'weight': 5, 'quantity': limit + 1})
        assert response.status_code == 400

    def test_requires_admin(self, staff_client):
        response = staff_client.post('/api/gram-products', json={'name': 'Coin', 'weight': 5, 'quantity': 1})
        assert response.status_code == 401


class TestGramBatchReadUpdate:
    def test_list_batches_with_totals(self, admin_client, client, make_gram_batch):
        created = make_gram_batch(quantity=2)
        client.get(f"/api/verify-gram/{created['items'][0]['uniq_code']}")
        client.get(f"/api/verify-gram/{created['items'][0]['uniq_code']}")

        data = admin_client.get('/api/gram-products').get_json()
        assert data['count'] == 1
        batch = data['batches'][0]
        assert batch['qr_count'] == 2
        assert batch['total_scan_count'] == 2

    def test_batch_detail(self, admin_client, make_gram_batch):
        batch_id = make_gram_batch(quantity=2)['batch']['id']

        data = admin_client.get(f'/api/gram-products/batch/{batch_id}').get_json()
        assert 'items' not in data

        data = admin_client.get(f'/api/gram-products/batch/{batch_id}?include_items=true').get_json()
        assert [i['serial_code'] for i in data['items']] == ['SKP000001', 'SKP000002']
        assert data['items'][0]['root_key']

    def test_missing_batch(self, admin_client):
        assert admin_client.get('/api/gram-products/batch/9999').status_code == 404

    def test_update_weight_regroups(self, admin_client, make_gram_batch):
        batch_id = make_gram_batch(weight=50, quantity=1)['batch']['id']
        response = admin_client.patch(f'/api/gram-products/batch/{batch_id}', json={'weight': 100, 'name': 'Bar'})
        assert response.status_code == 200
        batch = response.get_json()['batch']
        assert batch['weight_group'] == 'LARGE'
        assert batch['name'] == 'Bar'

    def test_update_validation(self, admin_client, make_gram_batch):
        batch_id = make_gram_batch(quantity=1)['batch']['id']
        assert admin_client.patch(f'/api/gram-products/batch/{batch_id}', json={'weight': 'x'}).status_code == 400


class TestGramDeletion:
    def test_delete_batch(self, admin_client, client, make_gram_batch, asset_store):
        created = make_gram_batch(quantity=2)
        uniq_code = created['items'][0]['uniq_code']
        client.get(f'/api/verify-gram/{uniq_code}')
        path = asset_store.local_path(asset_store.key_from_url(created['items'][0]['qr_image_url']))

        data = admin_client.delete(f"/api/gram-products/batch/{created['batch']['id']}").get_json()
        assert data['deleted_batches'] == 1
        assert data['deleted_items'] == 2

        assert GramProductItem.query.count() == 0
        assert GramQrScanLog.query.count() == 0
        assert not os.path.exists(path)
        assert client.get(f'/api/verify-gram/{uniq_code}').status_code == 404

    def test_delete_batch_leaves_other_batches(self, admin_client, make_gram_batch):
        first = make_gram_batch(quantity=1)
        make_gram_batch(name='Keep', quantity=2)

        admin_client.delete(f"/api/gram-products/batch/{first['batch']['id']}")
        assert GramProductBatch.query.one().name == 'Keep'
        assert GramProductItem.query.count() == 2

    def test_delete_all(self, admin_client, client, make_gram_batch):
        first = make_gram_batch(quantity=2)
        make_gram_batch(quantity=1)
        client.get(f"/api/verify-gram/{first['items'][0]['uniq_code']}")

        data = admin_client.delete('/api/gram-products').get_json()
        assert data == {'success': True, 'deleted_batches': 2, 'deleted_items': 3}
        assert GramProductBatch.query.count() == 0
        assert GramQrScanLog.query.count() == 0

    def test_delete_all_when_empty(self, admin_client):
        data = admin_client.delete('/api/gram-products').get_json()
        assert data['deleted_batches'] == 0
        assert data['deleted_items'] == 0


class TestGramExport:
    def test_export(self, admin_client, make_gram_batch):
        make_gram_batch(name='Coin', quantity=2)
        response = admin_client.get('/api/gram-products/export')
        assert response.status_code == 200

        ws = load_workbook(io.BytesIO(response.data)).active
        assert ws.title == 'Gram Products'
        assert ws.max_row == 3
        assert [cell.value for cell in ws[1]][:4] == ['Batch', 'Weight (g)', 'Weight Group', 'Uniq Code']


class TestGramHelpers:
    def test_weight_group_boundary(self):
        assert gram_service.weight_group_for(99) == 'SMALL'
        assert gram_service.weight_group_for(100) == 'LARGE'

    def test_qr_mode(self):
        assert gram_service.qr_mode_for(1) == 'SINGLE_QR'
        assert gram_service.qr_mode_for(2) == 'MULTI_QR'

    def test_allocate_uniq_codes_distinct(self, app, db_session):
        codes = gram_service.allocate_uniq_codes(50)
        assert len(set(codes)) == 50
        assert all(code.startswith('GK') for code in codes)
