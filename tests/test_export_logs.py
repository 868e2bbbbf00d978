def test_export_to_class_deducts_stock(staff_client, make_material, stock):
    material_id = make_material(title='Cambridge IELTS 18', quantity_total=10)

    response = staff_client.post('/api/export-logs', json={
        'material_id': material_id, 'quantity': 3, 'note': 'Class IELTS-07',
    })

    assert response.status_code == 201
    log = response.get_json()['data']['log']
    assert log['quantity'] == 3
    assert log['material_title'] == 'Cambridge IELTS 18'
    assert log['exported_by'] == 'manager@example.com'
    assert log['note'] == 'Class IELTS-07'
    assert stock(material_id) == 7


def test_export_more_than_available_is_refused(staff_client, db, make_material, stock):
    material_id = make_material(title='Cambridge IELTS 18', quantity_total=10, quantity_available=2)

    response = staff_client.post('/api/export-logs', json={'material_id': material_id, 'quantity': 3})

    assert response.status_code == 400
    assert response.get_json()['error'] == '"Cambridge IELTS 18" only has 2 left'
    assert stock(material_id) == 2
    assert db.execute('SELECT COUNT(*) FROM export_logs').fetchone()[0] == 0


def test_export_validation(staff_client, make_material):
    material_id = make_material()

    response = staff_client.post('/api/export-logs', json={'material_id': material_id})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Missing required fields'

    response = staff_client.post('/api/export-logs', json={'material_id': material_id, 'quantity': -1})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'quantity must be at least 1'

    response = staff_client.post('/api/export-logs', json={'material_id': 999, 'quantity': 1})
    assert response.status_code == 404


def test_list_export_logs(staff_client, make_material):
    material_id = make_material(quantity_total=10)
    staff_client.post('/api/export-logs', json={'material_id': material_id, 'quantity': 1})
    staff_client.post('/api/export-logs', json={'material_id': material_id, 'quantity': 2})

    logs = staff_client.get('/api/export-logs').get_json()['data']['logs']
    assert [log['quantity'] for log in logs] == [2, 1]
    assert logs[0]['material']['title'] == 'Cambridge IELTS 18'
    assert logs[0]['erp_updated'] is False

    logs = staff_client.get('/api/export-logs?date_from=2000-01-01&date_to=2999-12-31').get_json()['data']['logs']
    assert len(logs) == 2

    logs = staff_client.get('/api/export-logs?date_to=2000-01-01').get_json()['data']['logs']
    assert logs == []

    assert staff_client.get('/api/export-logs?limit=1').get_json()['data']['logs'][0]['quantity'] == 2


def test_patch_export_log(staff_client, make_material):
    material_id = make_material(quantity_total=10)
    log_id = staff_client.post('/api/export-logs', json={
        'material_id': material_id, 'quantity': 1,
    }).get_json()['data']['log']['id']

    response = staff_client.patch(f'/api/export-logs/{log_id}', json={'erp_updated': True, 'note': 'Synced'})
    assert response.status_code == 200
    log = response.get_json()['data']['log']
    assert log['erp_updated'] == 1
    assert log['note'] == 'Synced'

    response = staff_client.patch(f'/api/export-logs/{log_id}', json={'quantity': 100})
    assert response.status_code == 400

    response = staff_client.patch(f'/api/export-logs/{log_id}', json={'erp_updated': 'yes'})
    assert response.status_code == 400

    assert staff_client.patch('/api/export-logs/999', json={'note': 'x'}).status_code == 404


def test_export_logs_require_login(client):
    assert client.get('/api/export-logs').status_code == 401
    assert client.post('/api/export-logs', json={'material_id': 1, 'quantity': 1}).status_code == 401
