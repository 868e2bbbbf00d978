def test_sales_staff_is_public_and_active_only(client, make_user):
    make_user(full_name='Nguyễn Minh Anh', email='anh@example.com')
    make_user(full_name='Inactive Person', is_active=0)
    make_user(full_name='Boss', role='manager')

    response = client.get('/api/users/sales')

    assert response.status_code == 200
    staff = response.get_json()['data']['staff']
    assert [s['email'] for s in staff] == ['anh@example.com']


def test_list_defaults_to_sales(staff_client, make_user):
    make_user(full_name='Sales One')
    make_user(full_name='Admin One', role='admin')

    users = staff_client.get('/api/users').get_json()['data']['users']
    assert [u['full_name'] for u in users] == ['Sales One']

    users = staff_client.get('/api/users?role=all').get_json()['data']['users']
    assert len(users) == 2


def test_create_user(staff_client):
    response = staff_client.post('/api/users', json={'full_name': 'Võ Thị Lan', 'email': 'lan@example.com'})
    assert response.status_code == 201
    user = response.get_json()['data']
    assert user['role'] == 'sales'
    assert user['is_active'] == 1

    response = staff_client.post('/api/users', json={'full_name': 'Other', 'email': 'lan@example.com'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Email already exists'

    response = staff_client.post('/api/users', json={'full_name': 'X', 'email': 'x@example.com', 'role': 'owner'})
    assert response.status_code == 400


def test_update_user(staff_client, make_user, client):
    user_id = make_user(email='one@example.com')
    make_user(email='two@example.com')

    response = staff_client.put(f'/api/users/{user_id}', json={'is_active': False})
    assert response.status_code == 200
    assert response.get_json()['data']['is_active'] == 0
    assert staff_client.get('/api/users/sales').get_json()['data']['staff'][0]['email'] == 'two@example.com'

    response = staff_client.put(f'/api/users/{user_id}', json={'email': 'two@example.com'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Email already exists'

    assert staff_client.put('/api/users/999', json={'full_name': 'X'}).status_code == 404


def test_user_detail_lists_their_loans(staff_client, make_user, make_material, borrow):
    user_id = make_user()
    borrow('0955555555', [make_material()], user_id)

    data = staff_client.get(f'/api/users/{user_id}').get_json()['data']

    assert len(data['material_records']) == 1
    assert data['material_records'][0]['title'] == 'Cambridge IELTS 18'
    assert staff_client.get('/api/users/999').status_code == 404


def test_users_require_login(client):
    assert client.get('/api/users').status_code == 401
    assert client.get('/api/dashboard/stats').status_code == 401
