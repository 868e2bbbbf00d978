PHONE = '0912345678'


def test_check_phone_unknown(client):
    response = client.get(f'/api/students/check-phone?phone={PHONE}')
    assert response.status_code == 200
    assert response.get_json()['data'] == {'student': None, 'borrowed_materials': []}


def test_check_phone_requires_phone(client):
    response = client.get('/api/students/check-phone')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Phone number is required'


def test_check_phone_lists_outstanding_loans(client, db, make_material, make_user, borrow):
    m1 = make_material(title='Cambridge IELTS 18')
    m2 = make_material(title='Bình nước', type='gift')
    borrow(PHONE, [m1, m2], make_user())
    client.post('/api/enrollment', json={'type': 'return', 'phone': PHONE, 'material_id': m2})

    data = client.get(f'/api/students/check-phone?phone={PHONE}').get_json()['data']

    assert data['student']['name'] == 'Lê Văn An'
    assert [item['material_id'] for item in data['borrowed_materials']] == [m1]
    loan = data['borrowed_materials'][0]
    assert loan['material']['title'] == 'Cambridge IELTS 18'
    assert loan['is_overdue'] is False

    db.execute("UPDATE enrollments SET due_date = '2000-01-01'")
    db.commit()
    data = client.get(f'/api/students/check-phone?phone={PHONE}').get_json()['data']
    assert data['borrowed_materials'][0]['is_overdue'] is True


def test_student_routes_require_login(client):
    assert client.get('/api/students').status_code == 401
    assert client.post('/api/students', json={'name': 'A', 'phone': PHONE}).status_code == 401


def test_create_and_list_students(staff_client):
    response = staff_client.post('/api/students', json={'name': 'Phạm Thu Hà', 'phone': PHONE, 'level': 'ielts'})
    assert response.status_code == 201
    assert response.get_json()['data']['student_type'] == 'new'

    response = staff_client.post('/api/students', json={'name': 'Someone else', 'phone': PHONE})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Phone number already registered'

    response = staff_client.post('/api/students', json={'phone': '0999999999'})
    assert response.status_code == 400

    data = staff_client.get('/api/students?search=thu').get_json()['data']
    assert data['total'] == 1
    assert data['students'][0]['phone'] == PHONE


def test_student_detail_includes_history(staff_client, db, make_material, make_user, borrow):
    m1 = make_material()
    borrow(PHONE, [m1], make_user())
    student_id = db.execute('SELECT id FROM students WHERE phone = ?', (PHONE,)).fetchone()[0]

    data = staff_client.get(f'/api/students/{student_id}').get_json()['data']

    assert data['phone'] == PHONE
    assert len(data['material_records']) == 1
    assert data['material_records'][0]['status'] == 'borrowed'
    assert data['material_records'][0]['material']['title'] == 'Cambridge IELTS 18'

    assert staff_client.get('/api/students/999').status_code == 404


def test_phone_change_follows_to_enrollments(staff_client, db, make_material, make_user, borrow):
    m1 = make_material()
    borrow(PHONE, [m1], make_user())
    student_id = db.execute('SELECT id FROM students WHERE phone = ?', (PHONE,)).fetchone()[0]

    response = staff_client.put(f'/api/students/{student_id}', json={'phone': '0987654321', 'notes': 'moved'})

    assert response.status_code == 200
    assert response.get_json()['data']['notes'] == 'moved'
    assert db.execute('SELECT student_phone FROM enrollments').fetchone()[0] == '0987654321'


def test_update_student_rejects_empty_name(staff_client, db):
    db.execute("INSERT INTO students (name, phone) VALUES ('A', ?)", (PHONE,))
    db.commit()
    student_id = db.execute('SELECT id FROM students').fetchone()[0]

    response = staff_client.put(f'/api/students/{student_id}', json={'name': '  '})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'name cannot be empty'
