import pytest

from app import app as flask_app, get_db_connection, init_db, login_throttle

MANAGER_EMAIL = 'manager@example.com'
MANAGER_PASSWORD = 'correct-horse'


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / 'test.db'),
        UPLOAD_FOLDER=str(tmp_path / 'uploads'),
        SECRET_KEY='test-secret',
        AUTH_MODE='credentials',
        DASHBOARD_EMAIL=MANAGER_EMAIL,
        DASHBOARD_PASSWORD=MANAGER_PASSWORD,
        DASHBOARD_PASSWORD_HASH='',
        DASHBOARD_NAME='Manager',
        STORAGE_UPLOAD_TTL=7200,
    )
    init_db()
    login_throttle.clear()
    yield flask_app
    login_throttle.clear()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def staff_client(client):
    response = client.post('/api/auth/login', json={
        'email': MANAGER_EMAIL,
        'password': MANAGER_PASSWORD,
    })
    assert response.status_code == 200
    return client


@pytest.fixture
def db(app):
    conn = get_db_connection()
    yield conn
    conn.close()


@pytest.fixture
def make_material(db):
    def _make(title='Cambridge IELTS 18', quantity_total=5, quantity_available=None,
              level='ielts', type='book', author=None):
        if quantity_available is None:
            quantity_available = quantity_total
        cursor = db.execute('''
            INSERT INTO materials (title, author, level, type, quantity_total, quantity_available)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (title, author, level, type, quantity_total, quantity_available))
        db.commit()
        return cursor.lastrowid
    return _make


@pytest.fixture
def make_user(db):
    counter = {'n': 0}

    def _make(full_name='Nguyễn Minh Anh', email=None, role='sales', is_active=1):
        counter['n'] += 1
        email = email or f'sales{counter["n"]}@example.com'
        cursor = db.execute('''
            INSERT INTO users (full_name, email, role, is_active) VALUES (?, ?, ?, ?)
        ''', (full_name, email, role, is_active))
        db.commit()
        return cursor.lastrowid
    return _make


@pytest.fixture
def stock(db):
    def _stock(material_id):
        return db.execute(
            'SELECT quantity_available FROM materials WHERE id = ?', (material_id,)
        ).fetchone()[0]
    return _stock


@pytest.fixture
def borrow(client):
    """POST a borrow for the given phone and materials"""
    def _borrow(phone, material_ids, sales_staff_id, student_name='Lê Văn An', **extra):
        payload = {
            'type': 'borrow',
            'phone': phone,
            'student_name': student_name,
            'sales_staff_id': sales_staff_id,
            'material_ids': material_ids,
        }
        payload.update(extra)
        return client.post('/api/enrollment', json=payload)
    return _borrow
