from flask import Flask, request, jsonify, send_file, session, url_for, g
import sqlite3
import os
from datetime import datetime, timedelta
import pandas as pd
from openpyxl.utils import get_column_letter
import io
import zipfile
from functools import wraps
import logging
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

import lending
import storage
from auth import AuthConfigError, LoginThrottle, get_auth_strategy
from errors import (
    ApiError, MethodNotAllowed, NotFoundError, ServerError, UnauthorizedError, ValidationError
)

load_dotenv()

app = Flask(__name__)
app.config['DATABASE'] = os.getenv('DATABASE', 'lending.db')
app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER', 'uploads')
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max file size
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-only-change-me')
app.config['STORAGE_UPLOAD_TTL'] = int(os.getenv('STORAGE_UPLOAD_TTL', storage.DEFAULT_UPLOAD_TTL))

# Auth strategy: 'credentials' (single configured account) or 'stub' (no login)
app.config['AUTH_MODE'] = os.getenv('AUTH_MODE', 'credentials')
app.config['DASHBOARD_EMAIL'] = os.getenv('DASHBOARD_EMAIL', '')
app.config['DASHBOARD_PASSWORD'] = os.getenv('DASHBOARD_PASSWORD', '')
app.config['DASHBOARD_PASSWORD_HASH'] = os.getenv('DASHBOARD_PASSWORD_HASH', '')
app.config['DASHBOARD_NAME'] = os.getenv('DASHBOARD_NAME', 'Manager')

# Session configuration for the dashboard
app.config['SESSION_COOKIE_SECURE'] = os.getenv('SESSION_COOKIE_SECURE', '').lower() == 'true'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(days=1)

# Logging: console plus logs/app.log, auth events on the 'security' logger
LOG_DIR = os.getenv('LOG_DIR', 'logs')
os.makedirs(LOG_DIR, exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.path.join(LOG_DIR, 'app.log'), encoding='utf-8'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger('lending_app')
security_logger = logging.getLogger('security')

login_throttle = LoginThrottle()

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        full_name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        role TEXT NOT NULL DEFAULT 'sales' CHECK (role IN ('manager', 'sales', 'admin')),
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS materials (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        isbn TEXT,
        title TEXT NOT NULL,
        author TEXT,
        level TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'book' CHECK (type IN ('book', 'gift', 'other')),
        quantity_total INTEGER NOT NULL DEFAULT 1,
        quantity_available INTEGER NOT NULL DEFAULT 1,
        condition TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CHECK (quantity_available >= 0 AND quantity_available <= quantity_total)
    );

    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        email TEXT,
        phone TEXT UNIQUE NOT NULL,
        level TEXT,
        student_type TEXT NOT NULL DEFAULT 'new',
        notes TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS enrollments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_phone TEXT NOT NULL REFERENCES students(phone) ON UPDATE CASCADE,
        sales_staff_id INTEGER REFERENCES users(id),
        issued_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        notes TEXT,
        erp_updated INTEGER NOT NULL DEFAULT 0,
        request_id TEXT UNIQUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS material_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        enrollment_id INTEGER NOT NULL REFERENCES enrollments(id),
        material_id INTEGER NOT NULL REFERENCES materials(id),
        status TEXT NOT NULL DEFAULT 'borrowed'
            CHECK (status IN ('borrowed', 'returned', 'lost', 'damaged', 'overdue')),
        return_date TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS export_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        material_id INTEGER NOT NULL REFERENCES materials(id),
        material_title TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        note TEXT,
        exported_by TEXT,
        erp_updated INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS enrollment_images (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        enrollment_id INTEGER NOT NULL REFERENCES enrollments(id),
        storage_path TEXT UNIQUE NOT NULL,
        file_name TEXT,
        file_size INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_enrollments_phone ON enrollments(student_phone);
    CREATE INDEX IF NOT EXISTS idx_records_enrollment ON material_records(enrollment_id);
    CREATE INDEX IF NOT EXISTS idx_records_material ON material_records(material_id, status);
'''


def get_db_connection():
    """Create database connection"""
    conn = sqlite3.connect(app.config['DATABASE'], timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def get_db():
    """Connection shared by the current request"""
    if 'db' not in g:
        g.db = get_db_connection()
    return g.db


@app.teardown_appcontext
def close_db(exception):
    conn = g.pop('db', None)
    if conn is not None:
        conn.close()


def init_db(seed=False):
    """Initialize database with tables"""
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    conn = get_db_connection()
    conn.executescript(SCHEMA)

    if seed:
        # Sample data only for an empty database
        if conn.execute('SELECT COUNT(*) FROM users').fetchone()[0] == 0:
            conn.executemany('''
                INSERT INTO users (full_name, email, role) VALUES (?, ?, ?)
            ''', [
                ('Nguyễn Minh Anh', 'minhanh@example.com', 'sales'),
                ('Trần Quốc Bảo', 'quocbao@example.com', 'sales'),
            ])
        if conn.execute('SELECT COUNT(*) FROM materials').fetchone()[0] == 0:
            conn.executemany('''
                INSERT INTO materials (title, author, level, type, quantity_total, quantity_available)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', [
                ('Cambridge IELTS 18', 'Cambridge University Press', 'ielts', 'book', 20, 20),
                ('Oxford Word Skills Basic', 'Ruth Gairns', 'foundation', 'book', 15, 15),
                ('Sổ tay từ vựng', '', 'ielts', 'gift', 50, 50),
                ('Bình nước HCSC', '', 'all', 'gift', 30, 30),
            ])
        conn.commit()

    conn.close()


# ==================== RESPONSE HELPERS ====================

def api_response(data=None, status_code=200):
    return jsonify({'success': True, 'data': data}), status_code


def api_error(error, status_code=400):
    return jsonify({'success': False, 'error': error}), status_code


def get_json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def get_client_ip():
    """Get real client IP address (works with proxies)"""
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    elif request.headers.get('X-Real-IP'):
        return request.headers.get('X-Real-IP')
    else:
        return request.remote_addr


def excel_response(df, sheet_name, filename):
    """Send a DataFrame as an .xlsx attachment"""
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        df.to_excel(writer, index=False, sheet_name=sheet_name)

        # Auto-adjust column widths
        worksheet = writer.sheets[sheet_name]
        for idx, col in enumerate(df.columns, start=1):
            max_length = max([len(str(col))] + [len(str(value)) for value in df[col]]) + 2
            worksheet.column_dimensions[get_column_letter(idx)].width = min(max_length, 50)

    output.seek(0)

    return send_file(
        output,
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        as_attachment=True,
        download_name=filename
    )


# ==================== ERROR HANDLERS ====================

@app.errorhandler(ApiError)
def handle_api_error(error):
    if error.status_code >= 500:
        logger.error('Request %s %s failed: %s', request.method, request.path, error.message)
    return api_error(error.message, error.status_code)


@app.errorhandler(HTTPException)
def handle_http_error(error):
    if error.code == 405:
        return handle_api_error(MethodNotAllowed('Method not allowed'))
    return api_error(error.description, error.code)


@app.errorhandler(sqlite3.Error)
def handle_database_error(error):
    logger.exception('Database error on %s %s', request.method, request.path)
    return handle_api_error(ServerError(f'Database error: {error}'))


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    logger.exception('Unhandled error on %s %s', request.method, request.path)
    return handle_api_error(ServerError(f'Server error: {error}'))


# ==================== AUTHENTICATION ====================

def login_required(f):
    """Decorator to require a dashboard session for routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            raise UnauthorizedError('Authentication required')
        return f(*args, **kwargs)
    return decorated_function


def current_user():
    return {
        'id': session.get('user_id'),
        'email': session.get('email'),
        'role': session.get('role'),
        'full_name': session.get('full_name'),
    }


@app.route('/api/auth/login', methods=['POST'])
def login():
    """Login endpoint with security logging and rate limiting"""
    data = get_json_body()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    ip_address = get_client_ip()

    try:
        strategy = get_auth_strategy(app.config)
    except AuthConfigError as e:
        security_logger.error('EVENT: LOGIN_MISCONFIGURED | USER: %s | IP: %s | %s',
                              email or 'EMPTY', ip_address, e)
        return api_error('Invalid email or password', 401)

    if strategy.requires_credentials and (not email or not password):
        security_logger.info('EVENT: LOGIN_ATTEMPT | USER: %s | IP: %s | SUCCESS: False | '
                             'Missing email or password', email or 'EMPTY', ip_address)
        return api_error('Email and password are required', 400)

    allowed, remaining = login_throttle.check(ip_address)
    if not allowed:
        security_logger.warning('EVENT: LOGIN_BLOCKED | USER: %s | IP: %s | %ss remaining',
                                email, ip_address, remaining)
        return jsonify({
            'success': False,
            'error': f'Too many failed attempts. Try again in {remaining} seconds.',
            'lockout_time': remaining
        }), 429

    user = strategy.authenticate(email, password)
    if user is None:
        locked_out = login_throttle.record_failure(ip_address)
        attempts_left = login_throttle.attempts_left(ip_address)
        security_logger.info('EVENT: LOGIN_FAILED | USER: %s | IP: %s | SUCCESS: False | '
                             '%s attempts left', email, ip_address, attempts_left)
        if locked_out:
            return jsonify({
                'success': False,
                'error': f'Too many failed attempts. Locked for {login_throttle.lockout_duration} seconds.',
                'lockout_time': login_throttle.lockout_duration
            }), 429
        return jsonify({
            'success': False,
            'error': 'Invalid email or password',
            'attempts_left': attempts_left
        }), 401

    login_throttle.reset(ip_address)
    session.clear()
    session.permanent = True
    session['user_id'] = user['id']
    session['email'] = user['email']
    session['role'] = user['role']
    session['full_name'] = user['full_name']

    security_logger.info('EVENT: LOGIN_SUCCESS | USER: %s | IP: %s | SUCCESS: True | Role: %s',
                         user['email'], ip_address, user['role'])
    return api_response(user)


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return api_response({'message': 'Logged out successfully'})


@app.route('/api/auth/me', methods=['GET'])
@login_required
def get_current_user():
    return api_response(current_user())


# ==================== MATERIALS ROUTES ====================

MATERIAL_EXPORT_COLUMNS = {
    'title': 'Title',
    'author': 'Author',
    'level': 'Level',
    'type': 'Type',
    'quantity_total': 'Total',
    'quantity_available': 'Available',
}


@app.route('/api/materials', methods=['GET'])
def get_materials():
    """Get materials with optional filtering"""
    level = request.args.get('level', '').strip()
    material_type = request.args.get('type', '').strip()
    search = request.args.get('search', '').strip().lower()
    available_only = request.args.get('available', '').lower() == 'true'
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    where = ' WHERE 1=1'
    params = []

    if level and level != 'all':
        where += ' AND level = ?'
        params.append(level)

    if material_type and material_type != 'all':
        where += ' AND type = ?'
        params.append(material_type)

    if search:
        where += " AND (LOWER(title) LIKE ? OR LOWER(COALESCE(author, '')) LIKE ?)"
        params.extend([f'%{search}%', f'%{search}%'])

    if available_only:
        where += ' AND quantity_available > 0'

    conn = get_db()
    total = conn.execute('SELECT COUNT(*) FROM materials' + where, params).fetchone()[0]
    materials = conn.execute(
        'SELECT * FROM materials' + where + ' ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?',
        params + [limit, offset]
    ).fetchall()

    return api_response({'materials': [dict(row) for row in materials], 'total': total})


@app.route('/api/materials', methods=['POST'])
@login_required
def add_material():
    """Add new material; all copies start available"""
    data = get_json_body()
    title = lending.clean_text(data.get('title'))
    level = lending.clean_text(data.get('level'))

    if not title or not level:
        return api_error('Missing required fields', 400)

    material_type = data.get('type') or 'book'
    if material_type not in lending.MATERIAL_TYPES:
        return api_error(f'type must be one of {", ".join(lending.MATERIAL_TYPES)}', 400)

    quantity_total = lending.parse_count(data.get('quantity_total', 1), 'quantity_total')

    conn = get_db()
    cursor = conn.execute('''
        INSERT INTO materials (isbn, title, author, level, type, quantity_total, quantity_available, condition)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', (
        lending.clean_text(data.get('isbn')),
        title,
        lending.clean_text(data.get('author')),
        level,
        material_type,
        quantity_total,
        quantity_total,
        lending.clean_text(data.get('condition'))
    ))
    conn.commit()
    material = conn.execute('SELECT * FROM materials WHERE id = ?', (cursor.lastrowid,)).fetchone()
    logger.info('Material %s created: %s x%d', material['id'], title, quantity_total)

    return api_response(dict(material), 201)


@app.route('/api/materials/<int:material_id>', methods=['GET'])
def get_material(material_id):
    """Get single material by ID"""
    material = get_db().execute('SELECT * FROM materials WHERE id = ?', (material_id,)).fetchone()

    if material is None:
        raise NotFoundError('Material not found')

    return api_response(dict(material))


@app.route('/api/materials/<int:material_id>', methods=['PUT'])
@login_required
def update_material(material_id):
    """Update the supplied fields of a material"""
    update = lending.MaterialUpdate.from_json(get_json_body())
    try:
        material = update.apply(get_db(), material_id)
    except sqlite3.IntegrityError:
        raise ValidationError('quantity_available must stay between 0 and quantity_total')
    return api_response(material)


@app.route('/api/materials/<int:material_id>', methods=['DELETE'])
@login_required
def delete_material(material_id):
    """Delete material"""
    conn = get_db()
    if conn.execute('SELECT id FROM materials WHERE id = ?', (material_id,)).fetchone() is None:
        raise NotFoundError('Material not found')

    try:
        conn.execute('DELETE FROM materials WHERE id = ?', (material_id,))
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ValidationError('Material has lending or export history and cannot be deleted')

    logger.info('Material %s deleted', material_id)
    return api_response({'id': material_id})


@app.route('/api/materials/export', methods=['GET'])
@login_required
def export_materials_excel():
    """Export stock levels to Excel file"""
    material_type = request.args.get('type', '').strip()

    query = f'SELECT {", ".join(MATERIAL_EXPORT_COLUMNS)} FROM materials'
    params = []
    if material_type and material_type != 'all':
        query += ' WHERE type = ?'
        params.append(material_type)
    query += ' ORDER BY type, title'

    rows = get_db().execute(query, params).fetchall()

    df = pd.DataFrame([dict(row) for row in rows], columns=list(MATERIAL_EXPORT_COLUMNS))
    df = df.rename(columns=MATERIAL_EXPORT_COLUMNS)

    filename = f'materials_{datetime.now().strftime("%Y%m%d_%H%M%S")}.xlsx'
    return excel_response(df, 'Materials', filename)


@app.route('/api/materials/import', methods=['POST'])
@login_required
def import_materials_excel():
    """Import materials from Excel file, matching existing ones by title"""
    if 'file' not in request.files:
        return api_error('No file uploaded', 400)

    file = request.files['file']
    if file.filename == '':
        return api_error('No file selected', 400)

    if not file.filename.endswith(('.xlsx', '.xls')):
        return api_error('Only Excel files are supported', 400)

    try:
        df = pd.read_excel(file)
    except (ValueError, OSError, zipfile.BadZipFile) as e:
        return api_error(f'Error reading file: {e}', 400)

    # Normalize column names (handle different naming conventions)
    df.columns = df.columns.astype(str).str.strip().str.lower()

    title_cols = ['title', 'tên', 'tên tài liệu', 'name']
    quantity_cols = ['total', 'quantity_total', 'quantity', 'số lượng']
    level_cols = ['level', 'trình độ']
    type_cols = ['type', 'loại']
    author_cols = ['author', 'tác giả']

    title_col = next((col for col in title_cols if col in df.columns), None)
    quantity_col = next((col for col in quantity_cols if col in df.columns), None)
    level_col = next((col for col in level_cols if col in df.columns), None)
    type_col = next((col for col in type_cols if col in df.columns), None)
    author_col = next((col for col in author_cols if col in df.columns), None)

    if not title_col:
        return api_error('Column for material title not found', 400)

    conn = get_db()
    imported = 0
    skipped = 0

    for _, row in df.iterrows():
        title = str(row[title_col]).strip()
        if not title or title.lower() in ['nan', 'none', '']:
            continue

        try:
            quantity = int(row[quantity_col]) if quantity_col and pd.notna(row[quantity_col]) else 0
        except (TypeError, ValueError):
            skipped += 1
            continue
        level = str(row[level_col]).strip() if level_col and pd.notna(row[level_col]) else 'all'
        material_type = str(row[type_col]).strip().lower() if type_col and pd.notna(row[type_col]) else 'book'
        author = str(row[author_col]).strip() if author_col and pd.notna(row[author_col]) else None

        if quantity < 0 or material_type not in lending.MATERIAL_TYPES:
            skipped += 1
            continue

        existing = conn.execute(
            'SELECT id, quantity_total, quantity_available FROM materials WHERE title = ?', (title,)
        ).fetchone()

        if existing:
            # Copies currently out stay out
            on_loan = existing['quantity_total'] - existing['quantity_available']
            if quantity < on_loan:
                skipped += 1
                continue
            conn.execute('''
                UPDATE materials
                SET quantity_total = ?, quantity_available = ?, level = ?, type = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            ''', (quantity, quantity - on_loan, level, material_type, existing['id']))
        else:
            conn.execute('''
                INSERT INTO materials (title, author, level, type, quantity_total, quantity_available)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (title, author, level, material_type, quantity, quantity))

        imported += 1

    conn.commit()
    logger.info('Imported %d materials from %s (%d skipped)', imported, file.filename, skipped)

    return api_response({'imported': imported, 'skipped': skipped,
                         'message': f'Successfully imported {imported} materials'})


# ==================== STUDENTS ROUTES ====================

@app.route('/api/students', methods=['GET'])
@login_required
def get_students():
    """Get students with optional filtering"""
    level = request.args.get('level', '').strip()
    student_type = request.args.get('student_type', '').strip()
    search = request.args.get('search', '').strip().lower()
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    where = ' WHERE 1=1'
    params = []

    if level and level != 'all':
        where += ' AND level = ?'
        params.append(level)

    if student_type and student_type != 'all':
        where += ' AND student_type = ?'
        params.append(student_type)

    if search:
        where += " AND (LOWER(COALESCE(name, '')) LIKE ? OR LOWER(COALESCE(email, '')) LIKE ? OR phone LIKE ?)"
        params.extend([f'%{search}%', f'%{search}%', f'%{search}%'])

    conn = get_db()
    total = conn.execute('SELECT COUNT(*) FROM students' + where, params).fetchone()[0]
    students = conn.execute(
        'SELECT * FROM students' + where + ' ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?',
        params + [limit, offset]
    ).fetchall()

    return api_response({'students': [dict(row) for row in students], 'total': total})


@app.route('/api/students', methods=['POST'])
@login_required
def add_student():
    """Add new student"""
    data = get_json_body()
    name = lending.clean_text(data.get('name'))
    phone = lending.clean_text(data.get('phone'))

    if not name or not phone:
        return api_error('Missing required fields', 400)

    conn = get_db()
    try:
        cursor = conn.execute('''
            INSERT INTO students (name, email, phone, level, student_type, notes)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (
            name,
            lending.clean_text(data.get('email')),
            phone,
            lending.clean_text(data.get('level')),
            lending.clean_text(data.get('student_type')) or 'new',
            lending.clean_text(data.get('notes'))
        ))
        conn.commit()
    except sqlite3.IntegrityError:
        raise ValidationError('Phone number already registered')

    student = conn.execute('SELECT * FROM students WHERE id = ?', (cursor.lastrowid,)).fetchone()
    return api_response(dict(student), 201)


@app.route('/api/students/<int:student_id>', methods=['GET'])
@login_required
def get_student(student_id):
    """Get single student with borrowing history"""
    conn = get_db()
    student = conn.execute('SELECT * FROM students WHERE id = ?', (student_id,)).fetchone()

    if student is None:
        raise NotFoundError('Student not found')

    history = conn.execute('''
        SELECT mr.id, mr.material_id, mr.enrollment_id, mr.status, mr.return_date,
               e.issued_date, e.due_date,
               m.title, m.author, m.level
        FROM material_records mr
        JOIN enrollments e ON e.id = mr.enrollment_id
        JOIN materials m ON m.id = mr.material_id
        WHERE e.student_phone = ?
        ORDER BY e.issued_date DESC, mr.id DESC
    ''', (student['phone'],)).fetchall()

    result = dict(student)
    result['material_records'] = [
        {
            'id': row['id'],
            'material_id': row['material_id'],
            'enrollment_id': row['enrollment_id'],
            'issued_date': row['issued_date'],
            'due_date': row['due_date'],
            'return_date': row['return_date'],
            'status': row['status'],
            'is_overdue': lending.is_overdue(row['status'], row['due_date']),
            'material': {'title': row['title'], 'author': row['author'], 'level': row['level']},
        }
        for row in history
    ]
    return api_response(result)


@app.route('/api/students/<int:student_id>', methods=['PUT'])
@login_required
def update_student(student_id):
    """Update the supplied fields of a student"""
    update = lending.StudentUpdate.from_json(get_json_body())
    try:
        student = update.apply(get_db(), student_id)
    except sqlite3.IntegrityError:
        raise ValidationError('Phone number already registered')
    return api_response(student)


@app.route('/api/students/check-phone', methods=['GET'])
def check_phone():
    """Look a student up by phone, with the materials they still hold"""
    phone = request.args.get('phone', '').strip()
    if not phone:
        return api_error('Phone number is required', 400)

    conn = get_db()
    student = conn.execute('SELECT * FROM students WHERE phone = ?', (phone,)).fetchone()
    if student is None:
        return api_response({'student': None, 'borrowed_materials': []})

    return api_response({
        'student': dict(student),
        'borrowed_materials': lending.outstanding_loans(conn, phone),
    })


# ==================== ENROLLMENT ROUTES ====================

@app.route('/api/enrollment', methods=['POST'])
def enrollment():
    """Borrow or return materials from the front-desk form"""
    data = get_json_body()
    action = data.get('type')

    if not action:
        return api_error('Missing required fields', 400)

    if action == 'borrow':
        result = lending.borrow(get_db(), data)
        return api_response(result, 200 if result.get('replayed') else 201)

    if action == 'return':
        return api_response(lending.return_material(get_db(), data))

    return api_error('Invalid type. Use "borrow" or "return"', 400)


@app.route('/api/enrollments/<int:enrollment_id>', methods=['GET'])
@login_required
def get_enrollment(enrollment_id):
    """Get enrollment with its student, staff, records and images"""
    conn = get_db()
    enrollment_row = conn.execute('''
        SELECT e.*, s.id AS student_id, s.name AS student_name, s.email AS student_email,
               u.full_name AS sales_staff_name
        FROM enrollments e
        LEFT JOIN students s ON s.phone = e.student_phone
        LEFT JOIN users u ON u.id = e.sales_staff_id
        WHERE e.id = ?
    ''', (enrollment_id,)).fetchone()

    if enrollment_row is None:
        raise NotFoundError('Enrollment not found')

    records = conn.execute('''
        SELECT mr.*, m.title, m.type
        FROM material_records mr
        JOIN materials m ON m.id = mr.material_id
        WHERE mr.enrollment_id = ?
        ORDER BY mr.id
    ''', (enrollment_id,)).fetchall()
    images = conn.execute('''
        SELECT id, storage_path, file_name, file_size FROM enrollment_images
        WHERE enrollment_id = ? ORDER BY id
    ''', (enrollment_id,)).fetchall()

    result = dict(enrollment_row)
    result['records'] = [
        dict(row, is_overdue=lending.is_overdue(row['status'], enrollment_row['due_date']))
        for row in records
    ]
    result['images'] = [dict(row) for row in images]
    return api_response({'enrollment': result})


@app.route('/api/enrollments/<int:enrollment_id>', methods=['PATCH'])
@login_required
def patch_enrollment(enrollment_id):
    """Update notes, due_date or erp_updated only"""
    update = lending.EnrollmentUpdate.from_json(get_json_body())
    return api_response({'enrollment': update.apply(get_db(), enrollment_id)})


@app.route('/api/enrollment-images', methods=['GET'])
def get_enrollment_images():
    """Get images registered for an enrollment"""
    enrollment_id = request.args.get('enrollment_id', '').strip()
    if not enrollment_id:
        return api_error('enrollment_id is required', 400)

    images = get_db().execute('''
        SELECT id, storage_path, file_name, file_size FROM enrollment_images
        WHERE enrollment_id = ? ORDER BY id
    ''', (lending.parse_id(enrollment_id, 'enrollment_id'),)).fetchall()
    return api_response([dict(row) for row in images])


@app.route('/api/enrollment-images', methods=['POST'])
def register_enrollment_images():
    """Register uploaded image paths against their enrollment"""
    records = request.get_json(silent=True)
    if not isinstance(records, list) or not records:
        return api_error('Records are required', 400)

    conn = get_db()
    rows = []
    for record in records:
        if not isinstance(record, dict) or not record.get('enrollment_id') or not record.get('storage_path'):
            return api_error('Each record needs enrollment_id and storage_path', 400)
        enrollment_id = lending.parse_id(record['enrollment_id'], 'enrollment_id')
        path = storage.validate_object_path(record['storage_path'])

        if conn.execute('SELECT id FROM enrollments WHERE id = ?', (enrollment_id,)).fetchone() is None:
            raise NotFoundError('Enrollment not found')
        if not storage.object_exists(app.config['UPLOAD_FOLDER'], path):
            raise ValidationError(f'File not uploaded: {path}')

        file_size = record.get('file_size')
        if file_size is not None:
            file_size = lending.parse_count(file_size, 'file_size')

        rows.append((enrollment_id, path, lending.clean_text(record.get('file_name')), file_size))

    try:
        conn.executemany('''
            INSERT INTO enrollment_images (enrollment_id, storage_path, file_name, file_size)
            VALUES (?, ?, ?, ?)
        ''', rows)
        conn.commit()
    except sqlite3.IntegrityError:
        raise ValidationError('Image already registered')

    placeholders = ', '.join('?' * len(rows))
    images = conn.execute(
        f'SELECT * FROM enrollment_images WHERE storage_path IN ({placeholders}) ORDER BY id',
        [row[1] for row in rows]
    ).fetchall()
    return api_response([dict(row) for row in images], 201)


# ==================== MATERIAL RECORDS ROUTES ====================

def material_records_filter(args):
    """WHERE clause for status/date filters shared by list and export"""
    status = args.get('status', '').strip()
    date_from = args.get('date_from', '').strip()
    date_to = args.get('date_to', '').strip()

    where = ' WHERE 1=1'
    params = []

    if status == 'overdue':
        where += " AND (mr.status = 'overdue' OR (mr.status = 'borrowed' AND e.due_date < ?))"
        params.append(lending.today().isoformat())
    elif status and status != 'all':
        where += ' AND mr.status = ?'
        params.append(status)

    if date_from:
        where += ' AND e.issued_date >= ?'
        params.append(lending.parse_date(date_from, 'date_from'))

    if date_to:
        where += ' AND e.issued_date <= ?'
        params.append(lending.parse_date(date_to, 'date_to'))

    return where, params


MATERIAL_RECORDS_QUERY = '''
    SELECT mr.*,
           m.title, m.author, m.level, m.type,
           e.issued_date, e.due_date, e.student_phone, e.notes, e.erp_updated,
           s.id AS student_id, s.name AS student_name, s.email AS student_email,
           u.id AS staff_id, u.full_name AS staff_name
    FROM material_records mr
    JOIN materials m ON m.id = mr.material_id
    JOIN enrollments e ON e.id = mr.enrollment_id
    LEFT JOIN students s ON s.phone = e.student_phone
    LEFT JOIN users u ON u.id = e.sales_staff_id
'''


def material_record_payload(row):
    return {
        'id': row['id'],
        'enrollment_id': row['enrollment_id'],
        'material_id': row['material_id'],
        'status': row['status'],
        'return_date': row['return_date'],
        'created_at': row['created_at'],
        'is_overdue': lending.is_overdue(row['status'], row['due_date']),
        'material': {
            'id': row['material_id'],
            'title': row['title'],
            'author': row['author'],
            'level': row['level'],
            'type': row['type'],
        },
        'enrollment': {
            'id': row['enrollment_id'],
            'issued_date': row['issued_date'],
            'due_date': row['due_date'],
            'student_phone': row['student_phone'],
            'notes': row['notes'],
            'erp_updated': bool(row['erp_updated']),
            'student': {'id': row['student_id'], 'name': row['student_name'],
                        'email': row['student_email']},
            'sales_staff': {'id': row['staff_id'], 'full_name': row['staff_name']},
        },
    }


@app.route('/api/material-records', methods=['GET'])
@login_required
def get_material_records():
    """Get material records with status and issue date filters"""
    limit = request.args.get('limit', 200, type=int)
    offset = request.args.get('offset', 0, type=int)
    where, params = material_records_filter(request.args)

    conn = get_db()
    total = conn.execute('''
        SELECT COUNT(*) FROM material_records mr
        JOIN enrollments e ON e.id = mr.enrollment_id
    ''' + where, params).fetchone()[0]
    rows = conn.execute(
        MATERIAL_RECORDS_QUERY + where + ' ORDER BY mr.created_at DESC, mr.id DESC LIMIT ? OFFSET ?',
        params + [limit, offset]
    ).fetchall()

    return api_response({'records': [material_record_payload(row) for row in rows], 'total': total})


@app.route('/api/material-records', methods=['POST'])
@login_required
def add_material_record():
    """Add one material to an existing enrollment"""
    data = get_json_body()
    if not data.get('enrollment_id') or not data.get('material_id'):
        return api_error('Missing required fields: enrollment_id and material_id', 400)

    record = lending.add_material_record(get_db(), data['enrollment_id'], data['material_id'])
    return api_response(record, 201)


@app.route('/api/material-records/<int:record_id>', methods=['PUT'])
@login_required
def update_material_record(record_id):
    """Update material record status (return/lost/damaged/overdue)"""
    data = get_json_body()
    record = lending.update_record_status(
        get_db(), record_id, data.get('status'), data.get('return_date')
    )
    return api_response(record)


@app.route('/api/material-records/export', methods=['GET'])
@login_required
def export_material_records_excel():
    """Export filtered material records to Excel file"""
    where, params = material_records_filter(request.args)
    rows = get_db().execute(
        MATERIAL_RECORDS_QUERY + where + ' ORDER BY e.issued_date DESC, mr.id DESC', params
    ).fetchall()

    df = pd.DataFrame(
        [
            {
                'Issued': row['issued_date'],
                'Due': row['due_date'],
                'Student': row['student_name'],
                'Phone': row['student_phone'],
                'Material': row['title'],
                'Type': row['type'],
                'Status': 'overdue' if lending.is_overdue(row['status'], row['due_date']) else row['status'],
                'Returned': row['return_date'],
                'Sales staff': row['staff_name'],
                'ERP updated': 'yes' if row['erp_updated'] else 'no',
            }
            for row in rows
        ],
        columns=['Issued', 'Due', 'Student', 'Phone', 'Material', 'Type', 'Status',
                 'Returned', 'Sales staff', 'ERP updated']
    )

    filename = f'material_records_{datetime.now().strftime("%Y%m%d_%H%M%S")}.xlsx'
    return excel_response(df, 'Records', filename)


# ==================== EXPORT LOGS ROUTES ====================

@app.route('/api/export-logs', methods=['GET'])
@login_required
def get_export_logs():
    """Get class export history"""
    limit = request.args.get('limit', 200, type=int)
    date_from = request.args.get('date_from', '').strip()
    date_to = request.args.get('date_to', '').strip()

    query = '''
        SELECT l.*, m.title, m.author, m.level, m.type
        FROM export_logs l
        LEFT JOIN materials m ON m.id = l.material_id
        WHERE 1=1
    '''
    params = []

    if date_from:
        query += ' AND l.created_at >= ?'
        params.append(lending.parse_date(date_from, 'date_from'))

    if date_to:
        query += ' AND l.created_at <= ?'
        params.append(lending.parse_date(date_to, 'date_to') + ' 23:59:59')

    query += ' ORDER BY l.created_at DESC, l.id DESC LIMIT ?'
    params.append(limit)

    logs = []
    for row in get_db().execute(query, params).fetchall():
        log = {key: row[key] for key in ('id', 'material_id', 'material_title', 'quantity',
                                         'note', 'exported_by', 'created_at')}
        log['erp_updated'] = bool(row['erp_updated'])
        log['material'] = {'id': row['material_id'], 'title': row['title'], 'author': row['author'],
                           'level': row['level'], 'type': row['type']}
        logs.append(log)

    return api_response({'logs': logs})


@app.route('/api/export-logs', methods=['POST'])
@login_required
def create_export_log():
    """Issue copies to a class: deduct stock and log it"""
    data = get_json_body()
    if not data.get('exported_by'):
        data['exported_by'] = session.get('email')
    log = lending.export_to_class(get_db(), data)
    return api_response({'log': log}, 201)


@app.route('/api/export-logs/<int:log_id>', methods=['PATCH'])
@login_required
def patch_export_log(log_id):
    """Update note or erp_updated only"""
    update = lending.ExportLogUpdate.from_json(get_json_body())
    return api_response({'log': update.apply(get_db(), log_id)})


# ==================== STORAGE ROUTES ====================

@app.route('/api/storage/sign-upload', methods=['POST'])
def sign_upload():
    """Return a signed URL the browser can upload one image to"""
    data = get_json_body()
    path, token = storage.sign_upload(data.get('path'), app.config['SECRET_KEY'])
    return api_response({
        'signed_url': url_for('upload_to_signed_url', token=token, _external=True),
        'token': token,
        'path': path,
    })


@app.route('/api/storage/upload/<token>', methods=['PUT', 'POST'])
def upload_to_signed_url(token):
    """Receive the file for a signed path"""
    path = storage.verify_token(token, app.config['SECRET_KEY'], app.config['STORAGE_UPLOAD_TTL'])

    if 'file' in request.files:
        data = request.files['file'].read()
    else:
        data = request.get_data()

    size = storage.save_upload(app.config['UPLOAD_FOLDER'], path, data)
    return api_response({'path': path, 'size': size})


# ==================== USERS ROUTES ====================

USER_COLUMNS = 'id, full_name, email, role, is_active, created_at'


@app.route('/api/users', methods=['GET'])
@login_required
def get_users():
    """Get staff, sales by default"""
    role = request.args.get('role', 'sales').strip()
    search = request.args.get('search', '').strip().lower()
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    query = f'SELECT {USER_COLUMNS} FROM users WHERE 1=1'
    params = []

    if role and role != 'all':
        query += ' AND role = ?'
        params.append(role)

    if search:
        query += ' AND (LOWER(full_name) LIKE ? OR LOWER(email) LIKE ?)'
        params.extend([f'%{search}%', f'%{search}%'])

    query += ' ORDER BY full_name LIMIT ? OFFSET ?'
    params.extend([limit, offset])

    users = get_db().execute(query, params).fetchall()
    return api_response({'users': [dict(row) for row in users]})


@app.route('/api/users', methods=['POST'])
@login_required
def create_user():
    """Create new staff member"""
    data = get_json_body()
    full_name = lending.clean_text(data.get('full_name'))
    email = lending.clean_text(data.get('email'))
    role = data.get('role') or 'sales'

    if not full_name or not email:
        return api_error('Name and email are required', 400)

    if role not in lending.USER_ROLES:
        return api_error(f'role must be one of {", ".join(lending.USER_ROLES)}', 400)

    conn = get_db()
    try:
        cursor = conn.execute('''
            INSERT INTO users (full_name, email, role, is_active)
            VALUES (?, ?, ?, 1)
        ''', (full_name, email, role))
        conn.commit()
    except sqlite3.IntegrityError:
        raise ValidationError('Email already exists')

    user = conn.execute(f'SELECT {USER_COLUMNS} FROM users WHERE id = ?', (cursor.lastrowid,)).fetchone()
    return api_response(dict(user), 201)


@app.route('/api/users/<int:user_id>', methods=['GET'])
@login_required
def get_user(user_id):
    """Get staff member with their recent loans"""
    conn = get_db()
    user = conn.execute(f'SELECT {USER_COLUMNS} FROM users WHERE id = ?', (user_id,)).fetchone()

    if user is None:
        raise NotFoundError('User not found')

    records = conn.execute('''
        SELECT mr.id, mr.material_id, mr.status, e.issued_date, m.title, m.author
        FROM material_records mr
        JOIN enrollments e ON e.id = mr.enrollment_id
        JOIN materials m ON m.id = mr.material_id
        WHERE e.sales_staff_id = ?
        ORDER BY e.issued_date DESC, mr.id DESC
        LIMIT 20
    ''', (user_id,)).fetchall()

    result = dict(user)
    result['material_records'] = [dict(row) for row in records]
    return api_response(result)


@app.route('/api/users/<int:user_id>', methods=['PUT'])
@login_required
def update_user(user_id):
    """Update the supplied fields of a staff member"""
    update = lending.UserUpdate.from_json(get_json_body())
    try:
        update.apply(get_db(), user_id)
    except sqlite3.IntegrityError:
        raise ValidationError('Email already exists')
    user = get_db().execute(f'SELECT {USER_COLUMNS} FROM users WHERE id = ?', (user_id,)).fetchone()
    return api_response(dict(user))


@app.route('/api/users/sales', methods=['GET'])
def get_sales_staff():
    """Active sales staff for the enrollment form"""
    search = request.args.get('search', '').strip().lower()

    query = "SELECT id, full_name, email FROM users WHERE role = 'sales' AND is_active = 1"
    params = []

    if search:
        query += ' AND (LOWER(full_name) LIKE ? OR LOWER(email) LIKE ?)'
        params.extend([f'%{search}%', f'%{search}%'])

    query += ' ORDER BY full_name'

    staff = get_db().execute(query, params).fetchall()
    return api_response({'staff': [dict(row) for row in staff]})


# ==================== DASHBOARD ROUTES ====================

@app.route('/api/dashboard/stats', methods=['GET'])
@login_required
def get_stats():
    """Get lending statistics"""
    conn = get_db()
    today = lending.today().isoformat()

    total_materials = conn.execute('SELECT COUNT(*) FROM materials').fetchone()[0]
    available = conn.execute('SELECT COALESCE(SUM(quantity_available), 0) FROM materials').fetchone()[0]
    borrowed = conn.execute(
        "SELECT COUNT(*) FROM material_records WHERE status IN ('borrowed', 'overdue')"
    ).fetchone()[0]
    overdue = conn.execute('''
        SELECT COUNT(*) FROM material_records mr
        JOIN enrollments e ON e.id = mr.enrollment_id
        WHERE mr.status = 'overdue' OR (mr.status = 'borrowed' AND e.due_date < ?)
    ''', (today,)).fetchone()[0]
    total_students = conn.execute('SELECT COUNT(*) FROM students').fetchone()[0]
    out_of_stock = conn.execute('SELECT COUNT(*) FROM materials WHERE quantity_available = 0').fetchone()[0]

    recent = conn.execute(
        MATERIAL_RECORDS_QUERY + ' ORDER BY e.issued_date DESC, mr.id DESC LIMIT 5'
    ).fetchall()

    return api_response({
        'stats': {
            'total_materials': total_materials,
            'available_materials': available,
            'borrowed_materials': borrowed,
            'overdue_materials': overdue,
            'out_of_stock': out_of_stock,
            'total_students': total_students,
        },
        'recent_records': [material_record_payload(row) for row in recent],
    })


if __name__ == '__main__':
    init_db(seed=True)
    print("Material lending manager")
    print("=" * 50)
    print("Server running at: http://127.0.0.1:5000")
    print(f"Auth mode: {app.config['AUTH_MODE']}")
    print("=" * 50)
    app.run(debug=os.getenv('FLASK_DEBUG', '').lower() == 'true', host='0.0.0.0', port=5000)
