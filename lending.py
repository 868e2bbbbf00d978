"""Borrow, return and class export workflows.

Every function takes an open sqlite3 connection (rows as sqlite3.Row) and
raises the error kinds from errors.py. Stock counters are only moved through
decrement_material_quantity / increment_material_quantity, which are single
conditional UPDATE statements, so two requests racing for the last copy of a
material cannot both win.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import date, timedelta

from errors import NotFoundError, UnavailableError, ValidationError

logger = logging.getLogger(__name__)

LOAN_PERIOD_DAYS = 30

MATERIAL_TYPES = ('book', 'gift', 'other')
USER_ROLES = ('manager', 'sales', 'admin')
RECORD_STATUSES = ('borrowed', 'returned', 'lost', 'damaged', 'overdue')
UPDATABLE_STATUSES = ('returned', 'lost', 'damaged', 'overdue')
OUTSTANDING_STATUSES = ('borrowed', 'overdue')
TERMINAL_STATUSES = ('returned', 'lost', 'damaged')


def today():
    return date.today()


@contextmanager
def transaction(conn):
    """Run the block inside BEGIN IMMEDIATE, rolling back on any error.

    Inside a transaction the caller already holds, the block becomes a
    savepoint: a failure undoes only the block, and committing stays with
    the caller.
    """
    if conn.in_transaction:
        conn.execute('SAVEPOINT lending')
        try:
            yield conn
        except BaseException:
            conn.execute('ROLLBACK TO SAVEPOINT lending')
            conn.execute('RELEASE SAVEPOINT lending')
            raise
        conn.execute('RELEASE SAVEPOINT lending')
        return

    conn.execute('BEGIN IMMEDIATE')
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


# ==================== INPUT HELPERS ====================

def clean_text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_id(value, name='id'):
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {name}')
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {name}')
    if parsed <= 0:
        raise ValidationError(f'Invalid {name}')
    return parsed


def parse_count(value, name, minimum=0):
    if isinstance(value, bool):
        raise ValidationError(f'{name} must be an integer')
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be an integer')
    if parsed < minimum:
        raise ValidationError(f'{name} must be at least {minimum}')
    return parsed


def parse_date(value, name):
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError:
        raise ValidationError(f'{name} must be a date in YYYY-MM-DD format')


# ==================== ATOMIC STOCK COUNTERS ====================

def decrement_material_quantity(conn, material_id, amount=1):
    """Take `amount` copies out of stock; False if not enough were available"""
    cursor = conn.execute('''
        UPDATE materials
        SET quantity_available = quantity_available - ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND quantity_available >= ?
    ''', (amount, material_id, amount))
    return cursor.rowcount == 1


def increment_material_quantity(conn, material_id, amount=1):
    """Put `amount` copies back; False if that would exceed quantity_total"""
    cursor = conn.execute('''
        UPDATE materials
        SET quantity_available = quantity_available + ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND quantity_available + ? <= quantity_total
    ''', (amount, material_id, amount))
    return cursor.rowcount == 1


def _restock(conn, material_id, record_id):
    if not increment_material_quantity(conn, material_id):
        logger.warning(
            'Material %s is already fully stocked; return of record %s not counted',
            material_id, record_id
        )


# ==================== BORROW ====================

# request key -> students column, for the fields a borrow may refresh
_STUDENT_FIELDS = (
    ('student_name', 'name'),
    ('email', 'email'),
    ('level', 'level'),
    ('purpose', 'student_type'),
    ('notes', 'notes'),
)


def upsert_student(conn, payload):
    """Create the student on first borrow, otherwise patch the supplied fields.

    Empty values in the payload never overwrite what is already stored.
    Returns (phone, created).
    """
    phone = clean_text(payload.get('phone'))
    supplied = {}
    for key, column in _STUDENT_FIELDS:
        value = clean_text(payload.get(key))
        if value:
            supplied[column] = value

    student = conn.execute('SELECT id FROM students WHERE phone = ?', (phone,)).fetchone()
    if student is None:
        conn.execute('''
            INSERT INTO students (name, email, phone, level, student_type, notes)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (
            supplied.get('name'),
            supplied.get('email'),
            phone,
            supplied.get('level'),
            supplied.get('student_type', 'new'),
            supplied.get('notes'),
        ))
        return phone, True

    if supplied:
        assignments = ', '.join(f'{column} = ?' for column in supplied)
        conn.execute(
            f'UPDATE students SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
            [*supplied.values(), student['id']]
        )
    return phone, False


def _enrollment_result(conn, enrollment, message):
    record_ids = [
        row['id'] for row in conn.execute(
            'SELECT id FROM material_records WHERE enrollment_id = ? ORDER BY id',
            (enrollment['id'],)
        )
    ]
    return {
        'enrollment_id': enrollment['id'],
        'student_phone': enrollment['student_phone'],
        'material_record_ids': record_ids,
        'message': message,
    }


def borrow(conn, payload):
    """Issue a batch of materials to the student identified by phone."""
    phone = clean_text(payload.get('phone'))
    material_ids = payload.get('material_ids') or []
    if not phone or not material_ids:
        raise ValidationError('Missing required fields')
    if not isinstance(material_ids, list):
        raise ValidationError('material_ids must be a list')
    if not clean_text(payload.get('student_name')) or not payload.get('sales_staff_id'):
        raise ValidationError('Missing required fields for borrowing')

    material_ids = [parse_id(value, 'material id') for value in material_ids]
    if len(set(material_ids)) != len(material_ids):
        raise ValidationError('The same material was selected more than once')
    sales_staff_id = parse_id(payload.get('sales_staff_id'), 'sales_staff_id')
    request_id = clean_text(payload.get('request_id'))
    notes = clean_text(payload.get('notes'))

    with transaction(conn):
        if request_id:
            existing = conn.execute(
                'SELECT * FROM enrollments WHERE request_id = ?', (request_id,)
            ).fetchone()
            if existing is not None:
                logger.info('Borrow request %s already recorded as enrollment %s',
                            request_id, existing['id'])
                result = _enrollment_result(conn, existing, 'Borrowing already recorded')
                result['replayed'] = True
                return result

        staff = conn.execute('SELECT id FROM users WHERE id = ?', (sales_staff_id,)).fetchone()
        if staff is None:
            raise NotFoundError('Sales staff not found')

        student_phone, created = upsert_student(conn, payload)

        placeholders = ', '.join('?' * len(material_ids))
        rows = conn.execute(
            f'SELECT id, title, quantity_available FROM materials WHERE id IN ({placeholders})',
            material_ids
        ).fetchall()
        found = {row['id']: row for row in rows}

        missing = [str(material_id) for material_id in material_ids if material_id not in found]
        if missing:
            raise NotFoundError(f'Materials not found: {", ".join(missing)}')

        unavailable = [
            found[material_id]['title'] for material_id in material_ids
            if found[material_id]['quantity_available'] <= 0
        ]
        if unavailable:
            raise UnavailableError(f'Materials not available: {", ".join(unavailable)}')

        issued = today()
        cursor = conn.execute('''
            INSERT INTO enrollments (student_phone, sales_staff_id, issued_date, due_date, notes, request_id)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (
            student_phone,
            sales_staff_id,
            issued.isoformat(),
            (issued + timedelta(days=LOAN_PERIOD_DAYS)).isoformat(),
            notes,
            request_id,
        ))
        enrollment_id = cursor.lastrowid

        record_ids = []
        for material_id in material_ids:
            cursor = conn.execute('''
                INSERT INTO material_records (enrollment_id, material_id, status)
                VALUES (?, ?, 'borrowed')
            ''', (enrollment_id, material_id))
            record_ids.append(cursor.lastrowid)
            if not decrement_material_quantity(conn, material_id):
                raise UnavailableError(
                    f'Material "{found[material_id]["title"]}" is no longer available'
                )

    logger.info('Enrollment %s: %d material(s) issued to %s by staff %s',
                enrollment_id, len(record_ids), student_phone, sales_staff_id)
    return {
        'enrollment_id': enrollment_id,
        'student_phone': student_phone,
        'material_record_ids': record_ids,
        'message': 'Student enrolled and materials borrowed!' if created
                   else 'Materials borrowed successfully!',
    }


# ==================== RETURN ====================

def return_material(conn, payload):
    """Close the oldest outstanding loan of a material for a phone number."""
    phone = clean_text(payload.get('phone'))
    if not phone or not payload.get('material_id'):
        raise ValidationError('Missing required fields')
    material_id = parse_id(payload.get('material_id'), 'material_id')

    with transaction(conn):
        enrollment = conn.execute(
            'SELECT id FROM enrollments WHERE student_phone = ? LIMIT 1', (phone,)
        ).fetchone()
        if enrollment is None:
            raise NotFoundError('No enrollments found for this phone')

        record = conn.execute(f'''
            SELECT mr.id, mr.enrollment_id
            FROM material_records mr
            JOIN enrollments e ON e.id = mr.enrollment_id
            WHERE e.student_phone = ?
              AND mr.material_id = ?
              AND mr.status IN ({', '.join('?' * len(OUTSTANDING_STATUSES))})
            ORDER BY e.issued_date, mr.id
            LIMIT 1
        ''', (phone, material_id, *OUTSTANDING_STATUSES)).fetchone()
        if record is None:
            raise NotFoundError('No active borrowing found for this material and phone')

        conn.execute('''
            UPDATE material_records SET status = 'returned', return_date = ?
            WHERE id = ?
        ''', (today().isoformat(), record['id']))
        _restock(conn, material_id, record['id'])

    logger.info('Material %s returned by %s (record %s)', material_id, phone, record['id'])
    return {
        'material_record_id': record['id'],
        'enrollment_id': record['enrollment_id'],
        'message': 'Material returned successfully!',
    }


# ==================== MATERIAL RECORDS ====================

def update_record_status(conn, record_id, status, return_date=None):
    """Move a loan to returned/lost/damaged/overdue."""
    if status not in UPDATABLE_STATUSES:
        raise ValidationError('Invalid status')
    if status == 'overdue':
        return_date = None
    elif return_date:
        return_date = parse_date(return_date, 'return_date')
    else:
        return_date = today().isoformat()

    with transaction(conn):
        record = conn.execute(
            'SELECT * FROM material_records WHERE id = ?', (record_id,)
        ).fetchone()
        if record is None:
            raise NotFoundError('Material record not found')
        if record['status'] in TERMINAL_STATUSES:
            raise ValidationError(f'Material record is already {record["status"]}')

        conn.execute(
            'UPDATE material_records SET status = ?, return_date = ? WHERE id = ?',
            (status, return_date, record_id)
        )
        if status == 'returned':
            _restock(conn, record['material_id'], record_id)
        updated = conn.execute(
            'SELECT * FROM material_records WHERE id = ?', (record_id,)
        ).fetchone()

    logger.info('Material record %s: %s -> %s', record_id, record['status'], status)
    return dict(updated)


def add_material_record(conn, enrollment_id, material_id):
    """Add one more item to an existing enrollment."""
    enrollment_id = parse_id(enrollment_id, 'enrollment_id')
    material_id = parse_id(material_id, 'material_id')

    with transaction(conn):
        enrollment = conn.execute(
            'SELECT id FROM enrollments WHERE id = ?', (enrollment_id,)
        ).fetchone()
        if enrollment is None:
            raise NotFoundError('Enrollment not found')
        material = conn.execute(
            'SELECT id, title FROM materials WHERE id = ?', (material_id,)
        ).fetchone()
        if material is None:
            raise NotFoundError('Material not found')
        if not decrement_material_quantity(conn, material_id):
            raise UnavailableError(f'Material "{material["title"]}" is not available')
        cursor = conn.execute('''
            INSERT INTO material_records (enrollment_id, material_id, status)
            VALUES (?, ?, 'borrowed')
        ''', (enrollment_id, material_id))
        record = conn.execute(
            'SELECT * FROM material_records WHERE id = ?', (cursor.lastrowid,)
        ).fetchone()

    return dict(record)


def outstanding_loans(conn, phone):
    """Loans still held by the student with this phone, oldest first"""
    rows = conn.execute(f'''
        SELECT mr.id, mr.material_id, mr.enrollment_id, mr.status,
               e.issued_date, e.due_date,
               m.title, m.author, m.level, m.type
        FROM material_records mr
        JOIN enrollments e ON e.id = mr.enrollment_id
        JOIN materials m ON m.id = mr.material_id
        WHERE e.student_phone = ?
          AND mr.status IN ({', '.join('?' * len(OUTSTANDING_STATUSES))})
        ORDER BY e.issued_date, mr.id
    ''', (phone, *OUTSTANDING_STATUSES)).fetchall()
    return [
        {
            'id': row['id'],
            'material_id': row['material_id'],
            'enrollment_id': row['enrollment_id'],
            'status': row['status'],
            'issued_date': row['issued_date'],
            'due_date': row['due_date'],
            'is_overdue': is_overdue(row['status'], row['due_date']),
            'material': {
                'id': row['material_id'],
                'title': row['title'],
                'author': row['author'],
                'level': row['level'],
                'type': row['type'],
            },
        }
        for row in rows
    ]


def is_overdue(status, due_date, on=None):
    """Overdue is derived on read: explicitly flagged, or borrowed past due"""
    if status == 'overdue':
        return True
    if status != 'borrowed' or not due_date:
        return False
    return due_date < (on or today()).isoformat()


# ==================== CLASS EXPORT ====================

def export_to_class(conn, payload):
    """Issue copies of a material to a whole class and log it."""
    if not payload.get('material_id') or not payload.get('quantity'):
        raise ValidationError('Missing required fields')
    material_id = parse_id(payload.get('material_id'), 'material_id')
    quantity = parse_count(payload.get('quantity'), 'quantity', minimum=1)

    with transaction(conn):
        material = conn.execute(
            'SELECT id, title, quantity_available FROM materials WHERE id = ?', (material_id,)
        ).fetchone()
        if material is None:
            raise NotFoundError('Material not found')
        if not decrement_material_quantity(conn, material_id, quantity):
            raise UnavailableError(
                f'"{material["title"]}" only has {material["quantity_available"]} left'
            )
        cursor = conn.execute('''
            INSERT INTO export_logs (material_id, material_title, quantity, note, exported_by)
            VALUES (?, ?, ?, ?, ?)
        ''', (
            material_id,
            clean_text(payload.get('material_title')) or material['title'],
            quantity,
            clean_text(payload.get('note')),
            clean_text(payload.get('exported_by')),
        ))
        log = conn.execute('SELECT * FROM export_logs WHERE id = ?', (cursor.lastrowid,)).fetchone()

    logger.info('Exported %d x material %s to class', quantity, material_id)
    return dict(log)


def audit_stock(conn):
    """Materials whose counters break 0 <= quantity_available <= quantity_total"""
    rows = conn.execute('''
        SELECT id, title, quantity_total, quantity_available
        FROM materials
        WHERE quantity_available < 0 OR quantity_available > quantity_total
        ORDER BY id
    ''').fetchall()
    return [dict(row) for row in rows]


# ==================== PARTIAL UPDATES ====================

UNSET = object()


class PartialUpdate:
    """Named optional fields taken from a request body.

    Subclasses are dataclasses whose fields are the allow-list; anything else
    in the body is ignored, and a body with none of them is rejected.
    """
    table = None
    not_found = 'Not found'
    touch_updated_at = True

    @classmethod
    def from_json(cls, data):
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')
        update = cls(**{f.name: data[f.name] for f in fields(cls) if f.name in data})
        if not update.changes():
            raise ValidationError('No valid fields to update')
        update.validate()
        return update

    def changes(self):
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def validate(self):
        pass

    def check_row(self, current):
        pass

    def apply(self, conn, row_id):
        current = conn.execute(f'SELECT * FROM {self.table} WHERE id = ?', (row_id,)).fetchone()
        if current is None:
            raise NotFoundError(self.not_found)
        self.check_row(current)

        changes = self.changes()
        assignments = [f'{name} = ?' for name in changes]
        if self.touch_updated_at:
            assignments.append('updated_at = CURRENT_TIMESTAMP')
        conn.execute(
            f'UPDATE {self.table} SET {", ".join(assignments)} WHERE id = ?',
            [*changes.values(), row_id]
        )
        conn.commit()
        return dict(conn.execute(f'SELECT * FROM {self.table} WHERE id = ?', (row_id,)).fetchone())

    def _check_text(self, *names):
        for name in names:
            value = getattr(self, name)
            if value is not UNSET and value is not None and not isinstance(value, str):
                raise ValidationError(f'{name} must be a string')

    def _require_text(self, *names):
        self._check_text(*names)
        for name in names:
            value = getattr(self, name)
            if value is not UNSET:
                value = clean_text(value)
                if not value:
                    raise ValidationError(f'{name} cannot be empty')
                setattr(self, name, value)

    def _as_flag(self, name):
        value = getattr(self, name)
        if value is not UNSET:
            if not isinstance(value, (bool, int)):
                raise ValidationError(f'{name} must be true or false')
            setattr(self, name, int(bool(value)))


@dataclass
class MaterialUpdate(PartialUpdate):
    table = 'materials'
    not_found = 'Material not found'

    isbn: object = UNSET
    title: object = UNSET
    author: object = UNSET
    level: object = UNSET
    type: object = UNSET
    quantity_total: object = UNSET
    quantity_available: object = UNSET
    condition: object = UNSET

    def validate(self):
        self._require_text('title', 'level')
        self._check_text('isbn', 'author', 'condition')
        if self.type is not UNSET and self.type not in MATERIAL_TYPES:
            raise ValidationError(f'type must be one of {", ".join(MATERIAL_TYPES)}')
        for name in ('quantity_total', 'quantity_available'):
            value = getattr(self, name)
            if value is not UNSET:
                setattr(self, name, parse_count(value, name))

    def check_row(self, current):
        total = current['quantity_total'] if self.quantity_total is UNSET else self.quantity_total
        available = (current['quantity_available'] if self.quantity_available is UNSET
                     else self.quantity_available)
        if available > total:
            raise ValidationError('quantity_available cannot exceed quantity_total')


@dataclass
class StudentUpdate(PartialUpdate):
    table = 'students'
    not_found = 'Student not found'

    name: object = UNSET
    email: object = UNSET
    phone: object = UNSET
    level: object = UNSET
    student_type: object = UNSET
    notes: object = UNSET

    def validate(self):
        self._require_text('name', 'phone')
        self._check_text('email', 'level', 'student_type', 'notes')


@dataclass
class UserUpdate(PartialUpdate):
    table = 'users'
    not_found = 'User not found'

    full_name: object = UNSET
    email: object = UNSET
    role: object = UNSET
    is_active: object = UNSET

    def validate(self):
        self._require_text('full_name', 'email')
        if self.role is not UNSET and self.role not in USER_ROLES:
            raise ValidationError(f'role must be one of {", ".join(USER_ROLES)}')
        self._as_flag('is_active')


@dataclass
class EnrollmentUpdate(PartialUpdate):
    table = 'enrollments'
    not_found = 'Enrollment not found'
    touch_updated_at = False

    notes: object = UNSET
    due_date: object = UNSET
    erp_updated: object = UNSET

    def validate(self):
        self._check_text('notes')
        if self.due_date is not UNSET:
            self.due_date = parse_date(self.due_date, 'due_date')
        self._as_flag('erp_updated')


@dataclass
class ExportLogUpdate(PartialUpdate):
    table = 'export_logs'
    not_found = 'Export log not found'
    touch_updated_at = False

    note: object = UNSET
    erp_updated: object = UNSET

    def validate(self):
        self._check_text('note')
        self._as_flag('erp_updated')
