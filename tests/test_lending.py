from datetime import date

import pytest

import lending
from errors import UnavailableError, ValidationError


def test_counters_stay_within_bounds(db, make_material, stock):
    material_id = make_material(quantity_total=3, quantity_available=1)

    assert lending.decrement_material_quantity(db, material_id, 2) is False
    assert lending.decrement_material_quantity(db, material_id) is True
    assert lending.decrement_material_quantity(db, material_id) is False
    db.commit()
    assert stock(material_id) == 0

    assert lending.increment_material_quantity(db, material_id, 3) is True
    assert lending.increment_material_quantity(db, material_id) is False
    db.commit()
    assert stock(material_id) == 3


def test_is_overdue():
    on = date(2024, 6, 1)
    assert lending.is_overdue('borrowed', '2024-05-31', on=on) is True
    assert lending.is_overdue('borrowed', '2024-06-01', on=on) is False
    assert lending.is_overdue('overdue', '2024-07-01', on=on) is True
    assert lending.is_overdue('returned', '2024-01-01', on=on) is False


def test_audit_stock_reports_broken_counters(db, make_material):
    make_material(title='Fine', quantity_total=2)
    db.execute('PRAGMA ignore_check_constraints = ON')
    db.execute('''
        INSERT INTO materials (title, level, quantity_total, quantity_available)
        VALUES ('Broken', 'ielts', 2, 5)
    ''')
    db.commit()

    assert [row['title'] for row in lending.audit_stock(db)] == ['Broken']


def test_partial_update_whitelist():
    update = lending.MaterialUpdate.from_json({'title': ' New ', 'quantity_total': '4', 'id': 3})

    assert update.changes() == {'title': 'New', 'quantity_total': 4}

    with pytest.raises(ValidationError, match='No valid fields to update'):
        lending.MaterialUpdate.from_json({'id': 3})
    with pytest.raises(ValidationError, match='Request body must be a JSON object'):
        lending.StudentUpdate.from_json(['name'])
    with pytest.raises(ValidationError):
        lending.UserUpdate.from_json({'role': 'owner'})


def test_failed_borrow_rolls_back(db, make_material, make_user):
    material_id = make_material(quantity_total=1, quantity_available=0)

    with pytest.raises(UnavailableError):
        lending.borrow(db, {
            'phone': '0966666666', 'student_name': 'A',
            'sales_staff_id': make_user(), 'material_ids': [material_id],
        })

    assert db.in_transaction is False
    assert db.execute('SELECT COUNT(*) FROM students').fetchone()[0] == 0


def test_failed_borrow_leaves_callers_transaction_open(db, make_material, make_user):
    material_id = make_material(quantity_total=1, quantity_available=0)
    staff = make_user()
    db.execute("INSERT INTO students (name, phone) VALUES ('Pending', '0977777777')")
    assert db.in_transaction

    with pytest.raises(UnavailableError):
        lending.borrow(db, {
            'phone': '0966666666', 'student_name': 'A',
            'sales_staff_id': staff, 'material_ids': [material_id],
        })

    assert db.in_transaction
    phones = [row[0] for row in db.execute('SELECT phone FROM students')]
    assert phones == ['0977777777']

    db.rollback()
    assert db.execute('SELECT COUNT(*) FROM students').fetchone()[0] == 0


def test_borrow_inside_callers_transaction_is_left_to_caller(db, make_material, make_user, stock):
    material_id = make_material(quantity_total=2)
    staff = make_user()
    db.execute("INSERT INTO students (name, phone) VALUES ('Pending', '0977777777')")

    lending.borrow(db, {
        'phone': '0966666666', 'student_name': 'A',
        'sales_staff_id': staff, 'material_ids': [material_id],
    })

    assert db.in_transaction
    db.rollback()
    assert db.execute('SELECT COUNT(*) FROM students').fetchone()[0] == 0
    assert stock(material_id) == 2
