import check_materials


def test_clean_stock(app, make_material, capsys):
    make_material(title='Cambridge IELTS 18', quantity_total=5, quantity_available=2)

    assert check_materials.main(app.config['DATABASE']) == 0
    out = capsys.readouterr().out
    assert 'Cambridge IELTS 18' in out
    assert '2/5' in out
    assert 'TOTAL: 1 materials' in out


def test_broken_counters_fail(app, db, capsys):
    db.execute('PRAGMA ignore_check_constraints = ON')
    db.execute('''
        INSERT INTO materials (title, level, quantity_total, quantity_available)
        VALUES ('Over-returned', 'ielts', 2, 3)
    ''')
    db.commit()

    assert check_materials.main(app.config['DATABASE']) == 1
    assert 'available 3, total 2' in capsys.readouterr().out
