# -*- coding: utf-8 -*-
"""List stock per material and report counters out of range.

Usage: python check_materials.py [database]
"""
import os
import sqlite3
import sys

from dotenv import load_dotenv

from lending import audit_stock


def main(database=None):
    load_dotenv()
    database = database or os.getenv('DATABASE', 'lending.db')

    conn = sqlite3.connect(database)
    conn.row_factory = sqlite3.Row

    print("=== MATERIALS IN STOCK ===\n")
    materials = conn.execute('''
        SELECT id, title, type, quantity_available, quantity_total
        FROM materials ORDER BY type, title
    ''').fetchall()
    for m in materials:
        print(f"{m['id']:4d}. {m['title']:<50} [{m['type']:<5}] "
              f"{m['quantity_available']:>4}/{m['quantity_total']:<4}")

    print(f"\n=== TOTAL: {len(materials)} materials ===")

    violations = audit_stock(conn)
    conn.close()

    if violations:
        print(f"\n!!! {len(violations)} material(s) with invalid stock counters:")
        for v in violations:
            print(f"{v['id']:4d}. {v['title']} - available {v['quantity_available']}, "
                  f"total {v['quantity_total']}")
        return 1

    return 0


if __name__ == '__main__':
    sys.stdout.reconfigure(encoding='utf-8')
    sys.exit(main(sys.argv[1] if len(sys.argv) > 1 else None))
