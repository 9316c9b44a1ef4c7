from tally.db import DEFAULT_CATEGORIES, init_db


def test_init_db_creates_tables(db):
    tables = {r[0] for r in db.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    assert {"categories", "imports", "transactions", "invoices", "transaction_invoices"} <= tables


def test_default_categories_seeded(db):
    count = db.execute("SELECT count(*) FROM categories").fetchone()[0]
    assert count == len(DEFAULT_CATEGORIES)
    row = db.execute("SELECT * FROM categories WHERE slug = 'salaires'").fetchone()
    assert row["category_type"] == "income"


def test_init_db_is_idempotent(db):
    init_db(db)
    count = db.execute("SELECT count(*) FROM categories").fetchone()[0]
    assert count == len(DEFAULT_CATEGORIES)


def test_import_status_is_constrained(db):
    import sqlite3

    import pytest

    with pytest.raises(sqlite3.IntegrityError):
        db.execute(
            "INSERT INTO imports (owner_id, file_name, file_type, status) VALUES (1, 'a.csv', 'csv', 'bogus')"
        )
