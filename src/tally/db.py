import json
import sqlite3
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    category_type TEXT NOT NULL DEFAULT 'expense',
    keywords TEXT,
    owner_id INTEGER,
    sort_order INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS imports (
    id INTEGER PRIMARY KEY,
    owner_id INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    file_type TEXT NOT NULL,
    file_size INTEGER,
    checksum TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
    total_rows INTEGER NOT NULL DEFAULT 0,
    processed_rows INTEGER NOT NULL DEFAULT 0,
    successful_rows INTEGER NOT NULL DEFAULT 0,
    failed_rows INTEGER NOT NULL DEFAULT 0,
    skipped_rows INTEGER NOT NULL DEFAULT 0,
    preview_data TEXT,
    error_log TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY,
    owner_id INTEGER NOT NULL,
    date TEXT NOT NULL,
    description TEXT NOT NULL,
    amount TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('expense', 'income')),
    category_id INTEGER,
    source TEXT,
    operation_type TEXT,
    reference TEXT,
    import_id INTEGER,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'deleted')),
    metadata TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    FOREIGN KEY (category_id) REFERENCES categories(id),
    FOREIGN KEY (import_id) REFERENCES imports(id)
);

CREATE INDEX IF NOT EXISTS idx_transactions_import ON transactions(import_id);

CREATE TABLE IF NOT EXISTS invoices (
    id INTEGER PRIMARY KEY,
    owner_id INTEGER NOT NULL,
    document_id TEXT NOT NULL,
    file_name TEXT NOT NULL,
    file_url TEXT,
    file_size INTEGER,
    extraction_status TEXT NOT NULL DEFAULT 'pending',
    extraction_confidence REAL,
    invoice_number TEXT,
    invoice_date TEXT,
    invoice_amount TEXT,
    vendor TEXT,
    notes TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE (owner_id, document_id)
);

CREATE TABLE IF NOT EXISTS transaction_invoices (
    id INTEGER PRIMARY KEY,
    transaction_id INTEGER NOT NULL,
    invoice_id INTEGER NOT NULL,
    match_type TEXT NOT NULL DEFAULT 'manual' CHECK (match_type IN ('manual', 'automatic', 'suggested')),
    match_confidence REAL,
    verified_by INTEGER,
    verified_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE (transaction_id, invoice_id),
    FOREIGN KEY (transaction_id) REFERENCES transactions(id),
    FOREIGN KEY (invoice_id) REFERENCES invoices(id)
);
"""

DEFAULT_CATEGORIES = [
    # (name, slug, category_type)
    ("Salaires", "salaires", "income"),
    ("Alimentation", "alimentation", "expense"),
    ("Transport", "transport", "expense"),
    ("Logement", "logement", "expense"),
    ("Santé", "sante", "expense"),
    ("Assurances", "assurances", "expense"),
    ("Energie", "energie", "expense"),
    ("Télécommunications", "telecommunications", "expense"),
    ("Banque/Frais", "banque-frais", "expense"),
    ("Impôts/Taxes", "impots-taxes", "expense"),
    ("Shopping/Achats", "shopping-achats", "expense"),
    ("Loisirs", "loisirs", "expense"),
    ("Éducation", "education", "expense"),
    ("Épargne/Investissement", "epargne-investissement", "expense"),
    ("Retraits espèces", "retraits-especes", "expense"),
    ("Chèques", "cheques", "expense"),
    ("Prélèvements", "prelevements", "expense"),
    ("Virements", "virements", "expense"),
    ("Autres", "autres", "expense"),
]


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and foreign keys enabled."""
    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and seed default categories. Idempotent."""
    conn.executescript(SCHEMA)

    cursor = conn.execute("SELECT count(*) FROM categories")
    if cursor.fetchone()[0] == 0:
        conn.executemany(
            "INSERT INTO categories (name, slug, category_type, keywords, sort_order) VALUES (?, ?, ?, ?, ?)",
            [
                (name, slug, category_type, json.dumps([]), order)
                for order, (name, slug, category_type) in enumerate(DEFAULT_CATEGORIES)
            ],
        )
        conn.commit()
