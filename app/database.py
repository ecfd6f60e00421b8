import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine, insert
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL, MIGRATE_DB, SQL_ECHO

logger = logging.getLogger(__name__)

engine_kwargs = {
    "echo": SQL_ECHO,
    "pool_pre_ping": True,
}

if DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(DATABASE_URL, **engine_kwargs)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def insert_ignore(db: Session, model, values: dict) -> bool:
    """
    Insert a row unless it collides with a unique constraint.

    Returns True when the row was inserted. The collision check happens in
    the database, so concurrent callers cannot both insert the same key.
    """
    dialect = db.get_bind().dialect.name
    table = model.__table__

    if dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing()
    elif dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing()
    elif dialect in ("mysql", "mariadb"):
        stmt = mysql.insert(table).values(**values).prefix_with("IGNORE")
    else:
        stmt = insert(table).values(**values)

    result = db.execute(stmt)
    return result.rowcount == 1


# Columns added to existing MySQL tables after their first release.
# table -> [(column, ddl)]
MYSQL_COLUMN_MIGRATIONS = {
    "users": [
        ("phone", "VARCHAR(20) DEFAULT NULL"),
        ("is_email_verified", "BOOLEAN NOT NULL DEFAULT FALSE"),
        ("last_login_at", "DATETIME DEFAULT NULL"),
    ],
    "payments": [
        ("admin_note", "TEXT DEFAULT NULL"),
        ("processed_at", "DATETIME DEFAULT NULL"),
        ("ip_address", "VARCHAR(64) DEFAULT NULL"),
        ("user_agent", "VARCHAR(255) DEFAULT NULL"),
    ],
    "notifications": [
        ("expires_at", "DATETIME DEFAULT NULL"),
        ("email_error", "VARCHAR(500) DEFAULT NULL"),
    ],
}

MYSQL_BACKFILLS = [
    "UPDATE users SET role = 'student' WHERE role IS NULL OR role = '' OR role = 'user'",
    "UPDATE payments SET status = 'pending' WHERE status IS NULL OR status = ''",
]


def should_run_mysql_migrations() -> bool:
    return MIGRATE_DB and DATABASE_URL.startswith("mysql")


def migrate_mysql_database(database_url: str = DATABASE_URL):
    import pymysql

    url = make_url(database_url)
    database = url.database

    if not database:
        logger.warning("Skipping migration: DATABASE_URL missing database name")
        return []

    applied = []
    connection = pymysql.connect(
        host=url.host or "localhost",
        user=url.username or "root",
        password=url.password or "",
        port=url.port or 3306,
        database=database,
    )
    try:
        cursor = connection.cursor()

        for table, columns in MYSQL_COLUMN_MIGRATIONS.items():
            cursor.execute("SHOW TABLES LIKE %s", (table,))
            if not cursor.fetchone():
                continue

            cursor.execute(f"SHOW COLUMNS FROM {table}")
            existing_columns = [col[0] for col in cursor.fetchall()]

            for column, ddl in columns:
                if column not in existing_columns:
                    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
                    applied.append(f"{table}.{column}")
                    logger.info("Added '%s' column to %s table", column, table)

        for statement in MYSQL_BACKFILLS:
            cursor.execute(statement)

        connection.commit()
        cursor.close()
    finally:
        connection.close()

    return applied


def init_db():
    if should_run_mysql_migrations():
        try:
            migrate_mysql_database()
        except Exception:
            logger.exception("MySQL migration failed")

    Base.metadata.create_all(bind=engine, checkfirst=True)
