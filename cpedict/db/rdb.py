#!/usr/bin/env python3
"""
Driver relacional (SQLite, MySQL, PostgreSQL) baseado em SQLAlchemy.

Características:
- Um engine com pool de conexões compartilhado por todos os workers
- Upsert por dialeto (ON CONFLICT / ON DUPLICATE KEY UPDATE)
- Cada chamada de insert_cpes roda em uma única transação
- SQLite em modo WAL com BEGIN IMMEDIATE para serializar escritores
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, delete, event, func, inspect, select, text
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from cpedict.models import (
    Base,
    CategorizedCpe,
    CategorizedCpeRecord,
    FetchMeta,
    FetchMetaRecord,
    FetchType,
    VendorProduct,
    VendorProductRecord,
)

from .base import DB, DIALECT_MYSQL, DIALECT_POSTGRESQL, DIALECT_SQLITE3, StoreOption
from .errors import (
    InsertError,
    LockedError,
    MigrationError,
    StoreConnectionError,
    StoreLookupError,
)

logger = logging.getLogger(__name__)

# Tabelas presentes em bases do layout V1, que não tinham fetch_meta
LEGACY_TABLES = frozenset({'cpes', 'categorized_cpes'})

# Driver DBAPI padrão quando o usuário informa apenas o DSN
DEFAULT_URL_SCHEMES = {
    DIALECT_MYSQL: 'mysql+pymysql',
    DIALECT_POSTGRESQL: 'postgresql+psycopg2',
}

FETCH_META_ID = 1


def build_database_url(db_type: str, db_path: str) -> str:
    """Converte (dialeto, caminho/DSN) em uma URL do SQLAlchemy."""
    if db_type == DIALECT_SQLITE3:
        return f"sqlite:///{db_path}"
    if db_path.startswith('postgres://'):
        db_path = 'postgresql://' + db_path[len('postgres://'):]
    if '://' in db_path:
        return db_path
    return f"{DEFAULT_URL_SCHEMES[db_type]}://{db_path}"


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _is_locked_error(error: OperationalError) -> bool:
    message = str(getattr(error, 'orig', error)).lower()
    return 'database is locked' in message or 'database table is locked' in message


class RDBDriver(DB):
    """Driver para bancos relacionais."""

    def __init__(self, name: str):
        self._name = name
        self.engine: Optional[Engine] = None
        self.Session: Optional[sessionmaker] = None

    def name(self) -> str:
        return self._name

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def open_db(self, db_type: str, db_path: str, debug_sql: bool, option: StoreOption) -> None:
        try:
            self.engine = self._create_engine(db_type, db_path, debug_sql, option)
            self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

            # Testar conexão; no SQLite o BEGIN IMMEDIATE falha se outro
            # processo mantém a base bloqueada.
            with self.engine.begin() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError as e:
            self.close_db()
            if db_type == DIALECT_SQLITE3 and _is_locked_error(e):
                raise LockedError(
                    f"Failed to open DB. Database {db_path} is locked by another process: {e}"
                ) from e
            raise StoreConnectionError(f"Failed to open DB. dbtype: {db_type}, dbpath: {db_path}, err: {e}") from e
        except (ArgumentError, SQLAlchemyError, KeyError) as e:
            self.close_db()
            raise StoreConnectionError(f"Failed to open DB. dbtype: {db_type}, dbpath: {db_path}, err: {e}") from e

        logger.info(f"Opened {db_type} database: {self.engine.url.render_as_string(hide_password=True)}")

    def _create_engine(self, db_type: str, db_path: str, debug_sql: bool, option: StoreOption) -> Engine:
        url = build_database_url(db_type, db_path)

        if db_type == DIALECT_SQLITE3:
            # :memory: usa SingletonThreadPool, que não aceita max_overflow
            pool_options = {}
            if db_path != ':memory:':
                pool_options = {'pool_size': option.pool_size, 'max_overflow': option.pool_size}
            engine = create_engine(
                url,
                echo=debug_sql,
                connect_args={'timeout': option.lock_timeout, 'check_same_thread': False},
                **pool_options,
            )
            busy_timeout_ms = int(option.lock_timeout * 1000)

            @event.listens_for(engine, "connect")
            def set_sqlite_pragmas(dbapi_connection, connection_record):
                # Desliga o controle de transação do pysqlite; o BEGIN é
                # emitido pelo listener abaixo.
                dbapi_connection.isolation_level = None
                cursor = dbapi_connection.cursor()
                cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA temp_store=MEMORY")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            @event.listens_for(engine, "begin")
            def begin_immediate(conn):
                conn.exec_driver_sql("BEGIN IMMEDIATE")

            return engine

        return create_engine(
            url,
            echo=debug_sql,
            pool_pre_ping=True,
            pool_size=option.pool_size,
            max_overflow=option.pool_size,
            pool_timeout=30,
            pool_recycle=1800,
        )

    def close_db(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.debug(f"Closed {self._name} database")
        self.engine = None
        self.Session = None

    def migrate_db(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
            self._check_columns()
        except SQLAlchemyError as e:
            raise MigrationError(f"Failed to migrate. err: {e}") from e
        logger.debug("Schema migration completed")

    def _check_columns(self) -> None:
        """Detecta tabelas alteradas manualmente que create_all não corrige."""
        inspector = inspect(self.engine)
        for table in Base.metadata.sorted_tables:
            existing = {c['name'] for c in inspector.get_columns(table.name)}
            missing = sorted({c.name for c in table.columns} - existing)
            if missing:
                raise MigrationError(
                    f"Failed to migrate. Table {table.name} is missing columns {missing}; "
                    "the schema was modified outside of cpedict."
                )

    def is_go_cpe_dict_model_v1(self) -> bool:
        try:
            tables = set(inspect(self.engine).get_table_names())
        except SQLAlchemyError as e:
            raise StoreLookupError(f"Failed to inspect tables. err: {e}") from e

        if FetchMetaRecord.__tablename__ in tables:
            return False
        return bool(tables & LEGACY_TABLES)

    # ------------------------------------------------------------------
    # FetchMeta
    # ------------------------------------------------------------------

    def get_fetch_meta(self) -> FetchMeta:
        try:
            with self.Session() as session:
                record = session.get(FetchMetaRecord, FETCH_META_ID)
        except SQLAlchemyError as e:
            raise StoreLookupError(f"Failed to get FetchMeta. err: {e}") from e

        if record is None:
            return FetchMeta()
        return FetchMeta(
            revision=record.revision,
            schema_version=record.schema_version,
            last_fetched_at=_to_utc(record.last_fetched_at),
        )

    def upsert_fetch_meta(self, fetch_meta: FetchMeta) -> None:
        # Linha única com PK fixa: duas inserções concorrentes conflitam em
        # vez de criar um segundo registro.
        try:
            with self.Session.begin() as session:
                record = session.get(FetchMetaRecord, FETCH_META_ID)
                if record is None:
                    record = FetchMetaRecord(id=FETCH_META_ID)
                    session.add(record)
                record.revision = fetch_meta.revision
                record.schema_version = fetch_meta.schema_version
                record.last_fetched_at = _to_naive_utc(fetch_meta.last_fetched_at)
        except SQLAlchemyError as e:
            raise InsertError(f"Failed to upsert FetchMeta. err: {e}") from e

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------

    def get_vendor_products(self) -> List[VendorProduct]:
        stmt = (
            select(VendorProductRecord.vendor, VendorProductRecord.product)
            .distinct()
            .order_by(VendorProductRecord.vendor, VendorProductRecord.product)
        )
        try:
            with self.Session() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StoreLookupError(f"Failed to get vendor products. err: {e}") from e
        return [VendorProduct(vendor=vendor, product=product) for vendor, product in rows]

    def get_cpes_by_vendor_product(self, vendor: str, product: str) -> Tuple[List[str], List[str]]:
        stmt = select(CategorizedCpeRecord.cpe_uri, CategorizedCpeRecord.cpe_fs).where(
            CategorizedCpeRecord.vendor == vendor,
            CategorizedCpeRecord.product == product,
        )
        try:
            with self.Session() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StoreLookupError(f"Failed to get CPEs by {vendor}#{product}. err: {e}") from e

        cpe22_names = sorted({cpe_uri for cpe_uri, _ in rows})
        cpe23_names = sorted({cpe_fs for _, cpe_fs in rows})
        return cpe22_names, cpe23_names

    def is_deprecated(self, cpe_name: str) -> bool:
        stmt = select(func.count(CategorizedCpeRecord.id)).where(
            (CategorizedCpeRecord.cpe_uri == cpe_name) | (CategorizedCpeRecord.cpe_fs == cpe_name),
            CategorizedCpeRecord.deprecated.is_(True),
        )
        try:
            with self.Session() as session:
                count = session.execute(stmt).scalar_one()
        except SQLAlchemyError as e:
            raise StoreLookupError(f"Failed to check deprecation of {cpe_name}. err: {e}") from e
        return count > 0

    # ------------------------------------------------------------------
    # Escrita
    # ------------------------------------------------------------------

    def insert_cpes(self, fetch_type: FetchType, cpes: Sequence[CategorizedCpe]) -> None:
        if not cpes:
            return

        fetch_type_value = FetchType(fetch_type).value

        # Deduplicar dentro do lote: o PostgreSQL rejeita ON CONFLICT DO
        # UPDATE que afeta a mesma linha duas vezes no mesmo comando.
        cpe_rows: Dict[Any, Dict[str, Any]] = {}
        for cpe in cpes:
            cpe_rows[cpe.cpe_uri] = {
                'fetch_type': fetch_type_value,
                'vendor': cpe.vendor,
                'product': cpe.product,
                'cpe_uri': cpe.cpe_uri,
                'cpe_fs': cpe.cpe_fs,
                'deprecated': cpe.deprecated,
            }
        vendor_products = list(dict.fromkeys((row['vendor'], row['product']) for row in cpe_rows.values()))
        vendor_product_rows = [{'vendor': vendor, 'product': product} for vendor, product in vendor_products]

        try:
            with self.Session.begin() as session:
                # Pares anteriores de entradas que mudaram de vendor/product
                previous_pairs = session.execute(
                    select(CategorizedCpeRecord.vendor, CategorizedCpeRecord.product)
                    .where(
                        CategorizedCpeRecord.fetch_type == fetch_type_value,
                        CategorizedCpeRecord.cpe_uri.in_(list(cpe_rows)),
                    )
                    .distinct()
                ).all()
                stale_pairs = {tuple(pair) for pair in previous_pairs} - set(vendor_products)

                session.execute(self._vendor_product_insert_stmt(), vendor_product_rows)
                session.execute(self._cpe_upsert_stmt(), list(cpe_rows.values()))
                self._prune_vendor_products(session, stale_pairs)
        except SQLAlchemyError as e:
            raise InsertError(f"Failed to insert {len(cpes)} CPEs. err: {e}") from e

    def _prune_vendor_products(self, session, pairs) -> None:
        """Remove pares do índice que não têm mais nenhuma entrada CPE."""
        for vendor, product in pairs:
            in_use = (
                select(CategorizedCpeRecord.id)
                .where(CategorizedCpeRecord.vendor == vendor, CategorizedCpeRecord.product == product)
                .exists()
            )
            session.execute(
                delete(VendorProductRecord).where(
                    VendorProductRecord.vendor == vendor,
                    VendorProductRecord.product == product,
                    ~in_use,
                )
            )
            logger.debug(f"Pruned vendor product {vendor}#{product} if unused")

    def _vendor_product_insert_stmt(self):
        """INSERT idempotente do par (vendor, product)."""
        table = VendorProductRecord.__table__
        if self._name == DIALECT_MYSQL:
            ins = mysql_insert(table)
            return ins.on_duplicate_key_update(vendor=ins.inserted.vendor)
        ins = self._dialect_insert(table)
        return ins.on_conflict_do_nothing(index_elements=['vendor', 'product'])

    def _cpe_upsert_stmt(self):
        table = CategorizedCpeRecord.__table__
        if self._name == DIALECT_MYSQL:
            ins = mysql_insert(table)
            return ins.on_duplicate_key_update(
                vendor=ins.inserted.vendor,
                product=ins.inserted.product,
                cpe_fs=ins.inserted.cpe_fs,
                deprecated=ins.inserted.deprecated,
                updated_at=func.now(),
            )
        ins = self._dialect_insert(table)
        return ins.on_conflict_do_update(
            index_elements=['fetch_type', 'cpe_uri'],
            set_={
                'vendor': ins.excluded.vendor,
                'product': ins.excluded.product,
                'cpe_fs': ins.excluded.cpe_fs,
                'deprecated': ins.excluded.deprecated,
                'updated_at': func.now(),
            },
        )

    def _dialect_insert(self, table):
        if self._name == DIALECT_SQLITE3:
            return sqlite_insert(table)
        return pg_insert(table)
