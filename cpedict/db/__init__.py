"""
Drivers de armazenamento do dicionário CPE.

Uso:
    from cpedict.db import StoreOption, new_db

    driver = new_db('sqlite3', 'cpe.sqlite3', False, StoreOption())
    try:
        driver.insert_cpes(FetchType.NVD, cpes)
    finally:
        driver.close_db()
"""

from .base import (
    DB,
    DIALECT_MYSQL,
    DIALECT_POSTGRESQL,
    DIALECT_REDIS,
    DIALECT_SQLITE3,
    RDB_DIALECTS,
    StoreOption,
)
from .chunking import IndexChunk, chunk_slice
from .errors import (
    CpeDictError,
    IncompatibleSchemaError,
    InsertError,
    LockedError,
    MigrationError,
    StoreConnectionError,
    StoreLookupError,
    UnsupportedDialectError,
)
from .factory import StartupStage, new_db, new_driver
from .rdb import RDBDriver
from .redis_driver import RedisDriver

DIALECTS = RDB_DIALECTS + (DIALECT_REDIS,)

__all__ = [
    'DB',
    'DIALECTS',
    'DIALECT_MYSQL',
    'DIALECT_POSTGRESQL',
    'DIALECT_REDIS',
    'DIALECT_SQLITE3',
    'StoreOption',
    'IndexChunk',
    'chunk_slice',
    'CpeDictError',
    'IncompatibleSchemaError',
    'InsertError',
    'LockedError',
    'MigrationError',
    'StoreConnectionError',
    'StoreLookupError',
    'UnsupportedDialectError',
    'StartupStage',
    'new_db',
    'new_driver',
    'RDBDriver',
    'RedisDriver',
]
