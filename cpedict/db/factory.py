"""
Construção do driver e sequência de inicialização.

A ordem OPENING -> VERSION_CHECKING -> MIGRATING é obrigatória: verificar a
versão de uma base bloqueada por outro processo é indefinido, e migrar uma
base V1 a destruiria.
"""

import enum
import logging
from typing import Callable, Optional

from .base import DB, DIALECT_REDIS, RDB_DIALECTS, StoreOption
from .errors import IncompatibleSchemaError, MigrationError, StoreLookupError, UnsupportedDialectError
from .rdb import RDBDriver
from .redis_driver import RedisDriver

logger = logging.getLogger(__name__)


class StartupStage(str, enum.Enum):
    RESOLVING = 'resolving'
    OPENING = 'opening'
    VERSION_CHECKING = 'version_checking'
    MIGRATING = 'migrating'
    READY = 'ready'


def new_driver(db_type: str) -> DB:
    """Resolve o dialeto para a variante concreta, sem abrir conexão."""
    if db_type in RDB_DIALECTS:
        return RDBDriver(db_type)
    if db_type == DIALECT_REDIS:
        return RedisDriver(db_type)
    raise UnsupportedDialectError(db_type)


def new_db(
    db_type: str,
    db_path: str,
    debug_sql: bool,
    option: StoreOption,
    on_stage: Optional[Callable[[StartupStage], None]] = None,
) -> DB:
    """
    Retorna um driver aberto, verificado e migrado.

    Args:
        db_type: dialeto (sqlite3, mysql, postgres, redis)
        db_path: caminho do arquivo, DSN ou URL do backend
        debug_sql: habilita o log das instruções SQL
        option: opções de abertura
        on_stage: callback opcional chamado ao entrar em cada etapa

    Raises:
        UnsupportedDialectError: dialeto desconhecido
        LockedError: base bloqueada por outro processo (sem checagem de versão nem migração)
        StoreConnectionError: falha ao abrir a conexão
        IncompatibleSchemaError: base no layout V1
        MigrationError: falha ao migrar
    """
    def enter(stage: StartupStage) -> None:
        logger.debug(f"DB startup stage: {stage.value}")
        if on_stage is not None:
            on_stage(stage)

    enter(StartupStage.RESOLVING)
    driver = new_driver(db_type)

    enter(StartupStage.OPENING)
    driver.open_db(db_type, db_path, debug_sql, option)

    try:
        enter(StartupStage.VERSION_CHECKING)
        try:
            is_v1 = driver.is_go_cpe_dict_model_v1()
        except StoreLookupError as e:
            raise MigrationError(f"Failed to check schema version. err: {e}") from e
        if is_v1:
            raise IncompatibleSchemaError(
                "Failed to open DB. Since SchemaVersion is incompatible, delete Database and fetch again."
            )

        enter(StartupStage.MIGRATING)
        driver.migrate_db()
    except Exception:
        driver.close_db()
        raise

    enter(StartupStage.READY)
    return driver
