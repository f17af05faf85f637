#!/usr/bin/env python3
"""
Configurações do ciclo de fetch.
Centraliza a leitura de variáveis de ambiente (e do arquivo .env).
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional, TypeVar

from dotenv import load_dotenv

from cpedict.db.base import DIALECT_SQLITE3, StoreOption
from cpedict.db.errors import CpeDictError
from cpedict.models.types import FetchType

T = TypeVar('T')

ENV_PREFIX = 'CPEDICT_'


class ConfigError(CpeDictError):
    pass


def getenv_typed(name: str, cast: Callable[[str], T], default: Optional[T] = None) -> Optional[T]:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Env var {name} invalid: {e}") from e


def _parse_bool(raw: str) -> bool:
    # Parsing explícito para evitar bool('false') == True
    value = raw.strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _default_threads() -> int:
    return os.cpu_count() or 1


@dataclass
class FetchConfig:
    """
    Configuração de um ciclo de fetch.

    Valores padrão equivalem às flags da CLI; a CLI sobrescreve o ambiente.
    """

    # Banco de dados
    db_type: str = DIALECT_SQLITE3
    db_path: str = 'cpe.sqlite3'
    debug_sql: bool = False
    redis_timeout: float = 10.0
    lock_timeout: float = 5.0

    # Ingestão
    fetch_type: FetchType = FetchType.NVD
    threads: int = field(default_factory=_default_threads)
    batch_size: int = 100
    wait: int = 0
    stdout: bool = False
    source: Optional[str] = None

    # Logging
    log_level: str = 'INFO'
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> 'FetchConfig':
        """
        Cria configuração a partir de variáveis de ambiente.

        Raises:
            ConfigError: valor inválido em alguma variável
        """
        load_dotenv(dotenv_path)
        defaults = cls()
        config = cls(
            db_type=getenv_typed(f'{ENV_PREFIX}DBTYPE', str, defaults.db_type),
            db_path=getenv_typed(f'{ENV_PREFIX}DBPATH', str, defaults.db_path),
            debug_sql=getenv_typed(f'{ENV_PREFIX}DEBUG_SQL', _parse_bool, defaults.debug_sql),
            redis_timeout=getenv_typed(f'{ENV_PREFIX}REDIS_TIMEOUT', float, defaults.redis_timeout),
            lock_timeout=getenv_typed(f'{ENV_PREFIX}LOCK_TIMEOUT', float, defaults.lock_timeout),
            fetch_type=getenv_typed(f'{ENV_PREFIX}FETCH_TYPE', FetchType, defaults.fetch_type),
            threads=getenv_typed(f'{ENV_PREFIX}THREADS', int, defaults.threads),
            batch_size=getenv_typed(f'{ENV_PREFIX}BATCH_SIZE', int, defaults.batch_size),
            wait=getenv_typed(f'{ENV_PREFIX}WAIT', int, defaults.wait),
            stdout=getenv_typed(f'{ENV_PREFIX}STDOUT', _parse_bool, defaults.stdout),
            source=getenv_typed(f'{ENV_PREFIX}SOURCE', str, defaults.source),
            log_level=getenv_typed(f'{ENV_PREFIX}LOG_LEVEL', str, defaults.log_level).upper(),
            log_dir=getenv_typed(f'{ENV_PREFIX}LOG_DIR', str, defaults.log_dir),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.threads < 1:
            raise ConfigError(f"threads must be >= 1, got {self.threads}")
        if self.batch_size < 1:
            raise ConfigError(f"batch-size must be >= 1, got {self.batch_size}")
        if self.wait < 0:
            raise ConfigError(f"wait must be >= 0, got {self.wait}")
        if self.redis_timeout <= 0:
            raise ConfigError(f"redis-timeout must be > 0, got {self.redis_timeout}")

    def store_option(self) -> StoreOption:
        # Pool com folga para a conexão do FetchMeta além dos workers
        return StoreOption(
            redis_timeout=self.redis_timeout,
            pool_size=self.threads + 1,
            lock_timeout=self.lock_timeout,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['fetch_type'] = self.fetch_type.value
        return data
