"""
Contrato comum dos drivers de armazenamento.

Cada backend (relacional ou chave-valor) implementa a classe abstrata DB;
a seleção acontece uma única vez, em cpedict.db.factory.new_db.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from cpedict.models.types import CategorizedCpe, FetchMeta, FetchType, VendorProduct

DIALECT_SQLITE3 = 'sqlite3'
DIALECT_MYSQL = 'mysql'
DIALECT_POSTGRESQL = 'postgres'
DIALECT_REDIS = 'redis'

RDB_DIALECTS = (DIALECT_SQLITE3, DIALECT_MYSQL, DIALECT_POSTGRESQL)


@dataclass(frozen=True)
class StoreOption:
    """
    Opções de abertura, imutáveis após a construção do driver.

    Attributes:
        redis_timeout: timeout (s) de conexão para backends remotos
        pool_size: tamanho do pool de conexões relacionais (>= número de threads)
        lock_timeout: tempo (s) que uma base SQLite aguarda antes de ser
            considerada bloqueada por outro processo
    """
    redis_timeout: float = 10.0
    pool_size: int = 10
    lock_timeout: float = 5.0


class DB(ABC):
    """Interface de um driver de banco de dados."""

    @abstractmethod
    def name(self) -> str:
        """Identificador do dialeto."""

    @abstractmethod
    def open_db(self, db_type: str, db_path: str, debug_sql: bool, option: StoreOption) -> None:
        """
        Abre a conexão com o backend.

        Raises:
            LockedError: base bloqueada de forma exclusiva por outro processo
            StoreConnectionError: alvo inacessível ou inválido
        """

    @abstractmethod
    def close_db(self) -> None:
        """Libera a conexão. Seguro após uma abertura que falhou."""

    @abstractmethod
    def migrate_db(self) -> None:
        """Aplica o schema atual; no-op se já estiver atualizado."""

    @abstractmethod
    def is_go_cpe_dict_model_v1(self) -> bool:
        """True quando a base usa o layout legado (V1), que não é migrável."""

    @abstractmethod
    def get_fetch_meta(self) -> FetchMeta:
        ...

    @abstractmethod
    def upsert_fetch_meta(self, fetch_meta: FetchMeta) -> None:
        ...

    @abstractmethod
    def get_vendor_products(self) -> List[VendorProduct]:
        ...

    @abstractmethod
    def get_cpes_by_vendor_product(self, vendor: str, product: str) -> Tuple[List[str], List[str]]:
        """Retorna (nomes CPE 2.2, nomes CPE 2.3); listas vazias se não houver match."""

    @abstractmethod
    def insert_cpes(self, fetch_type: FetchType, cpes: Sequence[CategorizedCpe]) -> None:
        """
        Persiste um lote de entradas e atualiza o índice vendor/product.

        A atomicidade depende do backend: o driver relacional grava o lote em
        uma única transação; o driver Redis tenta todas as entradas e
        reporta o primeiro erro sem desfazer as gravações anteriores.
        """

    @abstractmethod
    def is_deprecated(self, cpe_name: str) -> bool:
        """Consulta pontual; nome desconhecido não é erro (retorna False)."""
