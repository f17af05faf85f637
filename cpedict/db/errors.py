"""
Hierarquia de erros dos drivers de armazenamento.

O atributo `recoverable` indica se um agendador pode repetir o ciclo de fetch
inteiro após o intervalo configurado.
"""

from typing import Optional


class CpeDictError(Exception):
    """Erro base do cpedict."""
    recoverable = False


class UnsupportedDialectError(CpeDictError):
    """Dialeto de banco desconhecido."""

    def __init__(self, db_type: str):
        super().__init__(f"Invalid database dialect: {db_type}")
        self.db_type = db_type


class StoreConnectionError(CpeDictError):
    """Falha ao abrir a conexão com o backend (alvo inacessível ou inválido)."""
    recoverable = True
    locked = False


class LockedError(StoreConnectionError):
    """A base está bloqueada de forma exclusiva por outro processo."""
    locked = True


class IncompatibleSchemaError(CpeDictError):
    """Layout legado (V1) ou SchemaVersion antigo; exige ação do operador."""


class MigrationError(CpeDictError):
    """Falha ao aplicar as migrações do schema."""


class InsertError(CpeDictError):
    """Falha ao persistir um lote de entradas CPE."""

    def __init__(self, message: str, start: Optional[int] = None, end: Optional[int] = None):
        super().__init__(message)
        self.start = start
        self.end = end


class StoreLookupError(CpeDictError):
    """Falha de I/O no caminho de leitura ("não encontrado" nunca é erro)."""
