"""
Tipos de valor compartilhados entre os drivers e o pipeline de ingestão.

Estes objetos não dependem de nenhum backend: o RDBDriver converte para as
tabelas ORM e o RedisDriver para chaves/hashes.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from cpedict import REVISION

# Versão atual do layout persistido. A versão 1 (legado) não é migrável.
LATEST_SCHEMA_VERSION = 2

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class FetchType(str, enum.Enum):
    """Origem das entradas CPE."""
    NVD = 'nvd'
    JVN = 'jvn'
    VULS = 'vuls'


@dataclass(frozen=True)
class CategorizedCpe:
    """
    Uma entrada CPE já categorizada pelo parser upstream.

    cpe_uri é o nome no formato 2.2 (URI) e cpe_fs o formatted string 2.3.
    """
    fetch_type: FetchType
    vendor: str
    product: str
    cpe_uri: str
    cpe_fs: str
    deprecated: bool = False


@dataclass(frozen=True, order=True)
class VendorProduct:
    vendor: str
    product: str


@dataclass
class FetchMeta:
    """Registro único de metadados do fetch por base."""
    revision: str = REVISION
    schema_version: int = LATEST_SCHEMA_VERSION
    last_fetched_at: datetime = field(default_factory=lambda: EPOCH)

    def outdated(self) -> bool:
        """True quando a base foi criada por um layout diferente do atual."""
        return self.schema_version != LATEST_SCHEMA_VERSION
