"""
Modelos SQLAlchemy e tipos de valor do dicionário CPE.
"""

from .base_model import Base, BaseModel
from .categorized_cpe import CategorizedCpeRecord
from .fetch_meta import FetchMetaRecord
from .types import (
    EPOCH,
    LATEST_SCHEMA_VERSION,
    CategorizedCpe,
    FetchMeta,
    FetchType,
    VendorProduct,
)
from .vendor_product import VendorProductRecord

__all__ = [
    'Base',
    'BaseModel',
    'CategorizedCpeRecord',
    'FetchMetaRecord',
    'VendorProductRecord',
    'CategorizedCpe',
    'FetchMeta',
    'FetchType',
    'VendorProduct',
    'EPOCH',
    'LATEST_SCHEMA_VERSION',
]
