from sqlalchemy import Boolean, Column, Index, String, UniqueConstraint

from .base_model import BaseModel


class CategorizedCpeRecord(BaseModel):
    __tablename__ = 'categorized_cpes'
    __table_args__ = (
        UniqueConstraint('fetch_type', 'cpe_uri', name='uq_categorized_cpes_fetch_type_uri'),
        Index('ix_categorized_cpes_vendor_product', 'vendor', 'product'),
    )

    fetch_type = Column(String(20), nullable=False)
    vendor = Column(String(255), nullable=False)
    product = Column(String(255), nullable=False)

    # Nomes CPE 2.2 (URI) e 2.3 (formatted string)
    cpe_uri = Column(String(512), nullable=False, index=True)
    cpe_fs = Column(String(512), nullable=False, index=True)

    deprecated = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<CategorizedCpeRecord id={self.id} fetch_type={self.fetch_type} cpe_uri={self.cpe_uri}>"
