from sqlalchemy import Column, String, UniqueConstraint

from .base_model import BaseModel


class VendorProductRecord(BaseModel):
    __tablename__ = 'vendor_products'
    __table_args__ = (
        UniqueConstraint('vendor', 'product', name='uq_vendor_products_vendor_product'),
    )

    vendor = Column(String(255), nullable=False)
    product = Column(String(255), nullable=False)

    def __repr__(self):
        return f"<VendorProductRecord id={self.id} vendor={self.vendor} product={self.product}>"
