# cpedict/models/fetch_meta.py

from sqlalchemy import Column, DateTime, Integer, String

from .base_model import BaseModel


class FetchMetaRecord(BaseModel):
    """
    Metadados do último fetch bem-sucedido.
    Existe no máximo uma linha por base.
    """
    __tablename__ = 'fetch_meta'

    revision = Column(String(100), nullable=False)
    schema_version = Column(Integer, nullable=False)
    last_fetched_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<FetchMetaRecord id={self.id} schema_version={self.schema_version} last_fetched_at={self.last_fetched_at}>"
