# base_model.py

from sqlalchemy import DateTime, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BaseModel(Base):
    """
    Modelo base abstrato.
    Fornece chave primária e colunas de auditoria.
    """
    __abstract__ = True

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        doc='Chave primária'
    )
    created_at = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False,
        doc='Data de criação'
    )
    updated_at = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        doc='Data da última atualização'
    )
