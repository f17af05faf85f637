"""
Pacote principal do cpedict.

Persiste entradas do dicionário CPE (Common Platform Enumeration) em um
backend relacional (SQLite, MySQL, PostgreSQL) ou chave-valor (Redis).
"""

__version__ = '0.2.0'

# Revisão gravada no FetchMeta de cada base populada por esta versão
REVISION = f"cpedict-{__version__}"

__all__ = ['__version__', 'REVISION']
