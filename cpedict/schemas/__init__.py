from .cpe_schema import CategorizedCpeSchema, FetchMetaSchema, load_cpes_from_file

__all__ = ['CategorizedCpeSchema', 'FetchMetaSchema', 'load_cpes_from_file']
