from .fetch_config import ConfigError, FetchConfig, getenv_typed

__all__ = ['ConfigError', 'FetchConfig', 'getenv_typed']
