import json
import logging
import logging.handlers
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class StructuredFormatter(logging.Formatter):
    """
    Formatter para logs estruturados em JSON.
    """

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread': record.threadName,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        # Campos extras usados pelo ciclo de fetch
        for attr in ('run_state', 'fetch_type', 'db_type'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry, ensure_ascii=False)


def setup_logging(log_level: str = 'INFO', log_dir: Optional[str] = None, app_name: str = 'cpedict') -> logging.Logger:
    """
    Configura o logging do pacote.

    Args:
        log_level: nível de log (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: diretório para arquivos JSON rotativos; None = só console
        app_name: nome do logger raiz do pacote

    Returns:
        Logger raiz do pacote configurado
    """
    logger = logging.getLogger(app_name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remover handlers existentes
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / f'{app_name}.log',
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_path / f'{app_name}_errors.log',
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(StructuredFormatter())
        logger.addHandler(error_handler)

    logger.propagate = False
    return logger
