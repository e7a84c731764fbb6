"""
Logger estruturado do pipeline de emissão VPO

Mensagens com contexto `key=value` em JSON e medição de duração por etapa.
"""
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class PipelineLogger:
    """Logger estruturado para as operações do pipeline VPO"""

    def __init__(self, name: str, log_dir: Optional[Path] = None):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)

        if not self.logger.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(console_handler)

            if log_dir:
                log_dir.mkdir(parents=True, exist_ok=True)
                log_file = log_dir / f"{name}_{datetime.now().strftime('%Y%m%d')}.log"
                file_handler = logging.FileHandler(log_file, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(logging.Formatter(
                    '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
                ))
                self.logger.addHandler(file_handler)

    def _format(self, message: str, data: Dict[str, Any]) -> str:
        if not data:
            return message
        return f"{message} | {json.dumps(data, ensure_ascii=False, default=str)}"

    def info(self, message: str, **kwargs):
        self.logger.info(self._format(message, kwargs))

    def error(self, message: str, **kwargs):
        self.logger.error(self._format(message, kwargs))

    def warning(self, message: str, **kwargs):
        self.logger.warning(self._format(message, kwargs))

    def debug(self, message: str, **kwargs):
        self.logger.debug(self._format(message, kwargs))

    def log_operation(self, operation: str, status: str, **data):
        """Registra uma operação do pipeline com dados estruturados"""
        self.info(
            f"Operação: {operation} - {status}",
            operation=operation,
            status=status,
            timestamp=datetime.now().isoformat(),
            **data
        )

    @contextmanager
    def log_context(self, operation: str, **context):
        """Registra início/fim (com duração) de uma etapa"""
        start_time = datetime.now()
        self.log_operation(operation, "START", **context)
        try:
            yield
        except Exception as e:
            duration = (datetime.now() - start_time).total_seconds()
            self.error(
                f"Operação falhou: {operation}",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                duration=duration,
                **context
            )
            raise
        duration = (datetime.now() - start_time).total_seconds()
        self.log_operation(operation, "SUCCESS", duration=duration, **context)


_global_logger: Optional[PipelineLogger] = None


def get_logger(name: str = "vpo_pipeline") -> PipelineLogger:
    """Obtém (ou cria) o logger global do pipeline"""
    global _global_logger
    if _global_logger is None:
        log_dir = os.environ.get("VPO_LOG_DIR")
        _global_logger = PipelineLogger(name, Path(log_dir) if log_dir else None)
    return _global_logger
