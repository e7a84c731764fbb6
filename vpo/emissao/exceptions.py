"""
Exceções do pipeline de emissão VPO
"""
from typing import Any, Dict, List, Optional


class VpoError(Exception):
    """Erro base do pipeline VPO"""
    pass


class SourceNotFound(VpoError):
    """Registro base não encontrado no ERP (transportador, pacote, rota)"""
    pass


class ValidationIncomplete(VpoError):
    """Perfil do transportador incompleto para emissão"""

    def __init__(self, missing_fields: List[Dict[str, str]], score: int, message: str):
        super().__init__(message)
        self.missing_fields = missing_fields
        self.score = score
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campos_faltantes": self.missing_fields,
            "score": self.score,
            "mensagem": self.message,
        }


class EmissaoTimeout(VpoError):
    """Orçamento de tempo/tentativas de polling esgotado"""
    pass


class UpstreamProtocolError(VpoError):
    """Resposta NDD Cargo de erro"""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class CancelledByUser(VpoError):
    pass


class InvalidStateTransition(VpoError):
    """Transição de status não permitida para a emissão"""
    pass


class EmissaoNotFound(VpoError):
    pass
