"""
Exceções do cliente NDD Cargo
"""
from ..emissao.exceptions import VpoError


class NddCargoClientError(VpoError):
    """Erro base do cliente NDD Cargo"""
    pass


class CertificateError(NddCargoClientError):
    """Certificado ausente, inválido, expirado ou incompatível com a assinatura"""
    pass


class SignatureError(NddCargoClientError):
    """Falha ao assinar o XML (nunca se devolve XML sem assinatura)"""
    pass


class TransportError(NddCargoClientError):
    """Falha de rede ou envelope SOAP malformado"""
    pass


class PayloadBuildError(NddCargoClientError):
    """Dados insuficientes para montar o XML"""
    pass
