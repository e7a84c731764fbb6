"""
Módulo cliente para integração com a NDD Cargo (Vale-Pedágio Obrigatório)
CrossTalk sobre SOAP 1.1
"""
from .config import NddCargoConfig, get_nddcargo_config
from .exceptions import NddCargoClientError
from .response_classifier import ResponseClassifier
from .soap_client import NddCargoSoapClient
from .xml_builder import NddCargoXmlBuilder
from .xml_signer import CertificateStore, SignatureEngine

__all__ = [
    'NddCargoConfig', 'get_nddcargo_config', 'NddCargoClientError', 'ResponseClassifier',
    'NddCargoSoapClient', 'NddCargoXmlBuilder', 'CertificateStore', 'SignatureEngine',
]
