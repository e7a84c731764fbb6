"""
Assinatura digital XML para NDD Cargo

Requisitos:
- XML Digital Signature Enveloped
- Certificado A1 ICP-Brasil (PKCS#12 ou PEM + chave)
- RSA >= 2048 bits
- C14N 1.0 (http://www.w3.org/TR/2001/REC-xml-c14n-20010315)
- RSA-SHA1 / SHA1 (exigido pela NDD Cargo; SHA-256 configurável)
- Reference URI="#<Id do elemento inf*>"
- Signature como último filho do elemento raiz
- Elemento Signature no namespace xmldsig (prefixo "ds:" padrão do signxml)

O certificado é carregado uma única vez por processo (CertificateStore,
protegido por lock) e injetado no SignatureEngine.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureMethod,
    XMLSigner,
    XMLVerifier,
)
from signxml.algorithms import SignatureConstructionMethod
from signxml.verifier import SignatureConfiguration

from .config import NddCargoConfig
from .exceptions import CertificateError, SignatureError

logger = logging.getLogger(__name__)

ALGORITHMS = {
    "sha1": (SignatureMethod.RSA_SHA1, DigestAlgorithm.SHA1),
    "sha256": (SignatureMethod.RSA_SHA256, DigestAlgorithm.SHA256),
}


@dataclass
class CertificateMaterial:
    """Chave privada + certificado já validados"""
    private_key: Any
    certificate: x509.Certificate
    additional_certificates: List[x509.Certificate]
    loaded_at: float

    @property
    def cert_pem(self) -> str:
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


class _NddXMLSigner(XMLSigner):
    """XMLSigner que aceita SHA1 (a NDD Cargo ainda exige RSA-SHA1)"""

    def check_deprecated_methods(self):
        pass


class CertificateStore:
    """
    Carrega o certificado uma vez e o mantém em memória.

    A recarga só acontece depois de `ttl` segundos; a assinatura não depende
    do momento da recarga.
    """

    def __init__(
        self,
        cert_path: Optional[str] = None,
        cert_password: Optional[str] = None,
        key_path: Optional[str] = None,
        certificate_type: str = "pfx",
        ttl: int = 3600,
    ):
        self.cert_path = cert_path
        self.cert_password = cert_password or ""
        self.key_path = key_path
        self.certificate_type = certificate_type
        self.ttl = ttl
        self._lock = threading.Lock()
        self._material: Optional[CertificateMaterial] = None

    @classmethod
    def from_config(cls, config: NddCargoConfig) -> 'CertificateStore':
        return cls(
            cert_path=config.cert_path,
            cert_password=config.certificate_password,
            key_path=config.certificate_key_path,
            certificate_type=config.certificate_type,
            ttl=config.certificate_ttl,
        )

    def get(self) -> CertificateMaterial:
        """Retorna o material carregado (carregando sob lock na primeira vez)"""
        material = self._material
        if material is not None and time.monotonic() - material.loaded_at < self.ttl:
            return material
        with self._lock:
            material = self._material
            if material is None or time.monotonic() - material.loaded_at >= self.ttl:
                material = self._load()
                self._material = material
        return material

    def _load(self) -> CertificateMaterial:
        if not self.cert_path:
            raise CertificateError(
                "Certificado não especificado. Configure NDD_CARGO_CERT_PFX_PATH ou NDD_CARGO_CERT_CERT_PATH"
            )
        cert_file = Path(self.cert_path)
        if not cert_file.exists():
            raise CertificateError(f"Certificado não encontrado: {self.cert_path}")

        if self.certificate_type == "pem":
            material = self._load_pem(cert_file)
        else:
            material = self._load_pkcs12(cert_file)

        self._validate(material)
        logger.info(
            f"Certificado carregado. Titular: {material.certificate.subject.rfc4514_string()}, "
            f"válido até: {material.certificate.not_valid_after_utc}"
        )
        return material

    def _load_pkcs12(self, cert_file: Path) -> CertificateMaterial:
        password = self.cert_password.encode() if self.cert_password else None
        try:
            private_key, certificate, additional = pkcs12.load_key_and_certificates(
                cert_file.read_bytes(), password
            )
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Erro ao carregar certificado PKCS#12: {e}") from e

        if private_key is None:
            raise CertificateError("Não foi possível extrair a chave privada do certificado")
        if certificate is None:
            raise CertificateError("Não foi possível extrair o certificado do arquivo")

        return CertificateMaterial(private_key, certificate, list(additional or []), time.monotonic())

    def _load_pem(self, cert_file: Path) -> CertificateMaterial:
        if not self.key_path:
            raise CertificateError("NDD_CARGO_CERT_KEY_PATH é obrigatório para certificado PEM")
        key_file = Path(self.key_path)
        if not key_file.exists():
            raise CertificateError(f"Chave privada não encontrada: {self.key_path}")

        password = self.cert_password.encode() if self.cert_password else None
        try:
            certificate = x509.load_pem_x509_certificate(cert_file.read_bytes())
            private_key = serialization.load_pem_private_key(key_file.read_bytes(), password=password)
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Erro ao carregar certificado/chave PEM: {e}") from e

        return CertificateMaterial(private_key, certificate, [], time.monotonic())

    @staticmethod
    def _validate(material: CertificateMaterial):
        """
        Valida o certificado:
        - Vigência (not_valid_before / not_valid_after)
        - Chave RSA de pelo menos 2048 bits
        - Chave privada correspondente ao certificado
        """
        check_validity(material.certificate)

        if not isinstance(material.private_key, rsa.RSAPrivateKey):
            raise CertificateError("A chave privada deve ser RSA")
        if material.private_key.key_size < 2048:
            raise CertificateError(
                f"A chave RSA deve ter pelo menos 2048 bits. Atual: {material.private_key.key_size} bits"
            )
        if material.private_key.public_key().public_numbers() != material.certificate.public_key().public_numbers():
            raise CertificateError("A chave privada não corresponde ao certificado")


def check_validity(certificate: x509.Certificate):
    now = datetime.now(timezone.utc)
    if certificate.not_valid_after_utc < now:
        raise CertificateError(f"Certificado expirado. Válido até: {certificate.not_valid_after_utc}")
    if certificate.not_valid_before_utc > now:
        raise CertificateError(f"Certificado ainda não válido. Válido desde: {certificate.not_valid_before_utc}")


class SignatureEngine:
    """
    Aplica assinatura enveloped aos XMLs de envio NDD Cargo.
    """

    def __init__(self, store: CertificateStore, algorithm: str = "sha1"):
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Algoritmo de assinatura inválido: {algorithm}")
        self.store = store
        self.algorithm = algorithm

    def sign(self, xml_content: str, correlation_id: str) -> str:
        """
        Assina o XML referenciando o elemento com Id/ID = correlation_id

        Args:
            xml_content: XML a assinar
            correlation_id: UUID presente no atributo Id do elemento inf*

        Returns:
            XML assinado como string

        Raises:
            CertificateError: certificado ausente, inválido ou expirado
            SignatureError: XML inválido ou referência não encontrada
        """
        material = self.store.get()
        # o certificado pode expirar com o processo em execução
        check_validity(material.certificate)

        if not correlation_id:
            raise SignatureError("correlation_id obrigatório para assinatura")

        try:
            root = etree.fromstring(xml_content.encode("utf-8"))
        except etree.XMLSyntaxError as e:
            raise SignatureError(f"XML inválido para assinatura: {e}") from e

        if not root.xpath("//*[@Id=$ref or @ID=$ref]", ref=correlation_id):
            raise SignatureError(f"Elemento com Id={correlation_id} não encontrado no XML")

        signature_method, digest_method = ALGORITHMS[self.algorithm]
        signer = _NddXMLSigner(
            method=SignatureConstructionMethod.enveloped,
            signature_algorithm=signature_method,
            digest_algorithm=digest_method,
            c14n_algorithm=CanonicalizationMethod.CANONICAL_XML_1_0,
        )

        try:
            signed_root = signer.sign(
                root,
                key=material.private_key,
                cert=material.cert_pem,
                reference_uri=f"#{correlation_id}",
            )
        except Exception as e:
            raise SignatureError(f"Erro ao assinar XML: {e}") from e

        signed_xml = etree.tostring(
            signed_root, encoding="utf-8", xml_declaration=True, pretty_print=False
        ).decode("utf-8")

        if "SignatureValue" not in signed_xml:
            raise SignatureError("Assinatura não aplicada ao XML")

        logger.info(f"XML assinado: uuid={correlation_id}, algoritmo={self.algorithm}")
        return signed_xml

    def verify(self, signed_xml: str) -> bool:
        """
        Verifica a assinatura com o certificado carregado.

        Returns:
            True se a assinatura for válida, False caso contrário
        """
        material = self.store.get()
        signature_method, digest_method = ALGORITHMS[self.algorithm]
        expect_config = SignatureConfiguration(
            require_x509=False,
            signature_methods=frozenset([signature_method]),
            digest_algorithms=frozenset([digest_method]),
        )
        try:
            root = etree.fromstring(signed_xml.encode("utf-8"))
            XMLVerifier().verify(root, x509_cert=material.cert_pem, expect_config=expect_config)
            return True
        except Exception as e:
            logger.error(f"Erro ao verificar assinatura: {e}")
            return False

    def get_certificate_info(self) -> dict:
        """Informações do certificado carregado"""
        material = self.store.get()
        cert = material.certificate
        return {
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "serial_number": str(cert.serial_number),
            "not_valid_before": cert.not_valid_before_utc.isoformat(),
            "not_valid_after": cert.not_valid_after_utc.isoformat(),
            "key_size": material.private_key.key_size,
        }
