"""
Configuração do cliente NDD Cargo (CrossTalk sobre SOAP 1.1)
"""
import os
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


class NddCargoConfig:
    """Configuração do cliente NDD Cargo por ambiente"""

    ENV_HOMOLOGACAO = "homologacao"
    ENV_PRODUCAO = "producao"

    ENDPOINTS = {
        "homologacao": {
            "wsdl": "https://homologa.nddcargo.com.br/wsagente/ExchangeMessage.asmx?wsdl",
            "url": "https://homologa.nddcargo.com.br/wsagente/ExchangeMessage.asmx",
        },
        "producao": {
            "wsdl": "http://wsagent.nddcargo.com.br/wsagente/exchangemessage.asmx?wsdl",
            "url": "http://wsagent.nddcargo.com.br/wsagente/exchangemessage.asmx",
        },
    }

    # Namespace dos layouts VPO / roteirizador
    NDD_NAMESPACE = "http://www.nddigital.com.br/nddcargo"
    # Namespace do CrossTalk_Message (sim, o domínio é diferente)
    CROSSTALK_NAMESPACE = "http://www.ndddigital.com.br/nddcargo"

    # ProcessCodes CrossTalk
    PROCESS_CODE_ROTEIRIZADOR = 2027
    PROCESS_CODE_VPO = 2028
    PROCESS_CODE_CANCELAMENTO = 2029

    def __init__(self, env: Optional[str] = None):
        """
        Inicializa a configuração NDD Cargo

        Args:
            env: Ambiente ('homologacao' ou 'producao'). Se None, usa NDD_CARGO_ENVIRONMENT
        """
        if env is None:
            env = os.getenv("NDD_CARGO_ENVIRONMENT", self.ENV_HOMOLOGACAO)
        if env not in (self.ENV_HOMOLOGACAO, self.ENV_PRODUCAO):
            raise ValueError(
                f"Ambiente inválido: {env}. Deve ser 'homologacao' ou 'producao'"
            )

        self.env = env
        self.endpoint_url = os.getenv("NDD_CARGO_ENDPOINT_URL", self.ENDPOINTS[env]["url"])
        self.wsdl_url = self.ENDPOINTS[env]["wsdl"]

        # Credenciais (nunca commitar valores reais)
        self.cnpj_empresa = os.getenv("NDD_CARGO_CNPJ", "")
        self.token = os.getenv("NDD_CARGO_TOKEN", "")

        # Layout
        self.versao_layout = os.getenv("NDD_CARGO_VERSAO_LAYOUT", "4.2.12.0")
        self.pt_emissor = os.getenv("NDD_CARGO_PT_EMISSOR", "")
        self.serie_padrao = os.getenv("NDD_CARGO_SERIE", "1016")

        # Certificado A1 (ICP-Brasil)
        self.certificate_type = os.getenv("NDD_CARGO_CERT_TYPE", "pfx").lower()
        if self.certificate_type not in ("pfx", "pem"):
            raise ValueError(
                f"NDD_CARGO_CERT_TYPE inválido: {self.certificate_type}. Deve ser 'pfx' ou 'pem'"
            )
        self.certificate_pfx_path = os.getenv("NDD_CARGO_CERT_PFX_PATH")
        self.certificate_cert_path = os.getenv("NDD_CARGO_CERT_CERT_PATH")
        self.certificate_key_path = os.getenv("NDD_CARGO_CERT_KEY_PATH")
        self.certificate_password = os.getenv("NDD_CARGO_CERT_PASSWORD", "")
        self.certificate_ttl = int(os.getenv("NDD_CARGO_CERT_TTL", "3600"))

        # sha1 é o exigido pela NDD Cargo; sha256 fica disponível para homologação
        self.signature_algorithm = os.getenv("NDD_CARGO_SIGNATURE_ALGORITHM", "sha1").lower()
        if self.signature_algorithm not in ("sha1", "sha256"):
            raise ValueError(
                f"NDD_CARGO_SIGNATURE_ALGORITHM inválido: {self.signature_algorithm}"
            )

        # Timeouts
        self.connect_timeout = int(os.getenv("NDD_CARGO_TIMEOUT_CONNECT", "10"))
        self.read_timeout = int(os.getenv("NDD_CARGO_TIMEOUT", "30"))

        # Logging / debug
        self.log_xml = os.getenv("NDD_CARGO_LOG_XML", "false").lower() in ("1", "true", "yes")
        self.debug_soap = os.getenv("NDD_CARGO_DEBUG_SOAP", "").lower() in ("1", "true", "yes")
        self.artifacts_dir = Path(os.getenv("NDD_CARGO_ARTIFACTS_DIR", "artifacts"))

    @property
    def cert_path(self) -> Optional[str]:
        """Caminho do certificado conforme o tipo configurado"""
        if self.certificate_type == "pfx":
            return self.certificate_pfx_path
        return self.certificate_cert_path

    def get_process_code(self, service_key: str) -> int:
        """
        Obtém o ProcessCode CrossTalk de um serviço

        Args:
            service_key: 'vpo', 'roteirizador' ou 'cancelamento'
        """
        codes = {
            "vpo": self.PROCESS_CODE_VPO,
            "roteirizador": self.PROCESS_CODE_ROTEIRIZADOR,
            "cancelamento": self.PROCESS_CODE_CANCELAMENTO,
        }
        if service_key not in codes:
            raise ValueError(f"Serviço NDD Cargo inválido: {service_key}")
        return codes[service_key]


def get_nddcargo_config(env: Optional[str] = None) -> NddCargoConfig:
    """
    Obtém a configuração NDD Cargo para o ambiente informado
    """
    return NddCargoConfig(env=env)
