"""
Configuração do pipeline de emissão VPO
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


class EmissaoConfig:
    """Limites de polling, consulta de rota e fontes externas"""

    ANTT_API_BASE = "https://dados.antt.gov.br/api/3/action"

    def __init__(self):
        # Polling da emissão (budget por janela)
        self.max_tentativas_polling = int(os.getenv("VPO_MAX_TENTATIVAS_POLLING", "50"))
        self.timeout_minutos = int(os.getenv("VPO_TIMEOUT_MINUTOS", "10"))
        self.intervalo_polling_segundos = int(os.getenv("VPO_INTERVALO_POLLING", "5"))

        # Consulta de rota (roteirizador) no start: best-effort
        self.roteirizador_tentativas = int(os.getenv("VPO_ROTEIRIZADOR_TENTATIVAS", "10"))
        self.roteirizador_intervalo_segundos = float(os.getenv("VPO_ROTEIRIZADOR_INTERVALO", "2"))

        # ANTT dados abertos
        self.antt_api_base = os.getenv("VPO_ANTT_API_BASE", self.ANTT_API_BASE)
        self.antt_timeout = int(os.getenv("VPO_ANTT_TIMEOUT", "30"))
        self.antt_cache_ttl = int(os.getenv("VPO_ANTT_CACHE_TTL", "86400"))
        self.antt_enabled = os.getenv("VPO_ANTT_ENABLED", "true").lower() in ("1", "true", "yes")

        # Conector JDBC do ERP (Progress/OpenEdge)
        self.erp_connector_command = os.getenv("VPO_ERP_CONNECTOR_COMMAND", "")
        self.erp_timeout = int(os.getenv("VPO_ERP_TIMEOUT", "60"))

        if self.max_tentativas_polling < 1:
            raise ValueError("VPO_MAX_TENTATIVAS_POLLING deve ser >= 1")
        if self.timeout_minutos < 1:
            raise ValueError("VPO_TIMEOUT_MINUTOS deve ser >= 1")


_config: Optional[EmissaoConfig] = None


def get_emissao_config() -> EmissaoConfig:
    global _config
    if _config is None:
        _config = EmissaoConfig()
    return _config
