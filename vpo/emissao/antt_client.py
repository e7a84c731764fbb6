"""
Cliente de dados abertos da ANTT (CKAN) para enriquecer o RNTRC

1. package_show?id=rntrc -> resource mais recente (cache de 24h)
2. datastore_search?resource_id=..&q=<rntrc>&limit=1

Indisponibilidade da ANTT nunca bloqueia a emissão: o resultado cai para
`antt_status='Ativo'` com fonte 'fallback'.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from ..nddcargo_client.xml_builder import format_date
from .config import EmissaoConfig, get_emissao_config

logger = logging.getLogger(__name__)

FONTE_DADOS_ABERTOS = "dados_abertos"
FONTE_FALLBACK = "fallback"


@dataclass
class AnttResult:
    fonte: str
    data: Dict[str, Any] = field(default_factory=dict)


class AnttOpenDataClient:
    """Consulta o dataset RNTRC no portal de dados abertos da ANTT"""

    def __init__(self, config: Optional[EmissaoConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or get_emissao_config()
        self.session = session or self._create_session()
        self._lock = threading.Lock()
        self._resource_id: Optional[str] = None
        self._resource_loaded_at = 0.0

    @staticmethod
    def _create_session() -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=1)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _get(self, action: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        url = f"{self.config.antt_api_base}/{action}"
        resp = self.session.get(url, params=params, timeout=self.config.antt_timeout)
        if resp.status_code != 200:
            logger.warning(f"ANTT {action} respondeu HTTP {resp.status_code}")
            return None
        return resp.json().get("result")

    def get_resource_id(self) -> Optional[str]:
        """resource_id do CSV mais recente do dataset RNTRC (cache de 24h)"""
        with self._lock:
            if self._resource_id and time.monotonic() - self._resource_loaded_at < self.config.antt_cache_ttl:
                return self._resource_id
            package = self._get("package_show", {"id": "rntrc"})
            resources = (package or {}).get("resources") or []
            if not resources:
                return None
            latest = max(resources, key=lambda r: r.get("created") or "")
            self._resource_id = latest.get("id")
            self._resource_loaded_at = time.monotonic()
            return self._resource_id

    def fetch_open_data(self, rntrc: str) -> Optional[Dict[str, Any]]:
        """
        Busca o RNTRC no dataset.

        Returns:
            {'antt_status', 'antt_validade'} ou None se não encontrado/indisponível
        """
        try:
            resource_id = self.get_resource_id()
            if not resource_id:
                return None
            result = self._get("datastore_search", {"resource_id": resource_id, "q": rntrc, "limit": 1})
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Erro ao buscar dados da ANTT Open Data (rntrc={rntrc}): {e}")
            return None

        records = (result or {}).get("records") or []
        if not records:
            return None
        record = records[0]
        data = {"antt_status": record.get("Situacao") or "Ativo"}
        if record.get("DataValidadeCNH"):
            data["antt_validade"] = format_date(record["DataValidadeCNH"])
        return data

    def fetch(self, rntrc: str) -> AnttResult:
        """Dados abertos, com fallback para status 'Ativo'"""
        if self.config.antt_enabled:
            data = self.fetch_open_data(rntrc)
            if data:
                return AnttResult(FONTE_DADOS_ABERTOS, data)
        logger.info(f"VPO ANTT: usando fallback (dados abertos não disponíveis) rntrc={rntrc}")
        return AnttResult(FONTE_FALLBACK, {"antt_status": "Ativo"})
