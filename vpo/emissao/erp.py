"""
Acesso ao ERP (Progress/OpenEdge)

O ERP é consultado por uma interface opaca `execute_query(sql) -> linhas`.
A implementação padrão executa o conector JDBC externo e decodifica o JSON
impresso por ele: {"success": true, "data": {"results": [...], "total": N}}.

Todo identificador interpolado no SQL passa por int(); a placa é reduzida
a [A-Z0-9].
"""
import json
import logging
import re
import shlex
import subprocess
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import EmissaoConfig, get_emissao_config
from .exceptions import VpoError

logger = logging.getLogger(__name__)


class ErpError(VpoError):
    """Falha ao consultar o ERP"""
    pass


class ErpQueryInterface:
    """Interface mínima de consulta ao ERP"""

    def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


class JdbcConnectorErpClient(ErpQueryInterface):
    """
    Executa o conector JDBC (processo externo) com a ação `query`.

    Args:
        command: comando do conector (lista ou string, ex.
            "java -cp .:openedge.jar ProgressJDBCConnector")
        timeout: segundos até abortar o processo
    """

    def __init__(self, command: Union[str, Sequence[str], None] = None, timeout: Optional[int] = None,
                 config: Optional[EmissaoConfig] = None):
        config = config or get_emissao_config()
        command = command or config.erp_connector_command
        if not command:
            raise ValueError("Comando do conector ERP não configurado (VPO_ERP_CONNECTOR_COMMAND)")
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.timeout = timeout or config.erp_timeout

    def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        """
        Executa um SELECT no ERP.

        Raises:
            ValueError: se o SQL não for SELECT
            ErpError: falha do processo, JSON inválido ou success=false
        """
        if not sql.strip().upper().startswith("SELECT"):
            raise ValueError("Apenas consultas SELECT são permitidas")

        logger.debug(f"Consulta ERP: {sql}")
        try:
            result = subprocess.run(
                [*self.command, "query", sql],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ErpError(f"Timeout do conector ERP após {self.timeout}s") from e
        except OSError as e:
            raise ErpError(f"Erro ao executar conector ERP: {e}") from e

        output = (result.stdout or "").strip()
        if result.returncode != 0 and not output:
            raise ErpError(f"Conector ERP terminou com código {result.returncode}: {result.stderr.strip()[:500]}")

        try:
            payload = json.loads(output)
        except json.JSONDecodeError as e:
            raise ErpError(f"Resposta inválida do conector ERP: {output[:500]}") from e

        if not payload.get("success"):
            raise ErpError(f"Erro na consulta ERP: {payload.get('error', 'erro desconhecido')}")

        rows = (payload.get("data") or {}).get("results") or []
        logger.debug(f"Consulta ERP retornou {len(rows)} registros")
        return rows


def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Chaves do ERP vêm com caixa variável (desSPararRot / desspararrot)"""
    return {str(key).lower(): value for key, value in row.items()}


def sanitize_placa(placa: Optional[str]) -> Optional[str]:
    if not placa:
        return None
    return re.sub(r"[^A-Z0-9]", "", str(placa).upper()) or None


class ErpRepository:
    """Consultas tipadas sobre o ERP"""

    def __init__(self, erp: ErpQueryInterface):
        self.erp = erp

    def _query(self, sql: str) -> List[Dict[str, Any]]:
        return [_normalize_row(row) for row in self.erp.execute_query(sql)]

    def _first(self, sql: str) -> Optional[Dict[str, Any]]:
        rows = self._query(sql)
        return rows[0] if rows else None

    def _describe(self, sql: str, column: str) -> Optional[str]:
        """Descrição auxiliar (bairro, município...); falha aqui não é fatal"""
        try:
            row = self._first(sql)
        except ErpError as e:
            logger.warning(f"Consulta auxiliar ao ERP falhou: {e}")
            return None
        return row.get(column) if row else None

    # --- Transportador -------------------------------------------------
    def get_transporte(self, codtrn: int) -> Optional[Dict[str, Any]]:
        codtrn = int(codtrn)
        return self._first(
            "SELECT codtrn, nomtrn, flgautonomo, codcnpjcpf, cdantt, datvldantt, "
            "tipcam, numpla, desvei, numrg, orgrg, NomMae, numhab, datnas, desend, numend, tiplog, codlog, "
            "codbai, codmun, codest, dddcel, numcel, dddtel, numtel, \"e-mail\" "
            f"FROM PUB.transporte WHERE codtrn = {codtrn}"
        )

    def get_tipo_caminhao(self, tipcam: Any) -> Optional[str]:
        if tipcam in (None, ""):
            return None
        return self._describe(f"SELECT destipcam FROM PUB.tipcam WHERE tipcam = {int(tipcam)}", "destipcam")

    def get_bairro_nome(self, codbai: Any) -> Optional[str]:
        if not codbai:
            return None
        return self._describe(f"SELECT desbai FROM PUB.bairro WHERE codbai = {int(codbai)}", "desbai")

    def get_municipio_nome(self, codmun: Any) -> Optional[str]:
        if not codmun:
            return None
        return self._describe(f"SELECT desmun FROM PUB.municipio WHERE codmun = {int(codmun)}", "desmun")

    def get_estado_sigla(self, codest: Any) -> Optional[str]:
        if not codest:
            return None
        return self._describe(f"SELECT sigest FROM PUB.estado WHERE codest = {int(codest)}", "sigest")

    def get_motorista(self, codtrn: int, codmot: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Motorista do roster da empresa (codmot informado ou o primeiro)"""
        columns = (
            "codmot, nommot, codcpf, codrntrc, datvldrntrc, numrg, nommae, datnas, "
            "desend, tiplog, codlog, codbai, codmun, codest, dddtel, numtel, email"
        )
        codtrn = int(codtrn)
        if codmot is not None:
            sql = f"SELECT {columns} FROM PUB.trnmot WHERE codtrn = {codtrn} AND codmot = {int(codmot)}"
        else:
            sql = f"SELECT TOP 1 {columns} FROM PUB.trnmot WHERE codtrn = {codtrn}"
        return self._first(sql)

    def get_veiculo(self, codtrn: int, placa: Optional[str]) -> Optional[Dict[str, Any]]:
        placa = sanitize_placa(placa)
        if not placa:
            return None
        return self._first(
            f"SELECT numpla, tipcam, modvei FROM PUB.trnvei WHERE codtrn = {int(codtrn)} AND numpla = '{placa}'"
        )

    # --- Pacote / rota -------------------------------------------------
    def get_pacote(self, codpac: int) -> Optional[Dict[str, Any]]:
        return self._first(
            f"SELECT codpac, codtrn, codmot, numpla, sitpac FROM PUB.pacote WHERE codpac = {int(codpac)}"
        )

    def get_rota(self, rota_id: int) -> Optional[Dict[str, Any]]:
        return self._first(
            f"SELECT sPararRotID, desSPararRot FROM PUB.semPararRot WHERE sPararRotID = {int(rota_id)}"
        )

    def get_rota_municipios(self, rota_id: int) -> List[Dict[str, Any]]:
        """Municípios da rota na ordem de passagem"""
        return self._query(
            "SELECT m.codmun, m.desmun, m.cdibge, m.latitude, m.longitude "
            "FROM PUB.semPararRotMu r JOIN PUB.municipio m ON m.codmun = r.codmun "
            f"WHERE r.sPararRotID = {int(rota_id)} ORDER BY r.sPararMuSeq"
        )

    def get_pedidos_pacote(self, codpac: int) -> List[Dict[str, Any]]:
        """Entregas do pacote na ordem do itinerário"""
        return self._query(
            "SELECT p.codped, p.razcli, p.gps_lat, p.gps_lon, m.cdibge "
            "FROM PUB.pedido p LEFT JOIN PUB.municipio m ON m.codmun = p.codmun "
            f"WHERE p.codpac = {int(codpac)} ORDER BY p.seqent"
        )
