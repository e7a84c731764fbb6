"""
Resolução de rota e pontos de parada (waypoints)

- Municípios da rota SemParar (PUB.semPararRot / semPararRotMu)
- Primeira e última entrega do pacote (GPS do pedido)
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import Waypoint, only_digits, to_float
from .erp import ErpRepository
from .exceptions import SourceNotFound

logger = logging.getLogger(__name__)


def process_gps_coordinate(value: Any) -> Optional[float]:
    """
    Converte a coordenada GPS inteira do ERP em graus decimais.

    O ERP grava o valor absoluto * 10^7 sem sinal. As entregas ficam todas
    no hemisfério sul e a oeste de Greenwich, então latitude e longitude sem
    sinal são negativas; um sinal explícito é respeitado.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or text == "0":
        return None
    try:
        number = int(float(text))
    except ValueError:
        return None
    if number > 0 and not text.startswith("+"):
        number = -number
    return number / 10_000_000


@dataclass
class RotaResolvida:
    rota_id: int
    nome: str
    waypoints: List[Waypoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.rota_id,
            "nome": self.nome,
            "waypoints": [wp.to_dict() for wp in self.waypoints],
            "total": len(self.waypoints),
        }


class WaypointResolver:
    """Resolve rota + waypoints a partir do ERP"""

    def __init__(self, erp: ErpRepository):
        self.erp = erp

    def get_rota_nome(self, rota_id: int) -> str:
        rota = self.erp.get_rota(int(rota_id))
        if not rota:
            raise SourceNotFound(f"Rota {rota_id} não encontrada")
        return str(rota.get("desspararrot") or "").strip()

    def rota_waypoints(self, rota_id: int) -> List[Waypoint]:
        waypoints = []
        for mun in self.erp.get_rota_municipios(int(rota_id)):
            lat = to_float(mun.get("latitude"))
            lon = to_float(mun.get("longitude"))
            if lat is None or lon is None:
                continue
            waypoints.append(Waypoint(
                lat=lat,
                lon=lon,
                codigo_ibge=only_digits(mun.get("cdibge")) or None,
                nome=str(mun.get("desmun") or "").strip(),
                tipo="rota",
            ))
        return waypoints

    def entregas_waypoints(self, codpac: int) -> List[Waypoint]:
        """Primeira e última entrega do pacote (quando têm GPS)"""
        pedidos = self.erp.get_pedidos_pacote(int(codpac))
        if not pedidos:
            return []

        waypoints = []
        extremos = [("primeira_entrega", pedidos[0])]
        if len(pedidos) > 1:
            extremos.append(("ultima_entrega", pedidos[-1]))
        for tipo, pedido in extremos:
            lat = process_gps_coordinate(pedido.get("gps_lat"))
            lon = process_gps_coordinate(pedido.get("gps_lon"))
            if lat is None or lon is None:
                continue
            waypoints.append(Waypoint(
                lat=lat,
                lon=lon,
                codigo_ibge=only_digits(pedido.get("cdibge")) or None,
                nome=str(pedido.get("razcli") or "").strip(),
                tipo=tipo,
            ))
        return waypoints

    def resolve(self, rota_id: int, codpac: int, waypoints: Optional[List[Any]] = None) -> RotaResolvida:
        """
        Rota + waypoints. Waypoints informados pelo chamador têm precedência;
        caso contrário usa os municípios da rota e as entregas do pacote.

        Raises:
            SourceNotFound: rota inexistente
        """
        nome = self.get_rota_nome(rota_id)
        if waypoints:
            resolved = [wp if isinstance(wp, Waypoint) else Waypoint.from_dict(wp) for wp in waypoints]
        else:
            resolved = self.rota_waypoints(rota_id) + self.entregas_waypoints(codpac)
        logger.info(f"VPO Rota: rota_id={rota_id}, nome={nome}, waypoints={len(resolved)}")
        return RotaResolvida(rota_id=int(rota_id), nome=nome, waypoints=resolved)

    def pacote_tem_gps(self, codpac: int) -> Dict[str, Any]:
        pedidos = self.erp.get_pedidos_pacote(int(codpac))
        tem_gps = any(
            process_gps_coordinate(p.get("gps_lat")) is not None
            and process_gps_coordinate(p.get("gps_lon")) is not None
            for p in pedidos
        )
        return {"tem_gps": tem_gps, "total_entregas": len(pedidos)}
