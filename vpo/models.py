"""
Modelos de dados do pipeline de emissão VPO
"""
import json
import re
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from typing import Dict, Any, Optional, List


def only_digits(value: Any) -> str:
    """Remove tudo que não for dígito"""
    if value is None:
        return ""
    return re.sub(r"[^0-9]", "", str(value))


def is_blank(value: Any) -> bool:
    """None, string vazia ou só espaços"""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


@dataclass
class TransporterProfile:
    """Perfil canônico do transportador (ERP + ANTT + cache manual)"""
    codtrn: int
    cpf_cnpj: Optional[str] = None

    # Transportador / ANTT
    antt_rntrc: Optional[str] = None
    antt_nome: Optional[str] = None
    antt_validade: Optional[str] = None
    antt_status: Optional[str] = None

    # Veículo
    placa: Optional[str] = None
    veiculo_tipo: Optional[str] = None
    veiculo_modelo: Optional[str] = None
    veiculo_eixos: Optional[int] = None

    # Condutor
    codmot: Optional[int] = None
    condutor_cpf: Optional[str] = None
    condutor_rg: Optional[str] = None
    condutor_nome: Optional[str] = None
    condutor_sexo: Optional[str] = None
    condutor_nome_mae: Optional[str] = None
    condutor_data_nascimento: Optional[str] = None

    # Endereço
    endereco_rua: Optional[str] = None
    endereco_numero: Optional[str] = None
    endereco_bairro: Optional[str] = None
    endereco_cidade: Optional[str] = None
    endereco_estado: Optional[str] = None

    # Contato
    contato_celular: Optional[str] = None
    contato_email: Optional[str] = None

    tag_codigo: Optional[str] = None

    # Metadados
    fontes_dados: Dict[str, str] = field(default_factory=dict)
    editado_manualmente: bool = False
    data_edicao_manual: Optional[str] = None
    score_qualidade: int = 0
    campos_faltantes: List[Dict[str, str]] = field(default_factory=list)
    ultima_sincronizacao: Optional[str] = None

    @property
    def is_pessoa_fisica(self) -> bool:
        """CPF tem 11 dígitos; qualquer outra coisa é tratada como empresa"""
        return len(only_digits(self.cpf_cnpj)) == 11

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransporterProfile':
        """Cria a partir de dict, ignorando chaves desconhecidas"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Waypoint:
    """Ponto de parada da rota"""
    lat: Optional[float]
    lon: Optional[float]
    codigo_ibge: Optional[str] = None
    nome: str = ""
    tipo: str = "rota"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Waypoint':
        return cls(
            lat=to_float(data.get("lat")),
            lon=to_float(data.get("lon", data.get("lng"))),
            codigo_ibge=only_digits(data.get("codigo_ibge") or data.get("cdibge")) or None,
            nome=data.get("nome") or "",
            tipo=data.get("tipo") or "rota",
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PracaPedagio:
    """Praça de pedágio com valor para a categoria do veículo"""
    codigo: str
    nome: str = ""
    valor: float = 0.0
    rodovia: Optional[str] = None
    km: Optional[str] = None
    localizacao: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PracaPedagio':
        return cls(
            codigo=str(data.get("codigo") or data.get("cnp") or data.get("id") or ""),
            nome=data.get("nome") or data.get("praca") or "",
            valor=to_float(data.get("valor")) or 0.0,
            rodovia=data.get("rodovia"),
            km=None if data.get("km") is None else str(data.get("km")),
            localizacao=data.get("localizacao"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StillProcessing:
    """Resposta ainda não conclusiva (202 / container vazio)"""
    code: Optional[int] = None
    messages: List[str] = field(default_factory=list)


@dataclass
class Succeeded:
    """Emissão / consulta concluída com sucesso"""
    protocol: Optional[str]
    plazas: List[PracaPedagio] = field(default_factory=list)
    cost: Optional[float] = None
    distance: Optional[float] = None
    duration: Optional[int] = None
    code: Optional[int] = None
    messages: List[str] = field(default_factory=list)


@dataclass
class Failed:
    """Resposta terminal de erro"""
    error_message: str
    error_code: Optional[str] = None


def to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    # "1.234,56" -> 1234.56
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def parse_datetime(dt_value) -> Optional[datetime]:
    """Helper para parsear datetime desde string (sqlite)"""
    if dt_value is None or isinstance(dt_value, datetime):
        return dt_value
    try:
        return datetime.fromisoformat(str(dt_value).replace('Z', '+00:00'))
    except ValueError:
        return datetime.strptime(str(dt_value), '%Y-%m-%d %H:%M:%S')
