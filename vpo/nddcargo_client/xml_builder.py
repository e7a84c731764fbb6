"""
Montagem dos XMLs NDD Cargo (layout 4.2.12.0)

- operacaoValePedagio_envio: emissão de VPO
- consultarRoteirizador_envio: consulta de rota / praças
- cancelarOperacaoValePedagio_envio: cancelamento de VPO emitido

O elemento inf* de cada documento carrega o Id (UUID) referenciado pela
assinatura. Mesma entrada lógica => mesmo XML byte a byte (exceto o UUID).
"""
import logging
import re
import uuid as uuid_lib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from lxml import etree

from ..models import PracaPedagio, TransporterProfile, Waypoint, only_digits
from .config import NddCargoConfig
from .exceptions import PayloadBuildError

logger = logging.getLogger(__name__)

NDD_NS = NddCargoConfig.NDD_NAMESPACE

# codigoFornecedor da TAG: 1 ConectCar, 2 SemParar, 3 Veloe, 4 Move Mais, 5 Ticketlog
TAG_FORNECEDOR_SEMPARAR = "2"

MOTIVO_CANCELAMENTO_PADRAO = "Cancelamento solicitado pelo usuário"


@dataclass
class BuiltPayload:
    """XML montado + UUID de correlação"""
    xml: str
    correlation_id: str


def format_date(value: Optional[str]) -> str:
    """Normaliza data para YYYY-MM-DD (aceita Y-m-d, d/m/Y, d-m-Y, Y/m/d)"""
    if not value:
        return ""
    text = str(value).strip()[:10]
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return text


def categoria_pedagio_por_eixos(eixos: int) -> int:
    if eixos <= 2:
        return 5
    if eixos <= 5:
        return 6
    return 7


def categoria_pedagio_por_tipo(tipo_veiculo: Optional[str]) -> int:
    """Infere a categoria de pedágio pela descrição do tipo de veículo"""
    tipo = (tipo_veiculo or "").lower()
    if "moto" in tipo:
        return 1
    if "auto" in tipo or "carro" in tipo:
        return 2
    if "truck" in tipo or "3/4" in tipo:
        return 3
    if "toco" in tipo:
        return 4
    if "carreta" in tipo:
        return 6
    # caminhão leve 2 eixos
    return 5


def categoria_pedagio(profile: TransporterProfile) -> int:
    if profile.veiculo_eixos is not None:
        return categoria_pedagio_por_eixos(int(profile.veiculo_eixos))
    return categoria_pedagio_por_tipo(profile.veiculo_tipo)


def tipo_veiculo(tipo: Optional[str]) -> str:
    """2 = reboque/semirreboque, 1 = tração"""
    texto = (tipo or "").lower()
    if "reboque" in texto or "semi" in texto or "carreta" in texto:
        return "2"
    return "1"


def numero_from_correlation_id(correlation_id: str) -> str:
    """Número curto (6 dígitos) da operação derivado do UUID"""
    try:
        value = uuid_lib.UUID(correlation_id).int
    except ValueError:
        value = int(only_digits(correlation_id) or "0")
    return str(100000 + value % 900000)


class NddCargoXmlBuilder:
    """
    Monta os XMLs de envio NDD Cargo a partir do perfil canônico do transportador.
    """

    def __init__(self, config: NddCargoConfig):
        self.config = config

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _tag(name: str) -> str:
        return f"{{{NDD_NS}}}{name}"

    def _root(self, name: str) -> etree._Element:
        root = etree.Element(self._tag(name), nsmap={None: NDD_NS})
        root.set("versao", self.config.versao_layout)
        root.set("token", self.config.token or "")
        return root

    def _child(self, parent: etree._Element, name: str) -> etree._Element:
        return etree.SubElement(parent, self._tag(name))

    def _add(self, parent: etree._Element, name: str, value: Any) -> Optional[etree._Element]:
        """Adiciona elemento somente se houver valor (após strip)"""
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        el = etree.SubElement(parent, self._tag(name))
        # lxml faz o escape de &, <, > e aspas
        el.text = text
        return el

    def _add_required(self, parent: etree._Element, name: str, value: Any, default: str) -> etree._Element:
        text = "" if value is None else str(value).strip()
        el = etree.SubElement(parent, self._tag(name))
        el.text = text or default
        return el

    @staticmethod
    def _serialize(root: etree._Element) -> str:
        return etree.tostring(
            root, xml_declaration=True, encoding="UTF-8", pretty_print=False
        ).decode("utf-8")

    @staticmethod
    def _waypoints_com_ibge(waypoints: Iterable[Union[Waypoint, Dict[str, Any]]]) -> List[Waypoint]:
        result = []
        for wp in waypoints or []:
            if isinstance(wp, dict):
                wp = Waypoint.from_dict(wp)
            if wp.codigo_ibge:
                result.append(wp)
            else:
                logger.debug(f"Waypoint sem código IBGE descartado: {wp.nome or wp.tipo}")
        return result

    # ------------------------------------------------------------------
    # Emissão VPO
    # ------------------------------------------------------------------
    def build_vpo_request(
        self,
        profile: TransporterProfile,
        waypoints: Iterable[Union[Waypoint, Dict[str, Any]]],
        plazas: Iterable[Union[PracaPedagio, Dict[str, Any]]] = (),
        tag_code: Optional[str] = None,
        rota_nome: Optional[str] = None,
        correlation_id: Optional[str] = None,
        numero: Optional[str] = None,
    ) -> BuiltPayload:
        """
        Monta operacaoValePedagio_envio.

        Args:
            profile: Perfil canônico (snapshot)
            waypoints: Pontos de parada; os sem código IBGE são descartados
            plazas: Praças de pedágio (lista vazia = rota sem pedágio)
            tag_code: Código da TAG SemParar (opcional)
            rota_nome: Nome curto da rota (rotaERP, até 30 caracteres)
            correlation_id: UUID; gerado se None
            numero: Número da operação; derivado do UUID se None

        Returns:
            BuiltPayload com xml e correlation_id
        """
        correlation_id = correlation_id or str(uuid_lib.uuid4())
        cnpj_empresa = only_digits(self.config.cnpj_empresa)
        pontos = self._waypoints_com_ibge(waypoints)
        pracas = [p if isinstance(p, PracaPedagio) else PracaPedagio.from_dict(p) for p in plazas or []]

        root = self._root("operacaoValePedagio_envio")
        inf = self._child(root, "infOperacaoValePedagio")
        inf.set("Id", correlation_id)
        inf.set("tipoPagamento", "1")

        self._add(inf, "cnpj", cnpj_empresa)

        ide = self._child(inf, "ide")
        self._add(ide, "cnpj", cnpj_empresa)
        self._add(ide, "numero", numero or numero_from_correlation_id(correlation_id))
        self._add(ide, "serie", self.config.serie_padrao)
        # ptEmissor pode ser diferente do CNPJ da empresa
        self._add(ide, "ptEmissor", self.config.pt_emissor or cnpj_empresa)
        # dataFinal não é enviada (NDD assume +30 dias; enviar causa erro 751)

        transportador = self._child(inf, "transportador")
        rntrc = only_digits(profile.antt_rntrc).zfill(9)
        self._add(transportador, "rntrc", rntrc)

        # O tamanho do documento prevalece sobre flags do ERP
        documento = only_digits(profile.cpf_cnpj)
        if not documento:
            raise PayloadBuildError("cpf_cnpj do transportador não informado")
        if len(documento) <= 11:
            self._add(transportador, "cpfTransportador", documento.zfill(11))
        else:
            self._add(transportador, "cnpjTransportador", documento.zfill(14))

        inf_transp = self._child(transportador, "infTransportador")
        tac = self._child(self._child(inf_transp, "ide"), "tac")
        self._add_required(tac, "nomeCompleto", profile.condutor_nome or profile.antt_nome, "NAO INFORMADO")
        self._add_required(tac, "nomeMae", profile.condutor_nome_mae, "NAO INFORMADA")
        self._add_required(tac, "dataNascimento", format_date(profile.condutor_data_nascimento), "1980-01-01")
        self._add_required(tac, "identidade", profile.condutor_rg, "000000000")

        # Ordem exigida pelo XSD: UF, cidade, bairro, logradouro, numero
        endereco = self._child(inf_transp, "endereco")
        self._add_required(endereco, "UF", profile.endereco_estado, "SP")
        self._add_required(endereco, "cidade", profile.endereco_cidade, "NAO INFORMADO")
        self._add_required(endereco, "bairro", profile.endereco_bairro, "CENTRO")
        self._add_required(endereco, "logradouro", profile.endereco_rua, "NAO INFORMADO")
        self._add_required(endereco, "numero", only_digits(profile.endereco_numero), "0")

        self._add(inf_transp, "telefone", only_digits(profile.contato_celular))

        inf_rota = self._child(inf, "infRota")
        self._add(inf_rota, "categoriaPedagio", categoria_pedagio(profile))

        rota = self._child(inf_rota, "rota")
        rota_erp = (rota_nome or "").strip()
        if not rota_erp or len(rota_erp) > 30:
            first = pontos[0].codigo_ibge if pontos else "0000000"
            last = pontos[-1].codigo_ibge if pontos else "0000000"
            rota_erp = f"{first} x {last}"
        rota_erp = rota_erp[:30]
        self._add(rota, "rotaERP", rota_erp)

        if pontos:
            info = self._child(rota, "informacoes")
            self._add(info, "nome", rota_erp)
            pontos_el = self._child(info, "pontosParada")
            for wp in pontos:
                ponto = self._child(pontos_el, "pontoParada")
                self._add(ponto, "codigoIBGE", wp.codigo_ibge)
                self._add(ponto, "tipoRotaEspecifico", "1")
            # 2 = praças informadas manualmente (não usar roteirizador NDD)
            self._add(info, "utilizarRoteirizador", "2")

            if pracas:
                pedagios = self._child(info, "pedagios")
                for praca in pracas:
                    if not praca.codigo:
                        raise PayloadBuildError(f"Praça sem código (cnp): {praca.nome}")
                    pedagio = self._child(pedagios, "pedagio")
                    self._add(pedagio, "cnp", praca.codigo)
                    self._add(pedagio, "nomePraca", (praca.nome or f"Praca {praca.codigo}")[:255])
                    self._add(pedagio, "valorPraca", f"{float(praca.valor or 0):.2f}")

        veiculo = self._child(inf, "veiculo")
        self._add(veiculo, "placa", re.sub(r"[^A-Z0-9]", "", (profile.placa or "").upper()))
        veic_info = self._child(veiculo, "informacoes")
        self._add(veic_info, "modelo", profile.veiculo_modelo or "CAMINHAO")
        self._add(veic_info, "tipo", tipo_veiculo(profile.veiculo_tipo))
        self._add(veic_info, "RNTRCTransportador", rntrc)

        if tag_code and tag_code.strip():
            tag = self._child(inf, "informacoesTag")
            self._add(tag, "codigoFornecedor", TAG_FORNECEDOR_SEMPARAR)
            self._add(tag, "codigoTag", tag_code.strip())

        xml = self._serialize(root)
        logger.debug(f"XML VPO montado: uuid={correlation_id}, pontos={len(pontos)}, pracas={len(pracas)}")
        return BuiltPayload(xml=xml, correlation_id=correlation_id)

    # ------------------------------------------------------------------
    # Roteirizador
    # ------------------------------------------------------------------
    def build_route_query(
        self,
        waypoints: Iterable[Union[Waypoint, Dict[str, Any]]],
        toll_category: int = 3,
        correlation_id: Optional[str] = None,
    ) -> BuiltPayload:
        """
        Monta consultarRoteirizador_envio (consulta de praças e custos da rota).
        """
        correlation_id = correlation_id or str(uuid_lib.uuid4())
        cnpj_empresa = only_digits(self.config.cnpj_empresa)
        pontos = self._waypoints_com_ibge(waypoints)

        root = self._root("consultarRoteirizador_envio")
        inf = self._child(root, "infConsultarRoteirizador")
        inf.set("ID", correlation_id)
        self._add(inf, "cnpj", cnpj_empresa)

        consulta = self._child(inf, "consulta")
        self._add(consulta, "cnpjContratante", cnpj_empresa)
        self._add(consulta, "categoriaPedagio", int(toll_category))

        info = self._child(consulta, "informacoes")
        self._add(info, "tipoRotaPadrao", "1")
        pontos_el = self._child(info, "pontosParada")
        for wp in pontos:
            ponto = self._child(pontos_el, "pontoParada")
            self._add(ponto, "codigoIBGE", wp.codigo_ibge)

        cfg = self._child(info, "configuracaoRoteirizador")
        self._add(cfg, "evitarPedagios", "0")
        self._add(cfg, "priorizarRodovias", "1")
        self._add(cfg, "tipoRota", "1")
        self._add(cfg, "tipoVeiculo", "2")
        self._add(cfg, "retornarTrecho", "1")

        return BuiltPayload(xml=self._serialize(root), correlation_id=correlation_id)

    # ------------------------------------------------------------------
    # Cancelamento
    # ------------------------------------------------------------------
    def build_cancellation(
        self,
        motivo: Optional[str],
        identificacao: Dict[str, Any],
        cnpj_contratante: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> BuiltPayload:
        """
        Monta cancelarOperacaoValePedagio_envio.

        Args:
            motivo: Motivo do cancelamento (1-500 caracteres)
            identificacao: {'tipo': 'ide', 'numero', 'serie'} ou
                {'tipo': 'ndvp', 'numero', 'cod_verificador'}
            cnpj_contratante: CNPJ; usa o da configuração se None
        """
        correlation_id = correlation_id or str(uuid_lib.uuid4())
        cnpj = only_digits(cnpj_contratante or self.config.cnpj_empresa).zfill(14)

        root = self._root("cancelarOperacaoValePedagio_envio")
        inf = self._child(root, "infCancelarOperacaoValePedagio")
        inf.set("Id", correlation_id)
        self._add(inf, "cnpj", cnpj)

        autorizacao = self._child(inf, "autorizacao")
        self._add(autorizacao, "cnpj", cnpj)

        tipo = (identificacao.get("tipo") or "ide").lower()
        numero = identificacao.get("numero")
        if not numero:
            raise PayloadBuildError("Número da operação a cancelar não informado")
        if tipo == "ndvp":
            ndvp = self._child(autorizacao, "ndvp")
            self._add(ndvp, "numero", only_digits(numero))
            self._add(ndvp, "ndvpCodVerificador", only_digits(identificacao.get("cod_verificador")))
        elif tipo == "ide":
            ide = self._child(autorizacao, "ide")
            self._add(ide, "numero", numero)
            self._add(ide, "serie", identificacao.get("serie") or self.config.serie_padrao)
        else:
            raise PayloadBuildError(f"Tipo de identificação inválido: {tipo}")

        texto = (motivo or "").strip()[:500]
        self._add(inf, "motivoCancelamento", texto or MOTIVO_CANCELAMENTO_PADRAO)

        return BuiltPayload(xml=self._serialize(root), correlation_id=correlation_id)
