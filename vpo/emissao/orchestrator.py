"""
Orquestrador da emissão VPO

Fluxo de start:
    pacote -> sync do transportador -> validação (sem I/O externo se inválido)
    -> rota + waypoints -> praças (frontend ou roteirizador best-effort)
    -> XML -> assinatura -> registro pending -> envio (2028)
    -> terminal imediato ou processing

Estados: pending -> processing -> {completed | failed | cancelled}
failed -> processing apenas por force_retry em falha retentável.

Toda mutação por UUID é serializada por um lock em processo e por updates
compare-and-set (WHERE status IN ...) na base.
"""
import logging
import threading
import time
import uuid as uuid_lib
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from lxml import etree

from .. import emissao_log_db, emissoes_db
from ..emissoes_db import (
    IN_FLIGHT_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    TERMINAL_STATUSES,
)
from ..models import Failed, PracaPedagio, StillProcessing, Succeeded, TransporterProfile, parse_datetime
from ..nddcargo_client.config import NddCargoConfig
from ..nddcargo_client.exceptions import NddCargoClientError, TransportError
from ..nddcargo_client.response_classifier import ResponseClassifier
from ..nddcargo_client.soap_client import NddCargoSoapClient
from ..nddcargo_client.xml_builder import NddCargoXmlBuilder, categoria_pedagio, numero_from_correlation_id
from ..nddcargo_client.xml_signer import SignatureEngine
from .config import EmissaoConfig, get_emissao_config
from .data_merger import DataMerger
from .erp import ErpRepository
from .exceptions import (
    CancelledByUser,
    EmissaoNotFound,
    EmissaoTimeout,
    InvalidStateTransition,
    SourceNotFound,
    UpstreamProtocolError,
    ValidationIncomplete,
)
from .pipeline_logger import PipelineLogger, get_logger
from .validator import CompletenessValidator
from .waypoints import WaypointResolver

logger = logging.getLogger(__name__)

# Códigos de erro gravados em vpo_emissoes.error_code
ERROR_TIMEOUT = "TIMEOUT"
ERROR_POLLING_LIMIT = "POLLING_LIMIT"
ERROR_NDD_CARGO = "NDD_CARGO_ERROR"
ERROR_TRANSPORT = "TRANSPORT_ERROR"

RETRYABLE_ERRORS = (ERROR_TIMEOUT, ERROR_POLLING_LIMIT, ERROR_NDD_CARGO, ERROR_TRANSPORT)

Classification = Union[StillProcessing, Succeeded, Failed]


@dataclass
class EmissaoRequest:
    """Parâmetros de início de emissão"""
    codpac: int
    rota_id: int
    codmot: Optional[int] = None
    placa: Optional[str] = None
    waypoints: Optional[List[Dict[str, Any]]] = None
    # praças/custo/distância já calculados no frontend
    pracas_pedagio: Optional[List[Dict[str, Any]]] = None
    valor_total: Optional[float] = None
    km_total: Optional[float] = None
    tag_codigo: Optional[str] = None
    bypass_validacao: bool = False
    usuario_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class EmissaoResultado:
    """Estado devolvido por start / consultar_resultado"""
    status: str
    emissao: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None
    created: bool = True

    @property
    def uuid(self) -> Optional[str]:
        return self.emissao.get("uuid") if self.emissao else None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.status != STATUS_FAILED,
            "status": self.status,
            "data": self.emissao,
            "message": self.message,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


def resumo(emissao: Dict[str, Any]) -> Dict[str, Any]:
    """Resumo da emissão para exibição"""
    return {
        "uuid": emissao.get("uuid"),
        "codpac": emissao.get("codpac"),
        "codtrn": emissao.get("codtrn"),
        "rota_id": emissao.get("rota_id"),
        "rota_nome": emissao.get("rota_nome"),
        "status": emissao.get("status"),
        "total_waypoints": emissao.get("total_waypoints"),
        "total_pracas": emissao.get("total_pracas"),
        "custo_total": emissao.get("custo_total"),
        "distancia_km": emissao.get("distancia_km"),
        "ndd_protocolo": emissao.get("ndd_protocolo"),
        "error_message": emissao.get("error_message"),
        "error_code": emissao.get("error_code"),
        "tentativas_polling": emissao.get("tentativas_polling"),
        "requested_at": emissao.get("requested_at"),
        "completed_at": emissao.get("completed_at"),
    }


def pracas_do_payload(request_xml: Optional[str]) -> List[PracaPedagio]:
    """Praças informadas no XML enviado (infRota/.../pedagios/pedagio)"""
    if not request_xml:
        return []
    try:
        root = etree.fromstring(request_xml.encode("utf-8"))
    except etree.XMLSyntaxError:
        return []
    pracas = []
    for node in root.xpath('//*[local-name()="pedagio"]'):
        values = {etree.QName(child).localname: (child.text or "").strip() for child in node}
        if values.get("cnp"):
            pracas.append(PracaPedagio(
                codigo=values["cnp"],
                nome=values.get("nomePraca", ""),
                valor=float(values.get("valorPraca") or 0),
            ))
    return pracas


class EmissionOrchestrator:
    """
    Máquina de estados da emissão VPO.
    """

    def __init__(
        self,
        merger: DataMerger,
        erp: ErpRepository,
        builder: NddCargoXmlBuilder,
        signer: SignatureEngine,
        rpc: NddCargoSoapClient,
        classifier: Optional[ResponseClassifier] = None,
        validator: Optional[CompletenessValidator] = None,
        waypoints: Optional[WaypointResolver] = None,
        config: Optional[EmissaoConfig] = None,
        ndd_config: Optional[NddCargoConfig] = None,
        store=emissoes_db,
        audit_log=emissao_log_db,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        pipeline_logger: Optional[PipelineLogger] = None,
    ):
        self.merger = merger
        self.erp = erp
        self.builder = builder
        self.signer = signer
        self.rpc = rpc
        self.classifier = classifier or ResponseClassifier()
        self.validator = validator or CompletenessValidator()
        self.waypoints = waypoints or WaypointResolver(erp)
        self.config = config or get_emissao_config()
        self.ndd_config = ndd_config or builder.config
        self.store = store
        self.audit_log = audit_log
        self.now = now
        self.sleep = sleep
        self.plog = pipeline_logger or get_logger()

        # o lock é descartado quando nenhuma operação em andamento o referencia
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lock_for(self, correlation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(correlation_id)
            if lock is None:
                lock = self._locks[correlation_id] = threading.Lock()
            return lock

    def _get(self, correlation_id: str) -> Dict[str, Any]:
        emissao = self.store.get_emissao(correlation_id)
        if emissao is None:
            raise EmissaoNotFound(f"Emissão não encontrada: {correlation_id}")
        return emissao

    def _log_id(self, correlation_id: str) -> Optional[int]:
        log = self.audit_log.get_log_by_uuid(correlation_id)
        return log["id"] if log else None

    @property
    def _process_vpo(self) -> int:
        return self.ndd_config.get_process_code("vpo")

    def _resultado(self, emissao: Dict[str, Any], message: Optional[str] = None,
                   retry_after: Optional[int] = None, created: bool = True) -> EmissaoResultado:
        status = emissao["status"]
        if message is None and status == STATUS_FAILED:
            message = emissao.get("error_message")
        if retry_after is None and status in IN_FLIGHT_STATUSES:
            retry_after = self.config.intervalo_polling_segundos
        return EmissaoResultado(status=status, emissao=emissao, message=message,
                                retry_after=retry_after, created=created)

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------
    def start(self, request: EmissaoRequest) -> EmissaoResultado:
        """
        Inicia uma emissão.

        Returns:
            EmissaoResultado (created=False quando já existia emissão em
            andamento para o mesmo pacote/rota)

        Raises:
            SourceNotFound: pacote, transportador ou rota inexistente
            ValidationIncomplete: perfil incompleto (nenhuma chamada externa feita)
            CertificateError / SignatureError / PayloadBuildError: falha antes do envio
        """
        codpac = int(request.codpac)
        rota_id = int(request.rota_id)

        existing = self.store.find_in_flight(codpac, rota_id)
        if existing is not None:
            logger.info(f"VPO Emissão: já em andamento uuid={existing['uuid']} codpac={codpac} rota={rota_id}")
            return self._resultado(existing, message="Emissão já em andamento", created=False)

        pacote = self.erp.get_pacote(codpac)
        if not pacote or not pacote.get("codtrn"):
            raise SourceNotFound(f"Pacote {codpac} não encontrado")
        codtrn = int(pacote["codtrn"])
        codmot = request.codmot if request.codmot is not None else pacote.get("codmot")
        codmot = int(codmot) if codmot not in (None, "", 0, "0") else None
        placa = request.placa or pacote.get("numpla")

        log_id = self.audit_log.iniciar(
            codpac=codpac, codtrn=codtrn, placa=placa, rota_id=rota_id, usuario_id=request.usuario_id
        )
        try:
            return self._start(request, codpac, rota_id, codtrn, codmot, placa, log_id)
        except ValidationIncomplete as e:
            self.audit_log.marcar_erro(log_id, "Dados incompletos", e.to_dict())
            raise
        except Exception as e:
            self.audit_log.marcar_erro(log_id, str(e), {"tipo": type(e).__name__})
            raise

    def _start(self, request, codpac, rota_id, codtrn, codmot, placa, log_id) -> EmissaoResultado:
        with self.plog.log_context("vpo_sync", codtrn=codtrn, codmot=codmot):
            profile = self.merger.sync(codtrn, codmot=codmot, placa=placa)

        validation = self.validator.validate(profile)
        if not validation.valid and not request.bypass_validacao:
            self.plog.warning("Validação VPO falhou", codpac=codpac, codtrn=codtrn, score=validation.score)
            raise ValidationIncomplete(validation.missing_fields, validation.score, validation.message)

        with self.plog.log_context("vpo_rota", rota_id=rota_id, codpac=codpac):
            rota = self.waypoints.resolve(rota_id, codpac, request.waypoints)
        self.audit_log.registrar_contexto(
            log_id, transportador_nome=profile.antt_nome, rota_nome=rota.nome, placa=profile.placa
        )

        tag_codigo = request.tag_codigo or profile.tag_codigo
        # lista vazia de praças é rota livre calculada no frontend, não ausência de dados
        dados_frontend = (
            request.pracas_pedagio is not None
            or request.valor_total is not None
            or request.km_total is not None
        )
        distancia = request.km_total
        tempo = None
        if dados_frontend:
            pracas = [PracaPedagio.from_dict(p) for p in request.pracas_pedagio or []]
            custo = request.valor_total
            if custo is None:
                custo = round(sum(p.valor for p in pracas), 2)
        else:
            pracas, custo = [], None
            if tag_codigo and rota.waypoints:
                lookup = self._consultar_rota(profile, rota.waypoints, log_id)
                if lookup is not None:
                    pracas, custo = lookup.plazas, lookup.cost
                    distancia, tempo = lookup.distance, lookup.duration

        correlation_id = str(uuid_lib.uuid4())
        with self.plog.log_context("vpo_xml", uuid=correlation_id):
            payload = self.builder.build_vpo_request(
                profile, rota.waypoints, pracas, tag_code=tag_codigo,
                rota_nome=rota.nome, correlation_id=correlation_id,
            )
            signed_xml = self.signer.sign(payload.xml, correlation_id)

        emissao, created = self.store.create_if_no_in_flight({
            "uuid": correlation_id,
            "codpac": codpac,
            "codtrn": codtrn,
            "codmot": profile.codmot or codmot,
            "rota_id": rota_id,
            "rota_nome": rota.nome,
            "waypoints": [wp.to_dict() for wp in rota.waypoints],
            "total_waypoints": len(rota.waypoints),
            "vpo_data": profile.to_dict(),
            "fontes_dados": profile.fontes_dados,
            "score_qualidade": validation.score,
            "status": STATUS_PENDING,
            "ndd_request_xml": signed_xml,
            "pracas_pedagio": [p.to_dict() for p in pracas],
            "total_pracas": len(pracas),
            "custo_total": custo,
            "distancia_km": distancia,
            "tempo_minutos": tempo,
            "dados_frontend": dados_frontend,
            "requested_at": self.now(),
            "usuario_id": request.usuario_id,
            "ip_address": request.ip_address,
            "user_agent": request.user_agent,
        })
        if not created:
            # outra requisição ganhou a corrida
            self.audit_log.marcar_cancelado(log_id)
            return self._resultado(emissao, message="Emissão já em andamento", created=False)

        self.audit_log.vincular_emissao(log_id, correlation_id)
        self.audit_log.registrar_emissao_enviada(log_id, signed_xml)

        with self._lock_for(correlation_id):
            with self.plog.log_context("vpo_envio", uuid=correlation_id):
                response = self.rpc.submit(signed_xml, correlation_id, self._process_vpo)

            if not response.accepted:
                self.audit_log.registrar_emissao_resposta(log_id, response.raw_response, mensagem=response.error)
                return self._finalize_failed(
                    correlation_id, f"Erro de transporte: {response.error}", ERROR_TRANSPORT,
                    raw_response=response.raw_response, expected=(STATUS_PENDING,),
                )

            classification = self.classifier.classify(response.raw_response)
            self._registrar_resposta(log_id, response.raw_response, classification)
            if isinstance(classification, StillProcessing):
                self.store.update_emissao(
                    correlation_id,
                    {
                        "status": STATUS_PROCESSING,
                        "ndd_response": response.raw_response,
                        "janela_polling_inicio": self.now(),
                        "janela_polling_base": 0,
                    },
                    expected_status=(STATUS_PENDING,),
                )
                logger.info(f"VPO Emissão: iniciada uuid={correlation_id}, aguardando processamento")
                return self._resultado(self._get(correlation_id), message="Emissão iniciada")

            return self._finalize(correlation_id, classification, response.raw_response, expected=(STATUS_PENDING,))

    def _consultar_rota(self, profile: TransporterProfile, waypoints, log_id: int) -> Optional[Succeeded]:
        """
        Consulta best-effort do roteirizador (2027). Falha não bloqueia a emissão.
        """
        process_code = self.ndd_config.get_process_code("roteirizador")
        try:
            payload = self.builder.build_route_query(waypoints, categoria_pedagio(profile))
            signed = self.signer.sign(payload.xml, payload.correlation_id)
        except NddCargoClientError as e:
            logger.warning(f"VPO Roteirizador: não foi possível montar/assinar a consulta: {e}")
            return None

        self.audit_log.registrar_roteirizador_enviado(log_id, signed)
        response = self.rpc.submit(signed, payload.correlation_id, process_code)
        attempts = 1
        while True:
            if not response.accepted:
                logger.warning(f"VPO Roteirizador: erro de transporte: {response.error}")
                classification = None
            else:
                classification = self.classifier.classify(response.raw_response)

            if isinstance(classification, Succeeded):
                self.audit_log.registrar_roteirizador_resposta(
                    log_id, response.raw_response, len(classification.plazas), classification.cost
                )
                return classification
            if isinstance(classification, Failed):
                logger.warning(f"VPO Roteirizador: erro NDD: {classification.error_message}")
                self.audit_log.registrar_roteirizador_resposta(log_id, response.raw_response)
                return None
            if attempts >= self.config.roteirizador_tentativas:
                logger.warning(f"VPO Roteirizador: sem resposta após {attempts} tentativas, seguindo sem praças")
                self.audit_log.registrar_roteirizador_resposta(log_id, response.raw_response)
                return None

            self.sleep(self.config.roteirizador_intervalo_segundos)
            response = self.rpc.poll(payload.correlation_id, process_code)
            attempts += 1

    def _registrar_resposta(self, log_id: Optional[int], raw: Optional[str], classification: Classification):
        if log_id is None:
            return
        codigo = getattr(classification, "code", None)
        if isinstance(classification, Failed):
            self.audit_log.registrar_emissao_resposta(
                log_id, raw, codigo_retorno=classification.error_code, mensagem=classification.error_message
            )
        elif isinstance(classification, Succeeded):
            self.audit_log.registrar_emissao_resposta(
                log_id, raw, codigo_retorno=codigo, mensagem=" | ".join(classification.messages) or None,
                protocolo=classification.protocol,
            )
        else:
            self.audit_log.registrar_emissao_resposta(log_id, raw, codigo_retorno=codigo)

    # ------------------------------------------------------------------
    # Finalização
    # ------------------------------------------------------------------
    def _finalize(self, correlation_id: str, classification: Classification, raw: Optional[str],
                  expected=(STATUS_PROCESSING,)) -> EmissaoResultado:
        if isinstance(classification, Succeeded):
            return self._finalize_completed(correlation_id, classification, raw, expected)
        return self._finalize_failed(
            correlation_id, classification.error_message, ERROR_NDD_CARGO,
            raw_response=raw, ndd_code=classification.error_code, expected=expected,
        )

    def _finalize_completed(self, correlation_id: str, result: Succeeded, raw: Optional[str],
                            expected) -> EmissaoResultado:
        emissao = self._get(correlation_id)
        fields: Dict[str, Any] = {
            "status": STATUS_COMPLETED,
            "ndd_response": raw,
            "ndd_protocolo": result.protocol,
            "ndd_codigo_retorno": str(result.code) if result.code is not None else None,
            "completed_at": self.now(),
        }
        # dados do frontend nunca são sobrescritos pela resposta
        if not emissao.get("dados_frontend"):
            if result.plazas or result.cost is not None or result.distance is not None:
                pracas = result.plazas
                fields["custo_total"] = result.cost
                fields["distancia_km"] = result.distance
                fields["tempo_minutos"] = result.duration
            else:
                pracas = pracas_do_payload(emissao.get("ndd_request_xml"))
                if pracas:
                    fields["custo_total"] = round(sum(p.valor for p in pracas), 2)
            if pracas:
                fields["pracas_pedagio"] = [p.to_dict() for p in pracas]
                fields["total_pracas"] = len(pracas)

        if not self.store.update_emissao(correlation_id, fields, expected_status=expected):
            logger.info(f"VPO Emissão: {correlation_id} já finalizada por outra requisição")
            return self._resultado(self._get(correlation_id))

        emissao = self._get(correlation_id)
        log_id = self._log_id(correlation_id)
        if log_id is not None:
            self.audit_log.marcar_sucesso(
                log_id, result.protocol, emissao.get("custo_total"), emissao.get("total_pracas")
            )
        self.merger.cache.register_use(emissao["codtrn"])
        self.plog.info("Emissão VPO concluída", uuid=correlation_id, protocolo=result.protocol,
                       total_pracas=emissao.get("total_pracas"), custo_total=emissao.get("custo_total"))
        return self._resultado(emissao, message="Emissão concluída")

    def _finalize_failed(self, correlation_id: str, message: str, error_code: str,
                         raw_response: Optional[str] = None, ndd_code: Optional[str] = None,
                         expected=(STATUS_PROCESSING,)) -> EmissaoResultado:
        fields: Dict[str, Any] = {
            "status": STATUS_FAILED,
            "error_message": message,
            "error_code": error_code,
            "failed_at": self.now(),
        }
        if raw_response is not None:
            fields["ndd_response"] = raw_response
        if ndd_code is not None:
            fields["ndd_codigo_retorno"] = str(ndd_code)

        if not self.store.update_emissao(correlation_id, fields, expected_status=expected):
            logger.info(f"VPO Emissão: {correlation_id} já finalizada por outra requisição")
            return self._resultado(self._get(correlation_id))

        log_id = self._log_id(correlation_id)
        if log_id is not None:
            self.audit_log.marcar_erro(log_id, message, {"error_code": error_code, "ndd_codigo": ndd_code})
        self.plog.error("Emissão VPO falhou", uuid=correlation_id, error_code=error_code, error=message)
        return self._resultado(self._get(correlation_id), message=message)

    # ------------------------------------------------------------------
    # consultar_resultado
    # ------------------------------------------------------------------
    def _budget_exceeded(self, emissao: Dict[str, Any]) -> Optional[str]:
        """Código de erro se a janela de polling esgotou (tempo ou tentativas)"""
        inicio = parse_datetime(emissao.get("janela_polling_inicio") or emissao.get("requested_at"))
        if inicio and self.now() - inicio > timedelta(minutes=self.config.timeout_minutos):
            return ERROR_TIMEOUT
        tentativas = (emissao.get("tentativas_polling") or 0) - (emissao.get("janela_polling_base") or 0)
        if tentativas > self.config.max_tentativas_polling:
            return ERROR_POLLING_LIMIT
        return None

    def _finalize_budget(self, correlation_id: str, error_code: str, expected) -> EmissaoResultado:
        if error_code == ERROR_TIMEOUT:
            message = f"Timeout: sem resposta da NDD Cargo em {self.config.timeout_minutos} minutos"
        else:
            message = f"Limite de {self.config.max_tentativas_polling} consultas excedido"
        return self._finalize_failed(correlation_id, message, error_code, expected=expected)

    def consultar_resultado(self, correlation_id: str, force_retry: bool = False) -> EmissaoResultado:
        """
        Consulta (polling) o resultado de uma emissão.

        Idempotente para emissões finalizadas. Com force_retry, uma emissão
        falha por timeout, limite de polling, erro NDD ou transporte volta a
        processing numa nova janela de polling (o contador não é zerado).

        Raises:
            EmissaoNotFound: UUID desconhecido
        """
        with self._lock_for(correlation_id):
            emissao = self._get(correlation_id)
            status = emissao["status"]

            if status in TERMINAL_STATUSES:
                retryable = status == STATUS_FAILED and emissao.get("error_code") in RETRYABLE_ERRORS
                if not (force_retry and retryable):
                    return self._resultado(emissao)
                reopened = self.store.update_emissao(
                    correlation_id,
                    {
                        "status": STATUS_PROCESSING,
                        "error_message": None,
                        "error_code": None,
                        "failed_at": None,
                        "janela_polling_inicio": self.now(),
                        "janela_polling_base": emissao.get("tentativas_polling") or 0,
                    },
                    expected_status=(STATUS_FAILED,),
                )
                emissao = self._get(correlation_id)
                if not reopened:
                    return self._resultado(emissao)
                self.plog.info("Retry forçado da emissão VPO", uuid=correlation_id,
                               tentativas_polling=emissao.get("tentativas_polling"))
            elif status == STATUS_PENDING:
                # start ainda não concluiu o envio
                exceeded = self._budget_exceeded(emissao)
                if exceeded == ERROR_TIMEOUT:
                    return self._finalize_budget(correlation_id, exceeded, expected=(STATUS_PENDING,))
                return self._resultado(emissao)
            elif not force_retry:
                exceeded = self._budget_exceeded(emissao)
                if exceeded:
                    return self._finalize_budget(correlation_id, exceeded, expected=(STATUS_PROCESSING,))
                polled_at = parse_datetime(emissao.get("polled_at"))
                intervalo = timedelta(seconds=self.config.intervalo_polling_segundos)
                if polled_at and self.now() - polled_at < intervalo:
                    return self._resultado(emissao)

            return self._poll(correlation_id)

    def _poll(self, correlation_id: str) -> EmissaoResultado:
        tentativas = self.store.register_polling(correlation_id, self.now())
        if tentativas is None:
            return self._resultado(self._get(correlation_id))

        response = self.rpc.poll(correlation_id, self._process_vpo)
        log_id = self._log_id(correlation_id)

        if not response.accepted:
            # transporte: continua processing, limitado pela janela
            logger.warning(f"VPO Emissão: erro ao consultar NDD Cargo uuid={correlation_id}: {response.error}")
            emissao = self._get(correlation_id)
            exceeded = self._budget_exceeded(emissao)
            if exceeded:
                return self._finalize_budget(correlation_id, exceeded, expected=(STATUS_PROCESSING,))
            return self._resultado(emissao, message=response.error)

        classification = self.classifier.classify(response.raw_response)
        self._registrar_resposta(log_id, response.raw_response, classification)

        if isinstance(classification, StillProcessing):
            self.store.update_emissao(
                correlation_id, {"ndd_response": response.raw_response}, expected_status=(STATUS_PROCESSING,)
            )
            emissao = self._get(correlation_id)
            exceeded = self._budget_exceeded(emissao)
            if exceeded:
                return self._finalize_budget(correlation_id, exceeded, expected=(STATUS_PROCESSING,))
            logger.debug(f"VPO Emissão: {correlation_id} ainda processando (tentativa {tentativas})")
            return self._resultado(emissao)

        return self._finalize(correlation_id, classification, response.raw_response)

    def aguardar_conclusao(self, correlation_id: str, max_consultas: Optional[int] = None) -> Dict[str, Any]:
        """
        Polling bloqueante até o estado terminal.

        Returns:
            Emissão concluída

        Raises:
            EmissaoTimeout: janela de polling esgotada
            UpstreamProtocolError: NDD Cargo respondeu erro
            CancelledByUser: emissão cancelada durante a espera
        """
        max_consultas = max_consultas or self.config.max_tentativas_polling + 1
        for _ in range(max_consultas):
            resultado = self.consultar_resultado(correlation_id)
            if resultado.status == STATUS_COMPLETED:
                return resultado.emissao
            if resultado.status == STATUS_CANCELLED:
                raise CancelledByUser(f"Emissão {correlation_id} cancelada")
            if resultado.status == STATUS_FAILED:
                error_code = resultado.emissao.get("error_code")
                if error_code in (ERROR_TIMEOUT, ERROR_POLLING_LIMIT):
                    raise EmissaoTimeout(resultado.message or "Timeout da emissão")
                raise UpstreamProtocolError(resultado.message or "Erro NDD Cargo",
                                            resultado.emissao.get("ndd_codigo_retorno"))
            self.sleep(resultado.retry_after or self.config.intervalo_polling_segundos)
        raise EmissaoTimeout(f"Emissão {correlation_id} sem resultado após {max_consultas} consultas")

    # ------------------------------------------------------------------
    # Cancelamento
    # ------------------------------------------------------------------
    def cancel(self, correlation_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Cancela localmente uma emissão ainda não finalizada.

        Raises:
            EmissaoNotFound, InvalidStateTransition
        """
        with self._lock_for(correlation_id):
            emissao = self._get(correlation_id)
            if emissao["status"] in TERMINAL_STATUSES:
                raise InvalidStateTransition(
                    f"Emissão {correlation_id} já finalizada (status={emissao['status']})"
                )
            cancelled = self.store.update_emissao(
                correlation_id,
                {
                    "status": STATUS_CANCELLED,
                    "cancelled_at": self.now(),
                    "cancellation_reason": reason or "Cancelada pelo usuário",
                },
                expected_status=IN_FLIGHT_STATUSES,
            )
            if not cancelled:
                raise InvalidStateTransition(f"Emissão {correlation_id} finalizada durante o cancelamento")

            log_id = self._log_id(correlation_id)
            if log_id is not None:
                self.audit_log.marcar_cancelado(log_id)
            logger.info(f"VPO Emissão: cancelada localmente uuid={correlation_id}")
            return self._get(correlation_id)

    def cancel_on_remote(
        self,
        correlation_id: str,
        reason: str,
        identificacao: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Cancela na NDD Cargo uma emissão concluída (ProcessCode de cancelamento).

        Args:
            reason: motivo (1-500 caracteres)
            identificacao: {'tipo': 'ide', 'numero', 'serie'} ou
                {'tipo': 'ndvp', 'numero', 'cod_verificador'}; padrão é o ide enviado

        Raises:
            InvalidStateTransition: emissão não está completed
            TransportError: falha de rede
            UpstreamProtocolError: NDD recusou o cancelamento
            EmissaoTimeout: sem resposta dentro das tentativas
        """
        with self._lock_for(correlation_id):
            emissao = self._get(correlation_id)
            if emissao["status"] != STATUS_COMPLETED:
                raise InvalidStateTransition(
                    f"Cancelamento na NDD Cargo só é permitido para emissões concluídas (status={emissao['status']})"
                )

            identificacao = dict(identificacao or {})
            identificacao.setdefault("tipo", "ide")
            if identificacao["tipo"] == "ide":
                identificacao.setdefault("numero", numero_from_correlation_id(correlation_id))
                identificacao.setdefault("serie", self.ndd_config.serie_padrao)

            payload = self.builder.build_cancellation(reason, identificacao)
            signed = self.signer.sign(payload.xml, payload.correlation_id)
            process_code = self.ndd_config.get_process_code("cancelamento")

            self.store.update_emissao(correlation_id, {"ndd_cancellation_request": signed})
            response = self.rpc.submit(signed, payload.correlation_id, process_code)
            attempts = 1
            while True:
                if not response.accepted:
                    self.store.update_emissao(correlation_id, {"ndd_cancellation_response": response.raw_response})
                    raise TransportError(f"Erro de transporte no cancelamento: {response.error}")

                classification = self.classifier.classify(response.raw_response)
                self.store.update_emissao(correlation_id, {"ndd_cancellation_response": response.raw_response})
                if isinstance(classification, Failed):
                    raise UpstreamProtocolError(classification.error_message, classification.error_code)
                if isinstance(classification, Succeeded):
                    break
                if attempts >= self.config.roteirizador_tentativas:
                    raise EmissaoTimeout("Cancelamento sem resposta da NDD Cargo")
                self.sleep(self.config.roteirizador_intervalo_segundos)
                response = self.rpc.poll(payload.correlation_id, process_code)
                attempts += 1

            self.store.update_emissao(
                correlation_id,
                {
                    "status": STATUS_CANCELLED,
                    "cancelled_at": self.now(),
                    "cancellation_reason": reason,
                },
                expected_status=(STATUS_COMPLETED,),
            )
            log_id = self._log_id(correlation_id)
            if log_id is not None:
                self.audit_log.marcar_cancelado(log_id)
            self.plog.info("Emissão VPO cancelada na NDD Cargo", uuid=correlation_id,
                           protocolo=classification.protocol)
            return self._get(correlation_id)

    # ------------------------------------------------------------------
    # Consultas auxiliares
    # ------------------------------------------------------------------
    def preview_waypoints(self, rota_id: int, codpac: int) -> Dict[str, Any]:
        """Waypoints que seriam usados na emissão (sem persistir nada)"""
        return self.waypoints.resolve(int(rota_id), int(codpac)).to_dict()

    def validar_pacote(self, codpac: int) -> Dict[str, Any]:
        """
        Verifica se o pacote existe e tem entregas com GPS.

        Raises:
            SourceNotFound: pacote inexistente
        """
        pacote = self.erp.get_pacote(int(codpac))
        if not pacote:
            raise SourceNotFound(f"Pacote {codpac} não encontrado")
        gps = self.waypoints.pacote_tem_gps(int(codpac))
        return {
            "pacote": pacote,
            "tem_gps": gps["tem_gps"],
            "total_entregas": gps["total_entregas"],
            "valido": gps["tem_gps"] and gps["total_entregas"] > 0,
        }

    def estatisticas(self) -> Dict[str, Any]:
        return self.store.statistics(self.now())

    def listar(self, **filtros) -> List[Dict[str, Any]]:
        return [resumo(e) for e in self.store.list_emissoes(**filtros)]
