"""
Cliente SOAP 1.1 CrossTalk para NDD Cargo (ExchangeMessage.asmx)

Notas importantes:
- O envelope vai em UTF-16LE (não UTF-8!), com
  Content-Type: text/xml; charset=utf-16 e SOAPAction http://tempuri.org/Send.
- Operação única `Send` com dois campos CDATA: `message` (CrossTalk_Message)
  e `rawData` (XML assinado; vazio nas consultas assíncronas).
- ExchangePattern 7 = envio síncrono, 8 = consulta assíncrona por GUID.
- O cliente não interpreta o conteúdo da resposta: devolve o texto bruto
  (SendResult quando presente) para o ResponseClassifier.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from lxml import etree
from requests import Session
from requests.adapters import HTTPAdapter
from requests.exceptions import RequestException

from .config import NddCargoConfig

logger = logging.getLogger(__name__)

SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
TEMPURI_NS = "http://tempuri.org/"
XSD_NS = "http://www.w3.org/2001/XMLSchema"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

SOAP_ACTION = "http://tempuri.org/Send"

MESSAGE_TYPE_REQUEST = 100
EXCHANGE_PATTERN_SYNC = 7
EXCHANGE_PATTERN_ASYNC_QUERY = 8

TZ_BRASIL = ZoneInfo("America/Sao_Paulo")


@dataclass
class RpcResponse:
    """Resultado de uma chamada ao canal SOAP"""
    accepted: bool
    raw_response: Optional[str] = None
    error: Optional[str] = None
    http_status: Optional[int] = None
    request_envelope: Optional[str] = None


def escape_cdata(content: str) -> str:
    """Remove marcadores CDATA aninhados (não permitidos dentro de CDATA)"""
    return (content or "").replace("<![CDATA[", "").replace("]]>", "")


class NddCargoSoapClient:
    """
    Canal RPC assíncrono NDD Cargo: submit (envio) e poll (consulta por GUID).
    """

    def __init__(self, config: NddCargoConfig, session: Optional[Session] = None):
        self.config = config
        self.connect_timeout = config.connect_timeout
        self.read_timeout = config.read_timeout
        self.session = session or self._create_session()

    def _create_session(self) -> Session:
        session = Session()
        # Sem retry automático: o reenvio de um Send não é idempotente
        adapter = HTTPAdapter(max_retries=0, pool_connections=4, pool_maxsize=10)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------
    def build_crosstalk_message(self, process_code: int, exchange_pattern: int, guid: str) -> str:
        """Monta o CrossTalk_Message (cabeçalho + versão do layout)"""
        ns = NddCargoConfig.CROSSTALK_NAMESPACE
        root = etree.Element(f"{{{ns}}}CrossTalk_Message", nsmap={None: ns, "xsd": XSD_NS, "xsi": XSI_NS})
        header = etree.SubElement(root, f"{{{ns}}}CrossTalk_Header")
        date_time = datetime.now(TZ_BRASIL).isoformat(timespec="seconds")
        for name, value in (
            ("ProcessCode", process_code),
            ("MessageType", MESSAGE_TYPE_REQUEST),
            ("ExchangePattern", exchange_pattern),
            ("GUID", guid),
            ("DateTime", date_time),
            ("EnterpriseId", self.config.cnpj_empresa),
            ("Token", self.config.token),
        ):
            etree.SubElement(header, f"{{{ns}}}{name}").text = str(value)
        body = etree.SubElement(root, f"{{{ns}}}CrossTalk_Body")
        version = etree.SubElement(body, f"{{{ns}}}CrossTalk_Version_Body")
        version.set("versao", self.config.versao_layout)
        return etree.tostring(root, encoding="unicode")

    def build_envelope(self, crosstalk_message: str, raw_data: str = "") -> str:
        """Envelope SOAP 1.1 com tem:Send (message/rawData em CDATA)"""
        envelope = etree.Element(
            f"{{{SOAP_NS}}}Envelope", nsmap={"soapenv": SOAP_NS, "tem": TEMPURI_NS}
        )
        etree.SubElement(envelope, f"{{{SOAP_NS}}}Header")
        body = etree.SubElement(envelope, f"{{{SOAP_NS}}}Body")
        send = etree.SubElement(body, f"{{{TEMPURI_NS}}}Send")
        etree.SubElement(send, f"{{{TEMPURI_NS}}}message").text = etree.CDATA(escape_cdata(crosstalk_message))
        etree.SubElement(send, f"{{{TEMPURI_NS}}}rawData").text = etree.CDATA(escape_cdata(raw_data))
        body_xml = etree.tostring(envelope, encoding="unicode")
        return "<?xml version='1.0' encoding='utf-16'?>\n" + body_xml

    @staticmethod
    def extract_send_result(soap_response: str) -> Optional[str]:
        """
        Extrai o texto de SendResult do envelope de resposta.

        Returns:
            Conteúdo de SendResult (sem marcadores CDATA) ou None
        """
        try:
            parser = etree.XMLParser(huge_tree=True, resolve_entities=False)
            root = etree.fromstring(soap_response.encode("utf-8"), parser=parser)
        except etree.XMLSyntaxError:
            # declaração utf-16 num texto já decodificado
            try:
                body = soap_response.split("?>", 1)[1] if soap_response.lstrip().startswith("<?xml") else soap_response
                root = etree.fromstring(body.encode("utf-8"))
            except (etree.XMLSyntaxError, IndexError):
                return None

        nodes = root.xpath("//tem:SendResult", namespaces={"tem": TEMPURI_NS})
        if not nodes:
            nodes = root.xpath('//*[local-name()="SendResult"]')
        if not nodes:
            return None
        text = nodes[0].text or ""
        return text.replace("<![CDATA[", "").replace("]]>", "")

    # ------------------------------------------------------------------
    # Transporte
    # ------------------------------------------------------------------
    def _post(self, envelope: str, guid: str, suffix: str) -> RpcResponse:
        payload = envelope.encode("utf-16-le")
        headers = {
            "Content-Type": "text/xml; charset=utf-16",
            "SOAPAction": SOAP_ACTION,
            "Accept": "text/xml",
        }
        logger.info(
            f"Enviando SOAP NDD Cargo: endpoint={self.config.endpoint_url}, guid={guid}, size_bytes={len(payload)}"
        )
        if self.config.log_xml:
            logger.debug(f"Envelope SOAP ({guid}): {envelope[:2000]}")

        try:
            resp = self.session.post(
                self.config.endpoint_url,
                data=payload,
                headers=headers,
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except RequestException as e:
            logger.error(f"Erro de transporte NDD Cargo (guid={guid}): {e}")
            return RpcResponse(accepted=False, error=f"Erro de transporte: {e}", request_envelope=envelope)

        body = self._decode_body(resp.content)
        self._save_raw_soap_debug(payload, resp.content, f"{suffix}_{guid}")

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.error(f"Erro HTTP {resp.status_code} NDD Cargo (guid={guid}): {body[:500]}")
            return RpcResponse(
                accepted=False,
                raw_response=body,
                error=f"Erro HTTP {resp.status_code}: {body[:500]}",
                http_status=resp.status_code,
                request_envelope=envelope,
            )

        send_result = self.extract_send_result(body)
        if send_result is None:
            logger.warning(f"SendResult não encontrado na resposta SOAP (guid={guid})")
            return RpcResponse(
                accepted=False,
                raw_response=body,
                error="Envelope SOAP malformado: SendResult não encontrado",
                http_status=resp.status_code,
                request_envelope=envelope,
            )

        logger.info(f"Resposta SOAP recebida: guid={guid}, status={resp.status_code}, size={len(send_result)}")
        return RpcResponse(
            accepted=True,
            raw_response=send_result,
            http_status=resp.status_code,
            request_envelope=envelope,
        )

    @staticmethod
    def _decode_body(content: bytes) -> str:
        """Resposta vem em UTF-16 (com ou sem BOM); tolera UTF-8"""
        if not content:
            return ""
        if content[:2] in (b"\xff\xfe", b"\xfe\xff"):
            return content.decode("utf-16")
        if len(content) > 1 and content[1:2] == b"\x00":
            return content.decode("utf-16-le", errors="replace")
        return content.decode("utf-8", errors="replace")

    def _save_raw_soap_debug(self, request_bytes: bytes, response_bytes: Optional[bytes], suffix: str):
        """Guarda SOAP RAW enviado/recebido quando NDD_CARGO_DEBUG_SOAP=1"""
        if not self.config.debug_soap:
            return
        try:
            out_dir = Path(self.config.artifacts_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            ts = datetime.now().strftime("%Y%m%d_%H%M%S")
            (out_dir / f"soap_ndd_{ts}_{suffix}_request.xml").write_bytes(request_bytes)
            if response_bytes is not None:
                (out_dir / f"soap_ndd_{ts}_{suffix}_response.xml").write_bytes(response_bytes)
        except OSError as e:
            logger.warning(f"Não foi possível salvar SOAP de debug: {e}")

    # ------------------------------------------------------------------
    # Operações
    # ------------------------------------------------------------------
    def submit(self, signed_xml: str, correlation_id: str, process_code: int) -> RpcResponse:
        """
        Envia um XML assinado (ExchangePattern síncrono).

        A resposta pode ser final ou apenas "aceito, processando"; quem decide
        é o ResponseClassifier.
        """
        message = self.build_crosstalk_message(process_code, EXCHANGE_PATTERN_SYNC, correlation_id)
        envelope = self.build_envelope(message, signed_xml)
        return self._post(envelope, correlation_id, f"submit_{process_code}")

    def poll(self, correlation_id: str, process_code: int) -> RpcResponse:
        """
        Consulta o resultado de um envio anterior pelo GUID.

        Args:
            correlation_id: GUID usado no envio
            process_code: 2028 (VPO), 2027 (roteirizador) ou 2029 (cancelamento)
        """
        message = self.build_crosstalk_message(process_code, EXCHANGE_PATTERN_ASYNC_QUERY, correlation_id)
        envelope = self.build_envelope(message, "")
        return self._post(envelope, correlation_id, f"poll_{process_code}")

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
