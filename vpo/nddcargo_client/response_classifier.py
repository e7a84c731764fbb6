"""
Classificação das respostas NDD Cargo (SendResult)

A NDD devolve XML em formatos variados:
1. XML bem formado
2. XML com < > escapados como entidades HTML dentro de um campo string do SOAP
3. XML parcial / malformado

Estratégia em camadas:
1. parse estruturado (lxml, XPath por local-name) do texto como veio
2. XML aninhado em nós de texto e texto com entidades HTML decodificadas
3. regex direto sobre o texto decodificado

Regras (falha sempre verificada ANTES de sucesso):
- Falha: código >= 300 ou = 0, código de mensagem fatal (778), frase de
  falha conhecida ou mensagem de categoria erro
- Processando: código 202 ou container de resultado vazio
- Sucesso: código 200, número de protocolo ou dados de rota (praças/distância)
"""
import html
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from lxml import etree

from ..models import Failed, PracaPedagio, StillProcessing, Succeeded, to_float

logger = logging.getLogger(__name__)

Classification = Union[StillProcessing, Succeeded, Failed]

CODE_PROCESSING = 202
CODE_SUCCESS = 200

# Códigos de mensagem que indicam falha mesmo com container de resultado presente
FATAL_MESSAGE_CODES = {"778"}

FAILURE_PHRASES = (
    "nao foi possivel emitir a operacao de vale-pedagio",
    "nao foi possivel cancelar a operacao de vale-pedagio",
    "operacao de vale-pedagio rejeitada",
    "token invalido",
    "assinatura invalida",
    "assinatura digital invalida",
)

CODE_TAGS = ("ResponseCode", "codigoRetorno", "codigoResposta", "status", "Status")
CONTAINER_TAGS = (
    "resultado",
    "retorno",
    "operacaoValePedagio_retorno",
    "consultarRoteirizador_retorno",
    "cancelarOperacaoValePedagio_retorno",
)
PRACA_TAGS = ("praca", "pracaPedagio")
PROTOCOL_TAGS = ("protocolo", "numeroProtocolo", "protocoloAutorizacao")
COST_TAGS = ("valorTotal", "valorTotalPedagios", "valorTotalVPO", "custoTotal")
DISTANCE_TAGS = ("distancia", "distanciaKm", "distanciaTotal")
DURATION_TAGS = ("tempo", "tempoMinutos", "tempoEstimado")
MESSAGE_CODE_TAGS = ("codigo", "Codigo", "codigoMensagem")
MESSAGE_TEXT_TAGS = ("descricao", "Descricao", "mensagem", "Mensagem", "texto")
ERROR_CONTAINERS = ("erros", "erro", "Erros", "falhas")

PRACA_FIELDS = {
    "codigo": ("cnp", "codigo", "codigoPraca", "id", "ID"),
    "nome": ("nomePraca", "nome", "Nome"),
    "valor": ("valorPraca", "valor", "Valor", "valorTarifa"),
    "rodovia": ("rodovia", "Rodovia"),
    "km": ("km", "KM"),
    "localizacao": ("localizacao", "Localizacao"),
}

_XML_DECL = re.compile(r"<\?xml[^>]*\?>")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


@dataclass
class ResponseMessage:
    """Mensagem aninhada da resposta (info ou erro)"""
    categoria: str
    codigo: Optional[str]
    texto: str

    def format(self) -> str:
        prefix = "[ERRO]" if self.categoria == "erro" else "[INFO]"
        if self.codigo:
            return f"{prefix} {self.codigo} - {self.texto}".strip()
        return f"{prefix} {self.texto}".strip()


@dataclass
class Extraction:
    """Campos extraídos de uma resposta, independente da camada usada"""
    code: Optional[int] = None
    plazas: List[PracaPedagio] = field(default_factory=list)
    protocol: Optional[str] = None
    messages: List[ResponseMessage] = field(default_factory=list)
    container_found: bool = False
    container_empty: bool = False
    cost: Optional[float] = None
    distance: Optional[float] = None
    duration: Optional[int] = None
    source: str = "none"

    def found_anything(self) -> bool:
        return bool(
            self.code is not None
            or self.plazas
            or self.protocol
            or self.messages
            or self.container_found
            or self.cost is not None
            or self.distance is not None
        )


def _normalize(text: str) -> str:
    """minúsculas sem acentos (para comparação de frases)"""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def _local(el) -> str:
    return etree.QName(el).localname if isinstance(el.tag, str) else ""


def _xpath_names(names) -> str:
    return " or ".join(f'local-name()="{n}"' for n in names)


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    value = value.strip()
    if re.fullmatch(r"-?\d+", value):
        return int(value)
    return None


def _merge_code(outer: Optional[int], inner: Optional[int]) -> Optional[int]:
    """código de falha de qualquer camada prevalece; senão o da camada interna"""
    for code in (outer, inner):
        if code is not None and (code >= 300 or code == 0):
            return code
    return inner if inner is not None else outer


def parse_fragment(text: str) -> Optional[etree._Element]:
    """
    Faz o parse de um texto que pode conter vários documentos XML
    concatenados (declarações XML e CDATA removidos).

    Returns:
        Elemento raiz sintético ou None se o texto não for XML válido
    """
    if not text or "<" not in text:
        return None
    cleaned = _CONTROL_CHARS.sub("", text.lstrip("﻿"))
    cleaned = _XML_DECL.sub("", cleaned)
    cleaned = cleaned.replace("<![CDATA[", "").replace("]]>", "")
    parser = etree.XMLParser(resolve_entities=False, huge_tree=True, remove_blank_text=False)
    try:
        return etree.fromstring(f"<_root>{cleaned}</_root>".encode("utf-8"), parser=parser)
    except etree.XMLSyntaxError:
        return None


class ResponseClassifier:
    """
    Classifica o SendResult da NDD Cargo em StillProcessing | Succeeded | Failed.
    """

    def __init__(self, fatal_message_codes=None, failure_phrases=None):
        self.fatal_message_codes = set(fatal_message_codes or FATAL_MESSAGE_CODES)
        self.failure_phrases = tuple(_normalize(p) for p in (failure_phrases or FAILURE_PHRASES))

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------
    def classify(self, raw_response: Union[str, bytes, None]) -> Classification:
        """
        Classifica uma resposta bruta.

        Args:
            raw_response: SendResult (ou envelope completo) como str/bytes

        Returns:
            StillProcessing, Succeeded ou Failed
        """
        text = self._coerce(raw_response)
        if not text.strip():
            # aceite assíncrono sem corpo
            return StillProcessing()

        extraction = self.extract(text)
        decoded = html.unescape(text)
        logger.debug(
            f"Resposta NDD extraída via {extraction.source}: code={extraction.code}, "
            f"pracas={len(extraction.plazas)}, protocolo={extraction.protocol}, "
            f"mensagens={len(extraction.messages)}"
        )
        return self._decide(extraction, decoded)

    def extract(self, text: str) -> Extraction:
        """
        Aplica as camadas e junta o que cada uma encontrou.

        O XML aninhado (texto ou entidades HTML) é sempre lido, mesmo quando
        a camada externa já tem código: o envelope CrossTalk pode trazer 200
        enquanto a lista de mensagens interna traz o erro real.
        """
        root = parse_fragment(text)
        if root is not None:
            extraction = self._extract_from_tree(root)
            extraction.source = "xml"
            nested = self._extract_from_nested_text(root)
            if nested is not None and nested.found_anything():
                nested.source = "xml_nested"
                return self._merge(extraction, nested)
        else:
            extraction = Extraction()

        decoded = text
        for _ in range(2):
            # entidades podem vir escapadas duas vezes (&amp;lt;)
            unescaped = html.unescape(decoded)
            if unescaped == decoded:
                break
            decoded = unescaped
            decoded_root = parse_fragment(decoded)
            if decoded_root is None:
                continue
            result = self._extract_from_tree(decoded_root)
            nested = self._extract_from_nested_text(decoded_root)
            if nested is not None and nested.found_anything():
                result = self._merge(result, nested)
            if result.found_anything():
                result.source = "xml_decoded"
                return self._merge(extraction, result)

        if extraction.found_anything():
            return extraction

        result = self._extract_with_regex(decoded)
        result.source = "regex"
        return result

    # ------------------------------------------------------------------
    # Decisão
    # ------------------------------------------------------------------
    def _decide(self, ex: Extraction, decoded_text: str) -> Classification:
        messages = self._unique_messages(ex.messages)
        code = ex.code

        # 1. falhas
        if code is not None and (code >= 300 or code == 0):
            return self._failed(messages, str(code), f"Erro NDD Cargo (código {code})")

        fatal = next((m for m in ex.messages if m.codigo in self.fatal_message_codes), None)
        if fatal is not None:
            return self._failed(messages, fatal.codigo, fatal.texto)

        normalized = _normalize(decoded_text)
        phrase = next((p for p in self.failure_phrases if p in normalized), None)
        if phrase is not None:
            error_code = str(code) if code is not None else self._first_error_code(ex)
            return self._failed(messages, error_code, phrase)

        error_messages = [m for m in ex.messages if m.categoria == "erro"]
        if error_messages and code != CODE_PROCESSING:
            return self._failed(messages, error_messages[0].codigo, error_messages[0].texto)

        # 2. ainda processando
        if code == CODE_PROCESSING:
            return StillProcessing(code=code, messages=messages)

        # 3. sucesso
        route_data = bool(ex.plazas) or ex.distance is not None
        if code == CODE_SUCCESS or ex.protocol or (route_data and code is None):
            cost = ex.cost
            if cost is None and ex.plazas:
                cost = round(sum(p.valor or 0.0 for p in ex.plazas), 2)
            return Succeeded(
                protocol=ex.protocol,
                plazas=ex.plazas,
                cost=cost,
                distance=ex.distance,
                duration=ex.duration,
                code=code,
                messages=messages,
            )

        # 4. container vazio, código desconhecido ou nada reconhecível
        return StillProcessing(code=code, messages=messages)

    @staticmethod
    def _failed(messages: List[str], error_code: Optional[str], fallback: str) -> Failed:
        error_message = " | ".join(messages) if messages else fallback
        return Failed(error_message=error_message, error_code=error_code)

    @staticmethod
    def _first_error_code(ex: Extraction) -> Optional[str]:
        for m in ex.messages:
            if m.categoria == "erro" and m.codigo:
                return m.codigo
        return None

    @staticmethod
    def _unique_messages(messages: List[ResponseMessage]) -> List[str]:
        seen = []
        for m in messages:
            formatted = m.format()
            if m.texto and formatted not in seen:
                seen.append(formatted)
        return seen

    @staticmethod
    def _is_conclusive(ex: Extraction) -> bool:
        return ex.code is not None or bool(ex.plazas) or bool(ex.protocol)

    @staticmethod
    def _merge(base: Extraction, extra: Extraction) -> Extraction:
        """Campos de `extra` completam os de `base` (mensagens somadas)"""
        return Extraction(
            code=_merge_code(base.code, extra.code),
            plazas=base.plazas or extra.plazas,
            protocol=base.protocol or extra.protocol,
            messages=base.messages + extra.messages,
            container_found=base.container_found or extra.container_found,
            container_empty=extra.container_empty if extra.container_found else base.container_empty,
            cost=base.cost if base.cost is not None else extra.cost,
            distance=base.distance if base.distance is not None else extra.distance,
            duration=base.duration if base.duration is not None else extra.duration,
            source=extra.source,
        )

    @staticmethod
    def _coerce(raw: Union[str, bytes, None]) -> str:
        if raw is None:
            return ""
        if isinstance(raw, bytes):
            if raw[:2] in (b"\xff\xfe", b"\xfe\xff"):
                return raw.decode("utf-16")
            return raw.decode("utf-8", errors="replace")
        return raw

    # ------------------------------------------------------------------
    # Camada 1: XML estruturado
    # ------------------------------------------------------------------
    def _extract_from_tree(self, root) -> Extraction:
        ex = Extraction()
        outside_messages = 'not(ancestor::*[local-name()="mensagens" or local-name()="mensagem"])'

        for tag in CODE_TAGS:
            for node in root.xpath(f'//*[local-name()="{tag}"][{outside_messages}]'):
                if len(node):
                    continue
                value = _to_int(node.text)
                if value is not None:
                    ex.code = value
                    break
            if ex.code is not None:
                break

        for node in root.xpath(f"//*[{_xpath_names(PRACA_TAGS)}]"):
            praca = self._praca_from_element(node)
            if praca is not None:
                ex.plazas.append(praca)

        ex.protocol = self._first_text(root, PROTOCOL_TAGS)
        if not ex.protocol:
            ndvp = root.xpath('//*[local-name()="ndvp"]/*[local-name()="numero"]')
            if ndvp and (ndvp[0].text or "").strip():
                ex.protocol = ndvp[0].text.strip()

        ex.cost = to_float(self._first_text(root, COST_TAGS))
        ex.distance = to_float(self._first_text(root, DISTANCE_TAGS, skip_inside=PRACA_TAGS))
        duration = to_float(self._first_text(root, DURATION_TAGS, skip_inside=PRACA_TAGS))
        ex.duration = int(duration) if duration is not None else None

        ex.messages = self._messages_from_tree(root)

        containers = root.xpath(f"//*[{_xpath_names(CONTAINER_TAGS)}]")
        if containers:
            ex.container_found = True
            container = containers[0]
            ex.container_empty = len(container) == 0 and not (container.text or "").strip()
        return ex

    @staticmethod
    def _first_text(root, names, skip_inside=()) -> Optional[str]:
        condition = _xpath_names(names)
        if skip_inside:
            condition = f"({condition}) and not(ancestor::*[{_xpath_names(skip_inside)}])"
        for node in root.xpath(f"//*[{condition}]"):
            if len(node) == 0 and (node.text or "").strip():
                return node.text.strip()
        return None

    @staticmethod
    def _praca_from_element(node) -> Optional[PracaPedagio]:
        values = {}
        children = {_local(child): (child.text or "").strip() for child in node if len(child) == 0}
        if not children:
            return None
        for key, names in PRACA_FIELDS.items():
            values[key] = next((children[n] for n in names if children.get(n)), None)
        if not values["codigo"] and not values["nome"]:
            return None
        return PracaPedagio(
            codigo=values["codigo"] or "",
            nome=values["nome"] or "",
            valor=to_float(values["valor"]) or 0.0,
            rodovia=values["rodovia"],
            km=values["km"],
            localizacao=values["localizacao"],
        )

    def _messages_from_tree(self, root) -> List[ResponseMessage]:
        messages = []
        for node in root.xpath('//*[local-name()="mensagem" or local-name()="Mensagem"]'):
            if len(node):
                children = {_local(child): (child.text or "").strip() for child in node}
                codigo = next((children[n] for n in MESSAGE_CODE_TAGS if children.get(n)), None)
                texto = next((children[n] for n in MESSAGE_TEXT_TAGS if children.get(n)), "")
                tipo = _normalize(children.get("tipo") or children.get("categoria") or "")
            else:
                # mensagem simples (texto) - ignora se for filha de outra mensagem estruturada
                parent = node.getparent()
                if parent is not None and _local(parent).lower() == "mensagem":
                    continue
                codigo = None
                texto = (node.text or "").strip()
                tipo = ""
            if not texto:
                continue
            messages.append(ResponseMessage(self._categoria(node, tipo), codigo, texto))

        for node in root.xpath('//*[local-name()="ResponseCodeMessage"]'):
            texto = (node.text or "").strip()
            if texto:
                messages.append(ResponseMessage("info", None, texto))
        return messages

    @staticmethod
    def _categoria(node, tipo: str) -> str:
        if tipo:
            return "erro" if tipo.startswith("err") or tipo in ("falha", "e", "2") else "info"
        for ancestor in node.iterancestors():
            if _local(ancestor) in ERROR_CONTAINERS:
                return "erro"
        return "info"

    # ------------------------------------------------------------------
    # Camada 2: XML aninhado em texto
    # ------------------------------------------------------------------
    def _extract_from_nested_text(self, root) -> Optional[Extraction]:
        """lxml já decodifica &lt; &gt; nos nós de texto: reprocessa esses textos"""
        combined = None
        for node in root.iter():
            if not isinstance(node.tag, str):
                continue
            text = (node.text or "").strip()
            if not text.startswith("<"):
                continue
            nested_root = parse_fragment(text)
            if nested_root is None:
                continue
            nested = self._extract_from_tree(nested_root)
            if not nested.found_anything():
                deeper = self._extract_from_nested_text(nested_root)
                nested = deeper if deeper is not None else nested
            combined = nested if combined is None else self._merge(combined, nested)
        return combined

    # ------------------------------------------------------------------
    # Camada 3: regex
    # ------------------------------------------------------------------
    @staticmethod
    def _tag_value(text: str, names) -> Optional[str]:
        pattern = r"<(?:[\w-]+:)?(?:%s)\b[^>/]*>\s*([^<]*?)\s*<" % "|".join(names)
        match = re.search(pattern, text, re.IGNORECASE)
        return match.group(1) if match and match.group(1) else None

    def _extract_with_regex(self, text: str) -> Extraction:
        ex = Extraction()

        code = self._tag_value(text, CODE_TAGS)
        ex.code = _to_int(code)

        praca_pattern = r"<(?:[\w-]+:)?(?:%s)\b[^>]*>(.*?)</(?:[\w-]+:)?(?:%s)\s*>" % (
            "|".join(PRACA_TAGS), "|".join(PRACA_TAGS)
        )
        for block in re.findall(praca_pattern, text, re.DOTALL):
            values = {key: self._tag_value(block, names) for key, names in PRACA_FIELDS.items()}
            if not values["codigo"] and not values["nome"]:
                continue
            ex.plazas.append(PracaPedagio(
                codigo=values["codigo"] or "",
                nome=values["nome"] or "",
                valor=to_float(values["valor"]) or 0.0,
                rodovia=values["rodovia"],
                km=values["km"],
                localizacao=values["localizacao"],
            ))

        ex.protocol = self._tag_value(text, PROTOCOL_TAGS)
        ex.cost = to_float(self._tag_value(text, COST_TAGS))

        message_pattern = r"<(?:[\w-]+:)?mensagem\b[^>]*>(.*?)</(?:[\w-]+:)?mensagem\s*>"
        for block in re.findall(message_pattern, text, re.DOTALL | re.IGNORECASE):
            if "<" in block:
                codigo = self._tag_value(block, MESSAGE_CODE_TAGS)
                texto = self._tag_value(block, MESSAGE_TEXT_TAGS) or ""
                tipo = _normalize(self._tag_value(block, ("tipo", "categoria")) or "")
            else:
                codigo, texto, tipo = None, block.strip(), ""
            if texto:
                categoria = "erro" if tipo.startswith("err") else "info"
                ex.messages.append(ResponseMessage(categoria, codigo, texto))

        # código 778 solto em texto malformado
        if not any(m.codigo for m in ex.messages):
            for codigo in self.fatal_message_codes:
                if re.search(r"(?:codigo|c[oó]digo)\D{0,20}%s\b" % re.escape(codigo), text, re.IGNORECASE):
                    ex.messages.append(ResponseMessage("erro", codigo, f"Código de erro {codigo}"))
        return ex


def summarize(classification: Classification) -> Tuple[str, Optional[str]]:
    """(status, mensagem) curto para logs e auditoria"""
    if isinstance(classification, Succeeded):
        return "concluido", classification.protocol
    if isinstance(classification, Failed):
        return "erro", classification.error_message
    return "processando", None
