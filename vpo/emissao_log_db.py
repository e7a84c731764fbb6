"""
Log de auditoria das emissões VPO (tabela vpo_emissao_logs)

Cada tentativa de emissão gera um registro ANTES de qualquer chamada de
rede; as fases (roteirizador, emissão) gravam request/response XML e os
horários de envio/resposta.
"""
import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import db
from .models import parse_datetime

logger = logging.getLogger(__name__)

LOG_STATUS_INICIADO = "iniciado"
LOG_STATUS_CALCULANDO = "calculando"
LOG_STATUS_AGUARDANDO = "aguardando"
LOG_STATUS_SUCESSO = "sucesso"
LOG_STATUS_ERRO = "erro"
LOG_STATUS_CANCELADO = "cancelado"

VALID_STATUSES = [
    LOG_STATUS_INICIADO,
    LOG_STATUS_CALCULANDO,
    LOG_STATUS_AGUARDANDO,
    LOG_STATUS_SUCESSO,
    LOG_STATUS_ERRO,
    LOG_STATUS_CANCELADO,
]

PENDING_STATUSES = (LOG_STATUS_INICIADO, LOG_STATUS_CALCULANDO, LOG_STATUS_AGUARDANDO)


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _update(log_id: int, fields: Dict[str, Any]) -> bool:
    if not fields:
        return False
    if "status" in fields and fields["status"] not in VALID_STATUSES:
        raise ValueError(f"Status de log inválido: {fields['status']}. Válidos: {VALID_STATUSES}")
    updates = ", ".join(f"{key} = ?" for key in fields)
    conn = db.get_conn()
    try:
        cursor = conn.execute(
            f"UPDATE vpo_emissao_logs SET {updates} WHERE id = ?",
            [*fields.values(), log_id],
        )
        conn.commit()
        return cursor.rowcount > 0
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao atualizar log de emissão: {e}") from e
    finally:
        conn.close()


def iniciar(
    codpac: Optional[int] = None,
    codtrn: Optional[int] = None,
    placa: Optional[str] = None,
    rota_id: Optional[int] = None,
    rota_nome: Optional[str] = None,
    transportador_nome: Optional[str] = None,
    usuario_id: Optional[int] = None,
) -> int:
    """
    Cria o registro de auditoria de uma tentativa de emissão.

    Returns:
        ID do log criado
    """
    conn = db.get_conn()
    try:
        cursor = conn.execute(
            """
            INSERT INTO vpo_emissao_logs
                (codpac, codtrn, placa, rota_id, rota_nome, transportador_nome, usuario_id, status, iniciado_em)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (codpac, codtrn, placa, rota_id, rota_nome, transportador_nome, usuario_id,
             LOG_STATUS_INICIADO, _now()),
        )
        conn.commit()
        log_id = cursor.lastrowid
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao iniciar log de emissão: {e}") from e
    finally:
        conn.close()

    logger.info(f"VpoEmissaoLog: log iniciado id={log_id}, codpac={codpac}, codtrn={codtrn}")
    return log_id


def vincular_emissao(log_id: int, emissao_uuid: str) -> bool:
    return _update(log_id, {"emissao_uuid": emissao_uuid})


def registrar_contexto(
    log_id: int,
    transportador_nome: Optional[str] = None,
    rota_nome: Optional[str] = None,
    placa: Optional[str] = None,
) -> bool:
    """Completa o log com dados resolvidos depois do início (nomes e placa)"""
    fields = {
        "transportador_nome": transportador_nome,
        "rota_nome": rota_nome,
        "placa": placa,
    }
    return _update(log_id, {k: v for k, v in fields.items() if v is not None})


def registrar_roteirizador_enviado(log_id: int, request_xml: str) -> bool:
    return _update(log_id, {
        "status": LOG_STATUS_CALCULANDO,
        "roteirizador_request_xml": request_xml,
        "roteirizador_enviado_em": _now(),
    })


def registrar_roteirizador_resposta(
    log_id: int,
    response_xml: Optional[str],
    total_pracas: int = 0,
    valor_total: Optional[float] = None,
) -> bool:
    return _update(log_id, {
        "roteirizador_response_xml": response_xml,
        "roteirizador_resposta_em": _now(),
        "total_pracas": total_pracas,
        "valor_total": valor_total,
    })


def registrar_emissao_enviada(log_id: int, request_xml: str) -> bool:
    return _update(log_id, {
        "status": LOG_STATUS_AGUARDANDO,
        "emissao_request_xml": request_xml,
        "emissao_enviada_em": _now(),
    })


def registrar_emissao_resposta(
    log_id: int,
    response_xml: Optional[str],
    codigo_retorno: Optional[str] = None,
    mensagem: Optional[str] = None,
    protocolo: Optional[str] = None,
) -> bool:
    fields = {"emissao_response_xml": response_xml, "emissao_resposta_em": _now()}
    if codigo_retorno is not None:
        fields["ndd_codigo_retorno"] = str(codigo_retorno)
    if mensagem is not None:
        fields["ndd_mensagem"] = mensagem
    if protocolo is not None:
        fields["ndd_protocolo"] = protocolo
    return _update(log_id, fields)


def marcar_sucesso(
    log_id: int,
    protocolo: Optional[str] = None,
    valor_total: Optional[float] = None,
    total_pracas: Optional[int] = None,
) -> bool:
    fields: Dict[str, Any] = {"status": LOG_STATUS_SUCESSO, "finalizado_em": _now()}
    if protocolo is not None:
        fields["ndd_protocolo"] = protocolo
    if valor_total is not None:
        fields["valor_total"] = valor_total
    if total_pracas is not None:
        fields["total_pracas"] = total_pracas
    updated = _update(log_id, fields)
    logger.info(f"VpoEmissaoLog: emissão concluída id={log_id}, protocolo={protocolo}")
    return updated


def marcar_erro(log_id: int, mensagem: str, detalhes: Optional[Dict[str, Any]] = None) -> bool:
    updated = _update(log_id, {
        "status": LOG_STATUS_ERRO,
        "erro_mensagem": mensagem,
        "erro_detalhes": json.dumps(detalhes, ensure_ascii=False, default=str) if detalhes else None,
        "finalizado_em": _now(),
    })
    logger.error(f"VpoEmissaoLog: emissão com erro id={log_id}: {mensagem}")
    return updated


def marcar_cancelado(log_id: int) -> bool:
    return _update(log_id, {"status": LOG_STATUS_CANCELADO, "finalizado_em": _now()})


def get_log(log_id: int) -> Optional[Dict[str, Any]]:
    conn = db.get_conn()
    try:
        row = conn.execute("SELECT * FROM vpo_emissao_logs WHERE id = ?", (log_id,)).fetchone()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao obter log de emissão: {e}") from e
    finally:
        conn.close()
    data = db._row_to_dict(row)
    if data is not None:
        data["duracao_segundos"] = duracao_segundos(data)
    return data


def get_log_by_uuid(emissao_uuid: str) -> Optional[Dict[str, Any]]:
    conn = db.get_conn()
    try:
        row = conn.execute(
            "SELECT id FROM vpo_emissao_logs WHERE emissao_uuid = ? ORDER BY id DESC LIMIT 1",
            (emissao_uuid,),
        ).fetchone()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao obter log de emissão: {e}") from e
    finally:
        conn.close()
    return get_log(row["id"]) if row else None


def duracao_segundos(log: Dict[str, Any]) -> Optional[int]:
    """Segundos entre iniciado_em e finalizado_em (None se não finalizado)"""
    inicio = parse_datetime(log.get("iniciado_em"))
    fim = parse_datetime(log.get("finalizado_em"))
    if not inicio or not fim:
        return None
    return int((fim - inicio).total_seconds())


def _periodo(query: str, params: List[Any], data_inicio: Optional[str], data_fim: Optional[str]) -> str:
    if data_inicio and data_fim:
        query += " AND iniciado_em BETWEEN ? AND ?"
        params.extend([f"{data_inicio}T00:00:00", f"{data_fim}T23:59:59"])
    return query


def listar(
    status: Optional[str] = None,
    codtrn: Optional[int] = None,
    codpac: Optional[int] = None,
    placa: Optional[str] = None,
    data_inicio: Optional[str] = None,
    data_fim: Optional[str] = None,
    busca: Optional[str] = None,
    limit: int = 15,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """
    Lista logs com filtros opcionais.

    Args:
        busca: termo procurado em transportador, placa, rota, uuid e pacote
        data_inicio / data_fim: período (YYYY-MM-DD), ambos obrigatórios

    Returns:
        Logs ordenados do mais recente para o mais antigo
    """
    query = "SELECT * FROM vpo_emissao_logs WHERE 1=1"
    params: List[Any] = []

    if status:
        query += " AND status = ?"
        params.append(status)
    if codtrn:
        query += " AND codtrn = ?"
        params.append(int(codtrn))
    if codpac:
        query += " AND codpac = ?"
        params.append(int(codpac))
    if placa:
        query += " AND placa LIKE ?"
        params.append(f"%{placa}%")
    query = _periodo(query, params, data_inicio, data_fim)
    if busca:
        like = f"%{busca}%"
        query += (
            " AND (transportador_nome LIKE ? OR placa LIKE ? OR rota_nome LIKE ?"
            " OR emissao_uuid LIKE ? OR CAST(codpac AS TEXT) LIKE ?)"
        )
        params.extend([like] * 5)

    query += " ORDER BY id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    conn = db.get_conn()
    try:
        rows = conn.execute(query, params).fetchall()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao listar logs de emissão: {e}") from e
    finally:
        conn.close()

    logs = []
    for row in rows:
        data = db._row_to_dict(row)
        data["duracao_segundos"] = duracao_segundos(data)
        logs.append(data)
    return logs


def estatisticas(data_inicio: Optional[str] = None, data_fim: Optional[str] = None) -> Dict[str, Any]:
    """
    Totais do período: sucesso, erro, pendente, taxa de sucesso e valores.
    """
    params: List[Any] = []
    where = _periodo("WHERE 1=1", params, data_inicio, data_fim)
    pending_marks = ", ".join("?" for _ in PENDING_STATUSES)

    conn = db.get_conn()
    try:
        row = conn.execute(
            f"""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS sucesso,
                SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS erro,
                SUM(CASE WHEN status IN ({pending_marks}) THEN 1 ELSE 0 END) AS pendente,
                SUM(CASE WHEN status = ? THEN COALESCE(valor_total, 0) ELSE 0 END) AS valor_total,
                SUM(CASE WHEN status = ? THEN COALESCE(total_pracas, 0) ELSE 0 END) AS pracas_total
            FROM vpo_emissao_logs {where}
            """,
            [LOG_STATUS_SUCESSO, LOG_STATUS_ERRO, *PENDING_STATUSES,
             LOG_STATUS_SUCESSO, LOG_STATUS_SUCESSO, *params],
        ).fetchone()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao calcular estatísticas de logs: {e}") from e
    finally:
        conn.close()

    total = row["total"] or 0
    sucesso = row["sucesso"] or 0
    valor_total = round(row["valor_total"] or 0.0, 2)
    return {
        "total": total,
        "sucesso": sucesso,
        "erro": row["erro"] or 0,
        "pendente": row["pendente"] or 0,
        "taxa_sucesso": round(sucesso / total * 100, 1) if total else 0,
        "valor_total_pedagios": valor_total,
        "valor_total_formatado": formatar_reais(valor_total),
        "pracas_total": row["pracas_total"] or 0,
    }


def formatar_reais(valor: float) -> str:
    """1234.5 -> 'R$ 1.234,50'"""
    texto = f"{valor:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {texto}"
