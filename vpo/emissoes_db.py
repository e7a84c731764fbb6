"""
Persistência das solicitações de emissão VPO (tabela vpo_emissoes)
"""
import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import db
from .models import parse_datetime

# Estados válidos
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

VALID_STATUSES = [
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_CANCELLED,
]

IN_FLIGHT_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)

JSON_FIELDS = ("waypoints", "vpo_data", "fontes_dados", "pracas_pedagio")
BOOL_FIELDS = ("dados_frontend",)


def now_iso(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now()).isoformat(timespec="seconds")


def _encode(fields: Dict[str, Any]) -> Dict[str, Any]:
    encoded = {}
    for key, value in fields.items():
        if key in JSON_FIELDS and value is not None and not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False)
        elif key in BOOL_FIELDS and value is not None:
            value = 1 if value else 0
        elif isinstance(value, datetime):
            value = now_iso(value)
        encoded[key] = value
    return encoded


def _decode(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    data = db._row_to_dict(row)
    if data is None:
        return None
    for key in JSON_FIELDS:
        if data.get(key):
            try:
                data[key] = json.loads(data[key])
            except (TypeError, ValueError):
                pass
    for key in BOOL_FIELDS:
        data[key] = bool(data.get(key))
    return data


def _check_status(status: str):
    if status not in VALID_STATUSES:
        raise ValueError(f"Status inválido: {status}. Válidos: {VALID_STATUSES}")


def create_if_no_in_flight(fields: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """
    Cria a emissão, a menos que já exista uma em andamento (pending/processing)
    para o mesmo (codpac, rota_id).

    Args:
        fields: colunas da emissão (uuid, codpac, codtrn, ...)

    Returns:
        (emissão, criada) - criada=False quando a existente foi devolvida

    Raises:
        ValueError: uuid duplicado ou status inválido
        ConnectionError: erro de base de dados
    """
    fields = dict(fields)
    fields.setdefault("status", STATUS_PENDING)
    _check_status(fields["status"])
    fields.setdefault("requested_at", now_iso())
    fields["created_at"] = fields["updated_at"] = now_iso()
    encoded = _encode(fields)

    conn = db.get_conn()
    try:
        # BEGIN IMMEDIATE: a verificação e o insert ficam na mesma transação de escrita
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            """
            SELECT * FROM vpo_emissoes
            WHERE codpac = ? AND rota_id IS ? AND status IN (?, ?)
            ORDER BY id DESC LIMIT 1
            """,
            (encoded["codpac"], encoded.get("rota_id"), *IN_FLIGHT_STATUSES),
        ).fetchone()
        if row is not None:
            conn.execute("COMMIT")
            return _decode(row), False

        columns = ", ".join(encoded.keys())
        placeholders = ", ".join("?" for _ in encoded)
        conn.execute(f"INSERT INTO vpo_emissoes ({columns}) VALUES ({placeholders})", list(encoded.values()))
        created = conn.execute("SELECT * FROM vpo_emissoes WHERE uuid = ?", (encoded["uuid"],)).fetchone()
        conn.execute("COMMIT")
        return _decode(created), True
    except sqlite3.IntegrityError as e:
        conn.execute("ROLLBACK")
        raise ValueError(f"Emissão já existe: {fields.get('uuid')}") from e
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise ConnectionError(f"Erro ao criar emissão: {e}") from e
    finally:
        conn.close()


def get_emissao(uuid: str) -> Optional[Dict[str, Any]]:
    """
    Obtém uma emissão pelo UUID.

    Returns:
        Emissão com todos os campos (JSON decodificado) ou None
    """
    conn = db.get_conn()
    try:
        row = conn.execute("SELECT * FROM vpo_emissoes WHERE uuid = ?", (uuid,)).fetchone()
        return _decode(row)
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao obter emissão: {e}") from e
    finally:
        conn.close()


def find_in_flight(codpac: int, rota_id: Optional[int]) -> Optional[Dict[str, Any]]:
    conn = db.get_conn()
    try:
        row = conn.execute(
            """
            SELECT * FROM vpo_emissoes
            WHERE codpac = ? AND rota_id IS ? AND status IN (?, ?)
            ORDER BY id DESC LIMIT 1
            """,
            (codpac, rota_id, *IN_FLIGHT_STATUSES),
        ).fetchone()
        return _decode(row)
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao buscar emissão em andamento: {e}") from e
    finally:
        conn.close()


def update_emissao(
    uuid: str,
    fields: Dict[str, Any],
    expected_status: Optional[Iterable[str]] = None,
) -> bool:
    """
    Atualiza campos da emissão.

    Args:
        uuid: UUID da emissão
        fields: colunas a atualizar
        expected_status: se informado, só atualiza quando o status atual
            está nesse conjunto (compare-and-set)

    Returns:
        True se atualizou, False se não encontrou ou o status mudou
    """
    if "status" in fields:
        _check_status(fields["status"])
    fields = dict(fields)
    fields["updated_at"] = now_iso()
    encoded = _encode(fields)

    updates = [f"{key} = ?" for key in encoded]
    params: List[Any] = list(encoded.values())
    query = f"UPDATE vpo_emissoes SET {', '.join(updates)} WHERE uuid = ?"
    params.append(uuid)

    if expected_status is not None:
        expected = [expected_status] if isinstance(expected_status, str) else list(expected_status)
        query += f" AND status IN ({', '.join('?' for _ in expected)})"
        params.extend(expected)

    conn = db.get_conn()
    try:
        cursor = conn.execute(query, params)
        conn.commit()
        return cursor.rowcount > 0
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao atualizar emissão: {e}") from e
    finally:
        conn.close()


def register_polling(uuid: str, polled_at: Optional[datetime] = None) -> Optional[int]:
    """
    Incrementa atomicamente tentativas_polling de uma emissão em processamento.

    Returns:
        Novo número de tentativas, ou None se a emissão não está em processing
    """
    conn = db.get_conn()
    try:
        cursor = conn.execute(
            """
            UPDATE vpo_emissoes
            SET tentativas_polling = tentativas_polling + 1, polled_at = ?, updated_at = ?
            WHERE uuid = ? AND status = ?
            """,
            (now_iso(polled_at), now_iso(), uuid, STATUS_PROCESSING),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
        row = conn.execute("SELECT tentativas_polling FROM vpo_emissoes WHERE uuid = ?", (uuid,)).fetchone()
        return row["tentativas_polling"] if row else None
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao registrar polling: {e}") from e
    finally:
        conn.close()


def list_emissoes(
    status: Optional[str] = None,
    codtrn: Optional[int] = None,
    codpac: Optional[int] = None,
    rota_id: Optional[int] = None,
    data_inicio: Optional[str] = None,
    data_fim: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """
    Lista emissões com filtros opcionais.

    Returns:
        Lista de emissões ordenadas por id DESC (últimas primeiro)
    """
    query = "SELECT * FROM vpo_emissoes WHERE 1=1"
    params: List[Any] = []

    if status:
        _check_status(status)
        query += " AND status = ?"
        params.append(status)
    if codtrn is not None:
        query += " AND codtrn = ?"
        params.append(int(codtrn))
    if codpac is not None:
        query += " AND codpac = ?"
        params.append(int(codpac))
    if rota_id is not None:
        query += " AND rota_id = ?"
        params.append(int(rota_id))
    if data_inicio:
        query += " AND requested_at >= ?"
        params.append(data_inicio)
    if data_fim:
        query += " AND requested_at <= ?"
        params.append(data_fim)

    query += " ORDER BY id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    conn = db.get_conn()
    try:
        rows = conn.execute(query, params).fetchall()
        return [_decode(row) for row in rows]
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao listar emissões: {e}") from e
    finally:
        conn.close()


def statistics(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Estatísticas de emissões: total por status, tempo médio de
    processamento (requested_at -> completed_at) e volume das últimas 24h.
    """
    now = now or datetime.now()
    conn = db.get_conn()
    try:
        por_status = {status: 0 for status in VALID_STATUSES}
        for row in conn.execute("SELECT status, COUNT(*) AS total FROM vpo_emissoes GROUP BY status"):
            por_status[row["status"]] = row["total"]

        duracoes = []
        for row in conn.execute(
            "SELECT requested_at, completed_at FROM vpo_emissoes WHERE status = ? AND completed_at IS NOT NULL",
            (STATUS_COMPLETED,),
        ):
            inicio = parse_datetime(row["requested_at"])
            fim = parse_datetime(row["completed_at"])
            if inicio and fim:
                duracoes.append((fim - inicio).total_seconds())

        ultimas_24h = conn.execute(
            "SELECT COUNT(*) AS total FROM vpo_emissoes WHERE requested_at >= ?",
            (now_iso(now - timedelta(hours=24)),),
        ).fetchone()["total"]
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao calcular estatísticas: {e}") from e
    finally:
        conn.close()

    return {
        "total": sum(por_status.values()),
        "por_status": por_status,
        "tempo_medio_processamento_segundos": round(sum(duracoes) / len(duracoes), 1) if duracoes else None,
        "ultimas_24h": ultimas_24h,
    }
