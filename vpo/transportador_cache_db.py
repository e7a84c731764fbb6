"""
Cache local de transportadores (perfil VPO mesclado) e de motoristas de empresa
"""
import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from . import db
from .models import TransporterProfile, is_blank, only_digits, parse_datetime

# Dados ANTT reconsultados depois de 30 dias
ANTT_REFRESH_DAYS = 30

# Campos obrigatórios do cache de motorista para VPO
CAMPOS_OBRIGATORIOS_MOTORISTA = ("cpf", "rntrc", "nommot", "nommae", "data_nascimento")

CAMPOS_MOTORISTA = (
    "nommot", "cpf", "rntrc", "nommae", "data_nascimento",
    "endereco_logradouro", "endereco_numero", "endereco_bairro",
    "endereco_cidade", "endereco_uf",
)


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def get_profile(codtrn: int) -> Optional[TransporterProfile]:
    """
    Obtém o perfil salvo do transportador.

    Returns:
        TransporterProfile ou None se não existe no cache
    """
    conn = db.get_conn()
    try:
        row = conn.execute(
            "SELECT dados FROM vpo_transportador_cache WHERE codtrn = ?", (int(codtrn),)
        ).fetchone()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao obter transportador do cache: {e}") from e
    finally:
        conn.close()
    if row is None:
        return None
    return TransporterProfile.from_dict(json.loads(row["dados"]))


def save_profile(profile: TransporterProfile, antt_consultada: bool = False) -> None:
    """
    Insere ou atualiza o perfil (upsert por codtrn).

    Args:
        antt_consultada: atualiza ultima_sync_antt quando a ANTT foi consultada
    """
    now = _now()
    conn = db.get_conn()
    try:
        conn.execute(
            """
            INSERT INTO vpo_transportador_cache
                (codtrn, cpf_cnpj, placa, antt_rntrc, dados, editado_manualmente, data_edicao_manual,
                 score_qualidade, ultima_sincronizacao, ultima_sync_antt, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(codtrn) DO UPDATE SET
                cpf_cnpj = excluded.cpf_cnpj,
                placa = excluded.placa,
                antt_rntrc = excluded.antt_rntrc,
                dados = excluded.dados,
                editado_manualmente = excluded.editado_manualmente,
                data_edicao_manual = excluded.data_edicao_manual,
                score_qualidade = excluded.score_qualidade,
                ultima_sincronizacao = excluded.ultima_sincronizacao,
                ultima_sync_antt = COALESCE(excluded.ultima_sync_antt, vpo_transportador_cache.ultima_sync_antt),
                updated_at = excluded.updated_at
            """,
            (
                int(profile.codtrn), profile.cpf_cnpj, profile.placa, profile.antt_rntrc,
                profile.to_json(), 1 if profile.editado_manualmente else 0, profile.data_edicao_manual,
                profile.score_qualidade, profile.ultima_sincronizacao,
                now if antt_consultada else None, now, now,
            ),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao salvar transportador no cache: {e}") from e
    finally:
        conn.close()


def needs_antt_update(codtrn: int, now: Optional[datetime] = None) -> bool:
    """True se a ANTT nunca foi consultada ou a última consulta tem mais de 30 dias"""
    conn = db.get_conn()
    try:
        row = conn.execute(
            "SELECT ultima_sync_antt FROM vpo_transportador_cache WHERE codtrn = ?", (int(codtrn),)
        ).fetchone()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao consultar cache ANTT: {e}") from e
    finally:
        conn.close()
    if row is None or not row["ultima_sync_antt"]:
        return True
    last = parse_datetime(row["ultima_sync_antt"])
    return last < (now or datetime.now()) - timedelta(days=ANTT_REFRESH_DAYS)


def register_use(codtrn: int) -> None:
    conn = db.get_conn()
    try:
        conn.execute(
            "UPDATE vpo_transportador_cache SET total_usos = total_usos + 1, ultimo_uso = ? WHERE codtrn = ?",
            (_now(), int(codtrn)),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao registrar uso do transportador: {e}") from e
    finally:
        conn.close()


# ----------------------------------------------------------------------
# Cache de motoristas de empresa (dados complementares ao ERP)
# ----------------------------------------------------------------------
def dados_completos(dados: Dict[str, Any]) -> bool:
    return all(not is_blank(dados.get(campo)) for campo in CAMPOS_OBRIGATORIOS_MOTORISTA)


def get_motorista_cache(codtrn: int, codmot: int) -> Optional[Dict[str, Any]]:
    conn = db.get_conn()
    try:
        row = conn.execute(
            "SELECT * FROM motorista_empresa_cache WHERE codtrn = ? AND codmot = ?",
            (int(codtrn), int(codmot)),
        ).fetchone()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao obter motorista do cache: {e}") from e
    finally:
        conn.close()
    data = db._row_to_dict(row)
    if data is not None:
        data["dados_completos"] = bool(data["dados_completos"])
    return data


def save_motorista_cache(codtrn: int, codmot: int, dados: Dict[str, Any]) -> Dict[str, Any]:
    """
    Salva dados complementares do motorista; a flag dados_completos é
    recalculada a cada gravação.
    """
    valores = {campo: dados.get(campo) for campo in CAMPOS_MOTORISTA}
    if valores.get("cpf"):
        valores["cpf"] = only_digits(valores["cpf"])
    completos = dados_completos(valores)

    conn = db.get_conn()
    try:
        conn.execute(
            f"""
            INSERT INTO motorista_empresa_cache
                (codtrn, codmot, {', '.join(CAMPOS_MOTORISTA)}, dados_completos, updated_at)
            VALUES (?, ?, {', '.join('?' for _ in CAMPOS_MOTORISTA)}, ?, ?)
            ON CONFLICT(codtrn, codmot) DO UPDATE SET
                {', '.join(f'{campo} = excluded.{campo}' for campo in CAMPOS_MOTORISTA)},
                dados_completos = excluded.dados_completos,
                updated_at = excluded.updated_at
            """,
            (int(codtrn), int(codmot), *valores.values(), 1 if completos else 0, _now()),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise ConnectionError(f"Erro ao salvar motorista no cache: {e}") from e
    finally:
        conn.close()
    return get_motorista_cache(codtrn, codmot)
