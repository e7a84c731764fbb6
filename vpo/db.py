"""
Conexão a base de dados SQLite do núcleo VPO
"""
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional

# Caminho da base de dados (VPO_DB_PATH sobrescreve)
DB_PATH = Path(os.getenv("VPO_DB_PATH", str(Path(__file__).parent.parent / "vpo.db")))


def get_conn() -> sqlite3.Connection:
    """
    Obtém uma conexão a SQLite.
    Cria as tabelas vpo_* se não existirem.
    """
    conn = sqlite3.connect(str(DB_PATH), timeout=30)
    conn.row_factory = sqlite3.Row

    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS vpo_emissoes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            uuid TEXT NOT NULL UNIQUE,
            codpac INTEGER NOT NULL,
            codtrn INTEGER NOT NULL,
            codmot INTEGER,
            rota_id INTEGER,
            rota_nome TEXT,
            waypoints TEXT,
            total_waypoints INTEGER DEFAULT 0,
            vpo_data TEXT,
            fontes_dados TEXT,
            score_qualidade INTEGER DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
            ndd_request_xml TEXT,
            ndd_response TEXT,
            ndd_protocolo TEXT,
            ndd_codigo_retorno TEXT,
            error_message TEXT,
            error_code TEXT,
            pracas_pedagio TEXT,
            total_pracas INTEGER DEFAULT 0,
            custo_total REAL,
            distancia_km REAL,
            tempo_minutos INTEGER,
            dados_frontend INTEGER DEFAULT 0,
            tentativas_polling INTEGER DEFAULT 0,
            janela_polling_inicio TEXT,
            janela_polling_base INTEGER DEFAULT 0,
            requested_at TEXT,
            polled_at TEXT,
            completed_at TEXT,
            failed_at TEXT,
            cancelled_at TEXT,
            cancellation_reason TEXT,
            ndd_cancellation_request TEXT,
            ndd_cancellation_response TEXT,
            usuario_id INTEGER,
            ip_address TEXT,
            user_agent TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_vpo_emissoes_status
        ON vpo_emissoes(status)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_vpo_emissoes_codpac_rota
        ON vpo_emissoes(codpac, rota_id)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_vpo_emissoes_codtrn
        ON vpo_emissoes(codtrn)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS vpo_emissao_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            codpac INTEGER,
            codtrn INTEGER,
            placa TEXT,
            transportador_nome TEXT,
            rota_id INTEGER,
            rota_nome TEXT,
            emissao_uuid TEXT,
            usuario_id INTEGER,
            status TEXT NOT NULL DEFAULT 'iniciado' CHECK(status IN ('iniciado', 'calculando', 'aguardando', 'sucesso', 'erro', 'cancelado')),
            roteirizador_request_xml TEXT,
            roteirizador_response_xml TEXT,
            emissao_request_xml TEXT,
            emissao_response_xml TEXT,
            ndd_codigo_retorno TEXT,
            ndd_mensagem TEXT,
            ndd_protocolo TEXT,
            valor_total REAL,
            total_pracas INTEGER,
            erro_mensagem TEXT,
            erro_detalhes TEXT,
            iniciado_em TEXT,
            roteirizador_enviado_em TEXT,
            roteirizador_resposta_em TEXT,
            emissao_enviada_em TEXT,
            emissao_resposta_em TEXT,
            finalizado_em TEXT
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_vpo_emissao_logs_status
        ON vpo_emissao_logs(status)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_vpo_emissao_logs_iniciado_em
        ON vpo_emissao_logs(iniciado_em)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS vpo_transportador_cache (
            codtrn INTEGER PRIMARY KEY,
            cpf_cnpj TEXT,
            placa TEXT,
            antt_rntrc TEXT,
            dados TEXT NOT NULL,
            editado_manualmente INTEGER DEFAULT 0,
            data_edicao_manual TEXT,
            score_qualidade INTEGER DEFAULT 0,
            ultima_sincronizacao TEXT,
            ultima_sync_antt TEXT,
            total_usos INTEGER DEFAULT 0,
            ultimo_uso TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS motorista_empresa_cache (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            codtrn INTEGER NOT NULL,
            codmot INTEGER NOT NULL,
            nommot TEXT,
            cpf TEXT,
            rntrc TEXT,
            nommae TEXT,
            data_nascimento TEXT,
            endereco_logradouro TEXT,
            endereco_numero TEXT,
            endereco_bairro TEXT,
            endereco_cidade TEXT,
            endereco_uf TEXT,
            dados_completos INTEGER DEFAULT 0,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(codtrn, codmot)
        )
    """)
    conn.commit()

    return conn


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    """Converte um Row de SQLite em dict"""
    if row is None:
        return None
    return dict(row)
