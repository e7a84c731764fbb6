"""
Tests do EmissionOrchestrator

Cenários:
- rota livre (praças=[], custo 0, waypoints informados) com protocolo imediato -> completed
- perfil incompleto -> ValidationIncomplete, nenhuma chamada externa
- 202 no envio, três consultas 202 e código 500 na quarta -> failed
- timeout -> failed; force_retry reabre sem zerar o contador
- processando, processando, sucesso -> completed após 3 consultas
"""
import threading

import pytest

from conftest import (
    FAILURE_500_XML,
    FAILURE_778_XML,
    PROCESSING_XML,
    PROTOCOL_ONLY_XML,
    ROUTE_XML,
    SUCCESS_XML,
    TRANSPORTE_AUTONOMO,
    FakeRpc,
    FakeSigner,
    make_erp_repository,
    rpc_error,
    rpc_ok,
)

pytestmark = [pytest.mark.requires_lxml]


def _request(**overrides):
    from vpo.emissao.orchestrator import EmissaoRequest

    data = {"codpac": 5001, "rota_id": 77}
    data.update(overrides)
    return EmissaoRequest(**data)


def _count_emissoes():
    from vpo import db

    conn = db.get_conn()
    try:
        return conn.execute("SELECT COUNT(*) AS total FROM vpo_emissoes").fetchone()["total"]
    finally:
        conn.close()


class TestStart:

    def test_perfil_incompleto_nao_chama_ndd(self, make_orchestrator):
        """Nome da mãe ausente aborta antes de qualquer I/O externo"""
        from vpo import emissao_log_db
        from vpo.emissao.exceptions import ValidationIncomplete

        transporte = dict(TRANSPORTE_AUTONOMO, nommae=None)
        rpc = FakeRpc()
        signer = FakeSigner()
        orchestrator = make_orchestrator(rpc=rpc, signer=signer, erp=make_erp_repository(transporte=transporte))

        with pytest.raises(ValidationIncomplete) as exc_info:
            orchestrator.start(_request())

        fields = [m["field"] for m in exc_info.value.missing_fields]
        assert fields == ["condutor_nome_mae"]
        assert [m["category"] for m in exc_info.value.missing_fields] == ["Condutor"]
        assert exc_info.value.score == 95
        assert rpc.submit_calls == []
        assert signer.calls == []
        assert _count_emissoes() == 0

        logs = emissao_log_db.listar()
        assert logs[0]["status"] == emissao_log_db.LOG_STATUS_ERRO

    def test_bypass_validacao_segue_com_perfil_incompleto(self, make_orchestrator):
        transporte = dict(TRANSPORTE_AUTONOMO, nommae=None)
        rpc = FakeRpc(submit_responses=[rpc_ok(PROTOCOL_ONLY_XML)])
        orchestrator = make_orchestrator(rpc=rpc, erp=make_erp_repository(transporte=transporte))

        resultado = orchestrator.start(_request(bypass_validacao=True))

        assert resultado.status == "completed"
        assert resultado.emissao["score_qualidade"] == 95

    def test_resposta_imediata_conclui(self, make_orchestrator):
        """Resposta síncrona com protocolo e praças"""
        from vpo import emissao_log_db

        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)

        resultado = orchestrator.start(_request())

        assert resultado.status == "completed"
        emissao = resultado.emissao
        assert emissao["ndd_protocolo"] == "987654321"
        assert emissao["total_pracas"] == 2
        assert emissao["custo_total"] == pytest.approx(45.60)
        assert emissao["distancia_km"] == pytest.approx(408.2)
        assert emissao["rota_nome"] == "SP x CWB"
        assert emissao["total_waypoints"] == 4
        assert emissao["completed_at"] is not None
        assert [call[2] for call in rpc.submit_calls] == [2028]
        assert rpc.poll_calls == []

        log = emissao_log_db.get_log_by_uuid(emissao["uuid"])
        assert log["status"] == emissao_log_db.LOG_STATUS_SUCESSO
        assert log["ndd_protocolo"] == "987654321"
        assert log["transportador_nome"] == "JOSE DA SILVA"
        assert log["rota_nome"] == "SP x CWB"

    def test_resposta_778_falha_imediata(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_ok(FAILURE_778_XML)])
        orchestrator = make_orchestrator(rpc=rpc)

        resultado = orchestrator.start(_request())

        assert resultado.status == "failed"
        assert resultado.emissao["error_code"] == "NDD_CARGO_ERROR"
        assert resultado.emissao["ndd_codigo_retorno"] == "778"
        assert "778" in resultado.emissao["error_message"]

    def test_erro_de_transporte_no_envio(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_error()])
        orchestrator = make_orchestrator(rpc=rpc)

        resultado = orchestrator.start(_request())

        assert resultado.status == "failed"
        assert resultado.emissao["error_code"] == "TRANSPORT_ERROR"

    def test_emissao_em_andamento_e_reaproveitada(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)

        primeiro = orchestrator.start(_request())
        segundo = orchestrator.start(_request())

        assert primeiro.status == "processing"
        assert segundo.created is False
        assert segundo.uuid == primeiro.uuid
        assert len(rpc.submit_calls) == 1
        assert _count_emissoes() == 1

    def test_erro_de_certificado_nao_persiste_emissao(self, make_orchestrator):
        from vpo import emissao_log_db
        from vpo.nddcargo_client.exceptions import CertificateError

        rpc = FakeRpc()
        orchestrator = make_orchestrator(rpc=rpc, signer=FakeSigner(CertificateError("Certificado expirado")))

        with pytest.raises(CertificateError):
            orchestrator.start(_request())

        assert _count_emissoes() == 0
        assert rpc.submit_calls == []
        log = emissao_log_db.listar()[0]
        assert log["status"] == emissao_log_db.LOG_STATUS_ERRO
        assert "expirado" in log["erro_mensagem"]

    def test_pacote_inexistente(self, make_orchestrator):
        from vpo.emissao.exceptions import SourceNotFound

        erp = make_erp_repository(pacote={})
        orchestrator = make_orchestrator(erp=erp)

        with pytest.raises(SourceNotFound):
            orchestrator.start(_request())


class TestDadosDePedagio:

    def test_dados_do_frontend_nao_sao_sobrescritos(self, make_orchestrator):
        pracas = [
            {"codigo": "900", "nome": "Praça Frontend", "valor": 50.0},
            {"codigo": "901", "nome": "Praça Frontend 2", "valor": 49.9},
        ]
        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)

        resultado = orchestrator.start(_request(pracas_pedagio=pracas, valor_total=99.9, km_total=410))

        emissao = resultado.emissao
        assert resultado.status == "completed"
        assert emissao["dados_frontend"] is True
        assert emissao["custo_total"] == pytest.approx(99.9)
        assert emissao["distancia_km"] == pytest.approx(410)
        assert [p["codigo"] for p in emissao["pracas_pedagio"]] == ["900", "901"]
        assert emissao["ndd_protocolo"] == "987654321"
        # praças do frontend vão no XML enviado
        assert "<cnp>900</cnp>" in emissao["ndd_request_xml"]

    def test_rota_livre_com_protocolo_imediato(self, make_orchestrator):
        """Sem praças e custo zero informados: não consulta rota e guarda os valores do chamador"""
        rpc = FakeRpc(submit_responses=[rpc_ok(PROTOCOL_ONLY_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        waypoints = [
            {"lat": -23.5, "lon": -46.6, "codigo_ibge": "3550308"},
            {"lat": -22.9, "lon": -43.2, "codigo_ibge": "3304557"},
        ]

        resultado = orchestrator.start(_request(
            waypoints=waypoints, pracas_pedagio=[], valor_total=0.0, km_total=430.0, tag_codigo="TAG0001",
        ))

        emissao = resultado.emissao
        assert resultado.status == "completed"
        assert emissao["ndd_protocolo"] == "555000111"
        assert emissao["dados_frontend"] is True
        assert emissao["custo_total"] == 0.0
        assert emissao["distancia_km"] == pytest.approx(430.0)
        assert emissao["total_pracas"] == 0
        assert emissao["total_waypoints"] == 2
        assert [wp["codigo_ibge"] for wp in emissao["waypoints"]] == ["3550308", "3304557"]
        assert [call[2] for call in rpc.submit_calls] == [2028]

    def test_rota_livre_nao_e_sobrescrita_pela_resposta(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)

        resultado = orchestrator.start(_request(pracas_pedagio=[], valor_total=0.0))

        emissao = resultado.emissao
        assert resultado.status == "completed"
        assert emissao["custo_total"] == 0.0
        assert emissao["pracas_pedagio"] == []
        assert emissao["distancia_km"] is None

    def test_consulta_de_rota_com_tag(self, make_orchestrator):
        """Com TAG, consulta o roteirizador (2027) e usa as praças do payload ao concluir"""
        rpc = FakeRpc(submit_responses=[rpc_ok(ROUTE_XML), rpc_ok(PROTOCOL_ONLY_XML)])
        orchestrator = make_orchestrator(rpc=rpc)

        resultado = orchestrator.start(_request(tag_codigo="TAG0001"))

        emissao = resultado.emissao
        assert [call[2] for call in rpc.submit_calls] == [2027, 2028]
        assert emissao["status"] == "completed"
        assert emissao["total_pracas"] == 2
        assert emissao["custo_total"] == pytest.approx(30.0)
        assert "<codigoTag>TAG0001</codigoTag>" in emissao["ndd_request_xml"]

    def test_consulta_de_rota_sem_resposta_nao_bloqueia(self, make_orchestrator, clock):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML), rpc_ok(PROTOCOL_ONLY_XML)])
        orchestrator = make_orchestrator(rpc=rpc)

        resultado = orchestrator.start(_request(tag_codigo="TAG0001"))

        # 3 tentativas configuradas: 1 envio + 2 consultas
        assert [call[1] for call in rpc.poll_calls] == [2027, 2027]
        assert clock.sleeps == [2, 2]
        assert resultado.status == "completed"
        assert resultado.emissao["total_pracas"] == 0


class TestConsultarResultado:

    def test_processando_ate_sucesso(self, make_orchestrator, clock):
        """Duas consultas 202 e sucesso na terceira"""
        rpc = FakeRpc(
            submit_responses=[rpc_ok(PROCESSING_XML)],
            poll_responses=[rpc_ok(PROCESSING_XML), rpc_ok(PROCESSING_XML), rpc_ok(SUCCESS_XML)],
        )
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        statuses = []
        for _ in range(3):
            clock.advance(seconds=6)
            resultado = orchestrator.consultar_resultado(uuid)
            statuses.append(resultado.status)

        assert statuses == ["processing", "processing", "completed"]
        assert resultado.emissao["tentativas_polling"] == 3
        assert resultado.emissao["ndd_protocolo"] == "987654321"
        assert all(call == (uuid, 2028) for call in rpc.poll_calls)

    def test_processando_devolve_retry_after(self, make_orchestrator, clock):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        resultado = orchestrator.consultar_resultado(uuid)

        assert resultado.status == "processing"
        assert resultado.retry_after == 5

    def test_consulta_dentro_do_intervalo_nao_chama_ndd(self, make_orchestrator, clock):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        orchestrator.consultar_resultado(uuid)
        clock.advance(seconds=2)
        orchestrator.consultar_resultado(uuid)

        assert len(rpc.poll_calls) == 1

    def test_idempotente_apos_conclusao(self, make_orchestrator, clock):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)], poll_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        primeiro = orchestrator.consultar_resultado(uuid)
        clock.advance(seconds=30)
        segundo = orchestrator.consultar_resultado(uuid)
        terceiro = orchestrator.consultar_resultado(uuid)

        assert primeiro.status == segundo.status == terceiro.status == "completed"
        assert segundo.emissao == terceiro.emissao
        assert len(rpc.poll_calls) == 1

    def test_timeout_e_retry_forcado(self, make_orchestrator, clock):
        """force_retry após timeout: nova consulta sem zerar o contador"""
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        for _ in range(2):
            clock.advance(seconds=6)
            orchestrator.consultar_resultado(uuid)

        clock.advance(minutes=11)
        resultado = orchestrator.consultar_resultado(uuid)
        assert resultado.status == "failed"
        assert resultado.emissao["error_code"] == "TIMEOUT"
        assert resultado.emissao["tentativas_polling"] == 2
        assert len(rpc.poll_calls) == 2

        retry = orchestrator.consultar_resultado(uuid, force_retry=True)
        assert retry.status == "processing"
        assert retry.emissao["error_code"] is None
        assert retry.emissao["error_message"] is None
        assert retry.emissao["tentativas_polling"] == 3
        assert retry.emissao["janela_polling_base"] == 2
        assert len(rpc.poll_calls) == 3

    def test_limite_de_tentativas(self, make_orchestrator, clock, emissao_config):
        """Finaliza só quando o contador passa do limite configurado"""
        emissao_config.max_tentativas_polling = 3
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        statuses = []
        for _ in range(4):
            clock.advance(seconds=6)
            statuses.append(orchestrator.consultar_resultado(uuid).status)

        assert statuses == ["processing", "processing", "processing", "failed"]
        emissao = orchestrator.consultar_resultado(uuid).emissao
        assert emissao["error_code"] == "POLLING_LIMIT"
        assert emissao["tentativas_polling"] == 4
        assert len(rpc.poll_calls) == 4

    def test_retry_forcado_abre_nova_janela_de_tentativas(self, make_orchestrator, clock, emissao_config):
        emissao_config.max_tentativas_polling = 2
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        for _ in range(3):
            clock.advance(seconds=6)
            orchestrator.consultar_resultado(uuid)
        assert orchestrator.consultar_resultado(uuid).emissao["error_code"] == "POLLING_LIMIT"

        retry = orchestrator.consultar_resultado(uuid, force_retry=True)

        assert retry.status == "processing"
        assert retry.emissao["tentativas_polling"] == 4
        assert retry.emissao["janela_polling_base"] == 3

    def test_retry_forcado_ignorado_para_emissao_concluida(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        resultado = orchestrator.consultar_resultado(uuid, force_retry=True)

        assert resultado.status == "completed"
        assert rpc.poll_calls == []

    def test_erro_de_transporte_no_polling_mantem_processing(self, make_orchestrator, clock):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)], poll_responses=[rpc_error()])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        resultado = orchestrator.consultar_resultado(uuid)

        assert resultado.status == "processing"
        assert resultado.emissao["tentativas_polling"] == 1

    def test_falha_ndd_no_polling(self, make_orchestrator):
        from vpo import emissao_log_db

        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)], poll_responses=[rpc_ok(FAILURE_778_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        resultado = orchestrator.consultar_resultado(uuid)

        assert resultado.status == "failed"
        assert resultado.emissao["error_code"] == "NDD_CARGO_ERROR"
        assert emissao_log_db.get_log_by_uuid(uuid)["status"] == emissao_log_db.LOG_STATUS_ERRO

    def test_tres_consultas_202_e_erro_500(self, make_orchestrator, clock):
        from vpo import emissao_log_db

        rpc = FakeRpc(
            submit_responses=[rpc_ok(PROCESSING_XML)],
            poll_responses=[rpc_ok(PROCESSING_XML)] * 3 + [rpc_ok(FAILURE_500_XML)],
        )
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        statuses = []
        for _ in range(4):
            clock.advance(seconds=6)
            statuses.append(orchestrator.consultar_resultado(uuid).status)

        emissao = orchestrator.consultar_resultado(uuid).emissao
        assert statuses == ["processing", "processing", "processing", "failed"]
        assert "Não foi possível emitir a Operação de Vale-Pedágio" in emissao["error_message"]
        assert emissao["error_code"] == "NDD_CARGO_ERROR"
        assert emissao["ndd_codigo_retorno"] == "500"
        assert emissao["tentativas_polling"] == 4
        assert len(rpc.poll_calls) == 4
        assert emissao_log_db.get_log_by_uuid(uuid)["status"] == emissao_log_db.LOG_STATUS_ERRO

    def test_locks_descartados_apos_finalizar(self, make_orchestrator):
        import gc

        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)], poll_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        assert orchestrator.consultar_resultado(uuid).status == "completed"
        gc.collect()

        assert uuid not in orchestrator._locks
        assert len(orchestrator._locks) == 0

    def test_uuid_desconhecido(self, make_orchestrator):
        from vpo.emissao.exceptions import EmissaoNotFound

        with pytest.raises(EmissaoNotFound):
            make_orchestrator().consultar_resultado("00000000-0000-0000-0000-000000000000")

    def test_consultas_concorrentes_finalizam_uma_vez(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)], poll_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(orchestrator.consultar_resultado(uuid)))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(rpc.poll_calls) == 1
        assert {r.status for r in results} == {"completed"}

    def test_aguardar_conclusao(self, make_orchestrator, clock):
        rpc = FakeRpc(
            submit_responses=[rpc_ok(PROCESSING_XML)],
            poll_responses=[rpc_ok(PROCESSING_XML), rpc_ok(SUCCESS_XML)],
        )
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        emissao = orchestrator.aguardar_conclusao(uuid)

        assert emissao["status"] == "completed"
        assert clock.sleeps == [5]

    def test_aguardar_conclusao_com_erro_ndd(self, make_orchestrator):
        from vpo.emissao.exceptions import UpstreamProtocolError

        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)], poll_responses=[rpc_ok(FAILURE_778_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        with pytest.raises(UpstreamProtocolError) as exc_info:
            orchestrator.aguardar_conclusao(uuid)
        assert exc_info.value.error_code == "778"


class TestCancelamento:

    def test_cancelar_em_processamento(self, make_orchestrator):
        from vpo import emissao_log_db

        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        emissao = orchestrator.cancel(uuid, "Pacote cancelado")

        assert emissao["status"] == "cancelled"
        assert emissao["cancellation_reason"] == "Pacote cancelado"
        assert emissao_log_db.get_log_by_uuid(uuid)["status"] == emissao_log_db.LOG_STATUS_CANCELADO

    def test_cancelar_emissao_finalizada(self, make_orchestrator):
        from vpo.emissao.exceptions import InvalidStateTransition

        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        with pytest.raises(InvalidStateTransition):
            orchestrator.cancel(uuid)

    def test_polling_apos_cancelamento_nao_chama_ndd(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid
        orchestrator.cancel(uuid)

        resultado = orchestrator.consultar_resultado(uuid)

        assert resultado.status == "cancelled"
        assert rpc.poll_calls == []

    def test_cancelar_na_ndd_apenas_concluidas(self, make_orchestrator):
        from vpo.emissao.exceptions import InvalidStateTransition

        rpc = FakeRpc(submit_responses=[rpc_ok(PROCESSING_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        with pytest.raises(InvalidStateTransition):
            orchestrator.cancel_on_remote(uuid, "Viagem cancelada")

    def test_cancelar_na_ndd(self, make_orchestrator):
        from vpo.nddcargo_client.xml_builder import numero_from_correlation_id

        cancel_ok = "<cancelarOperacaoValePedagio_retorno><ResponseCode>200</ResponseCode>" \
                    "<protocolo>CANC-1</protocolo></cancelarOperacaoValePedagio_retorno>"
        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML), rpc_ok(cancel_ok)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        emissao = orchestrator.cancel_on_remote(uuid, "Viagem cancelada")

        assert emissao["status"] == "cancelled"
        assert emissao["cancellation_reason"] == "Viagem cancelada"
        assert emissao["ndd_cancellation_response"] == cancel_ok
        signed, _, process_code = rpc.submit_calls[-1]
        assert process_code == 2029
        assert f"<numero>{numero_from_correlation_id(uuid)}</numero>" in signed
        assert "<serie>1016</serie>" in signed

    def test_cancelar_na_ndd_recusado(self, make_orchestrator):
        from vpo.emissao.exceptions import UpstreamProtocolError

        recusa = "<retorno><ResponseCode>400</ResponseCode>" \
                 "<ResponseCodeMessage>Operação já encerrada</ResponseCodeMessage></retorno>"
        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML), rpc_ok(recusa)])
        orchestrator = make_orchestrator(rpc=rpc)
        uuid = orchestrator.start(_request()).uuid

        with pytest.raises(UpstreamProtocolError):
            orchestrator.cancel_on_remote(uuid, "Viagem cancelada")

        assert orchestrator.consultar_resultado(uuid).status == "completed"


class TestConsultasAuxiliares:

    def test_validar_pacote(self, make_orchestrator):
        data = make_orchestrator().validar_pacote(5001)

        assert data["valido"] is True
        assert data["tem_gps"] is True
        assert data["total_entregas"] == 2

    def test_validar_pacote_sem_gps(self, make_orchestrator):
        pedidos = [{"codped": 1, "razcli": "X", "gps_lat": "0", "gps_lon": None, "cdibge": None}]
        orchestrator = make_orchestrator(erp=make_erp_repository(pedidos=pedidos))

        data = orchestrator.validar_pacote(5001)

        assert data["valido"] is False
        assert data["total_entregas"] == 1

    def test_preview_waypoints(self, make_orchestrator):
        data = make_orchestrator().preview_waypoints(77, 5001)

        assert data["nome"] == "SP x CWB"
        assert data["total"] == 4
        assert [wp["tipo"] for wp in data["waypoints"]] == [
            "rota", "rota", "primeira_entrega", "ultima_entrega",
        ]

    def test_estatisticas_e_listagem(self, make_orchestrator):
        rpc = FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML)])
        orchestrator = make_orchestrator(rpc=rpc)
        orchestrator.start(_request())

        stats = orchestrator.estatisticas()
        lista = orchestrator.listar(status="completed")

        assert stats["total"] == 1
        assert stats["por_status"]["completed"] == 1
        assert len(lista) == 1
        assert lista[0]["ndd_protocolo"] == "987654321"
