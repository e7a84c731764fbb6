"""
Tests da API FastAPI de emissão VPO (TestClient sobre o orquestrador real
com ERP, assinatura e canal NDD Cargo falsos)
"""
import pytest

from conftest import PROTOCOL_ONLY_XML, TRANSPORTE_AUTONOMO, FakeRpc, make_erp_repository, rpc_ok, SUCCESS_XML

pytestmark = [pytest.mark.requires_fastapi, pytest.mark.requires_lxml]


@pytest.fixture
def api(make_orchestrator):
    """Fábrica (orquestrador, TestClient)"""
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from vpo.routes_vpo import register_vpo_routes

    def factory(**kwargs):
        orchestrator = make_orchestrator(**kwargs)
        app = FastAPI()
        register_vpo_routes(app, lambda: orchestrator)
        return orchestrator, TestClient(app)

    return factory


class TestIniciar:

    def test_inicia_em_processamento(self, api):
        _, client = api()

        resp = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77})

        assert resp.status_code == 202
        body = resp.json()
        assert body["success"] is True
        assert body["status"] == "processing"
        assert body["created"] is True
        assert body["retry_after"] == 5
        assert body["data"]["uuid"] == body["uuid"]
        assert body["data"]["rota_nome"] == "SP x CWB"

    def test_resposta_sincrona_devolve_200(self, api):
        _, client = api(rpc=FakeRpc(submit_responses=[rpc_ok(SUCCESS_XML)]))

        resp = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77})

        assert resp.status_code == 200
        assert resp.json()["data"]["ndd_protocolo"] == "987654321"

    def test_rota_livre_lista_vazia_de_pracas(self, api):
        _, client = api(rpc=FakeRpc(submit_responses=[rpc_ok(PROTOCOL_ONLY_XML)]))

        resp = client.post("/api/vpo/emissao/iniciar", json={
            "codpac": 5001, "rota_id": 77, "pracas_pedagio": [], "valor_total": 0, "km_total": 430,
        })

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["custo_total"] == 0.0
        assert data["distancia_km"] == 430.0

    def test_em_andamento_nao_cria_outra(self, api):
        _, client = api()

        first = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77}).json()
        second = client.post("/api/vpo/emissao/iniciar", json={"codpac": "5001", "rota_id": "77"}).json()

        assert second["created"] is False
        assert second["uuid"] == first["uuid"]

    @pytest.mark.parametrize("body", [
        {"rota_id": 77},
        {"codpac": 5001},
        {"codpac": "abc", "rota_id": 77},
        {"codpac": 5001, "rota_id": 77, "pracas_pedagio": "101"},
    ])
    def test_parametros_invalidos(self, api, body):
        _, client = api()

        assert client.post("/api/vpo/emissao/iniciar", json=body).status_code == 400

    def test_json_nao_objeto(self, api):
        _, client = api()

        assert client.post("/api/vpo/emissao/iniciar", json=[1, 2]).status_code == 400

    def test_dados_incompletos_422(self, api):
        erp = make_erp_repository(transporte=dict(TRANSPORTE_AUTONOMO, nommae=None))
        _, client = api(erp=erp)

        resp = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77})

        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["score"] == 95
        assert [c["field"] for c in body["campos_faltantes"]] == ["condutor_nome_mae"]

    def test_pacote_inexistente_404(self, api):
        erp = make_erp_repository()
        erp.get_pacote.return_value = None
        _, client = api(erp=erp)

        resp = client.post("/api/vpo/emissao/iniciar", json={"codpac": 9999, "rota_id": 77})

        assert resp.status_code == 404


class TestConsultar:

    def test_em_processamento_202_com_retry_after(self, api):
        _, client = api()
        uuid = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77}).json()["uuid"]

        resp = client.get(f"/api/vpo/emissao/{uuid}")

        assert resp.status_code == 202
        assert resp.headers["Retry-After"] == "5"
        assert resp.json()["status"] == "processing"

    def test_concluida(self, api):
        rpc = FakeRpc(poll_responses=[rpc_ok(SUCCESS_XML)])
        _, client = api(rpc=rpc)
        uuid = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77}).json()["uuid"]

        resp = client.get(f"/api/vpo/emissao/{uuid}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["data"]["custo_total"] == 45.6
        assert len(body["data"]["pracas_pedagio"]) == 2

    def test_uuid_desconhecido_404(self, api):
        _, client = api()

        assert client.get("/api/vpo/emissao/nao-existe").status_code == 404


class TestCancelar:

    def test_cancela_e_nao_cancela_duas_vezes(self, api):
        _, client = api()
        uuid = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77}).json()["uuid"]

        resp = client.post(f"/api/vpo/emissao/{uuid}/cancelar", json={"motivo": "Viagem cancelada"})
        again = client.post(f"/api/vpo/emissao/{uuid}/cancelar")

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "cancelled"
        assert again.status_code == 409

    def test_cancelamento_ndd_exige_motivo(self, api):
        _, client = api()

        assert client.post("/api/vpo/emissao/x/cancelar-ndd-cargo", json={"motivo": " "}).status_code == 400
        assert client.post("/api/vpo/emissao/x/cancelar-ndd-cargo", json={"motivo": "m" * 501}).status_code == 400

    def test_cancelamento_ndd_de_emissao_em_andamento_409(self, api):
        _, client = api()
        uuid = client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77}).json()["uuid"]

        resp = client.post(f"/api/vpo/emissao/{uuid}/cancelar-ndd-cargo", json={"motivo": "Erro de rota"})

        assert resp.status_code == 409


class TestConsultasAuxiliares:

    def test_listar_e_estatisticas(self, api):
        _, client = api()
        client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77})

        listagem = client.get("/api/vpo/emissao", params={"status": "processing"}).json()
        stats = client.get("/api/vpo/emissao/statistics").json()

        assert listagem["total"] == 1
        assert listagem["data"][0]["codpac"] == 5001
        assert stats["data"]["por_status"]["processing"] == 1
        assert client.get("/api/vpo/emissao", params={"status": "xpto"}).status_code == 400

    def test_preview_waypoints(self, api):
        _, client = api()

        resp = client.get("/api/vpo/emissao/preview-waypoints", params={"rota_id": 77, "codpac": 5001})

        assert resp.status_code == 200
        assert resp.json()["data"]["total"] == 4

    def test_validar_pacote(self, api):
        _, client = api()

        data = client.get("/api/vpo/emissao/pacote/5001/validar").json()["data"]

        assert data["valido"] is True
        assert data["total_entregas"] == 2

    def test_logs(self, api):
        _, client = api()
        client.post("/api/vpo/emissao/iniciar", json={"codpac": 5001, "rota_id": 77})

        logs = client.get("/api/vpo/logs", params={"busca": "SP x CWB"}).json()["data"]
        stats = client.get("/api/vpo/logs/estatisticas").json()["data"]

        assert len(logs) == 1
        assert logs[0]["status"] == "aguardando"
        assert stats["pendente"] == 1
        assert client.get("/api/vpo/logs", params={"status": "xpto"}).status_code == 400


class TestTransportador:

    def test_sync_devolve_validacao(self, api):
        _, client = api()

        resp = client.post("/api/vpo/transportador/1001/sync")

        assert resp.status_code == 200
        body = resp.json()
        assert body["data"]["cpf_cnpj"] == "12345678909"
        assert body["validacao"]["valid"] is True
        assert body["validacao"]["score"] == 100

    def test_edicao_manual(self, api):
        _, client = api()
        client.post("/api/vpo/transportador/1001/sync")

        resp = client.put("/api/vpo/transportador/1001", json={"contato_email": "novo@example.com"})
        invalido = client.put("/api/vpo/transportador/1001", json={"cpf_cnpj": "1"})

        assert resp.status_code == 200
        assert resp.json()["data"]["contato_email"] == "novo@example.com"
        assert resp.json()["data"]["editado_manualmente"] is True
        assert invalido.status_code == 400

    def test_edicao_sem_perfil_404(self, api):
        _, client = api()

        assert client.put("/api/vpo/transportador/4242", json={"condutor_nome": "X"}).status_code == 404

    def test_sync_em_lote(self, api, monkeypatch):
        from vpo.emissao import data_merger

        monkeypatch.setattr(data_merger.time, "sleep", lambda _: None)
        _, client = api()

        resp = client.post("/api/vpo/transportador/sync-batch", json={"codtrns": [1001, 1001]})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["success"] == 2
        assert client.post("/api/vpo/transportador/sync-batch", json={"codtrns": []}).status_code == 400
