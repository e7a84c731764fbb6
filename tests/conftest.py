"""
Pytest configuration e helpers para os testes VPO
"""
from datetime import datetime, timedelta
from typing import List, Optional
from unittest.mock import MagicMock

import pytest


# Registrar markers personalizados para evitar warnings
def pytest_configure(config):
    """Registra markers personalizados"""
    config.addinivalue_line(
        "markers", "requires_signxml: marca test que requer signxml"
    )
    config.addinivalue_line(
        "markers", "requires_lxml: marca test que requer lxml"
    )
    config.addinivalue_line(
        "markers", "requires_fastapi: marca test que requer fastapi/httpx"
    )


def has_pkg(pkg_name: str) -> bool:
    """Verifica se um pacote está instalado"""
    try:
        __import__(pkg_name)
        return True
    except ImportError:
        return False


@pytest.fixture(autouse=True)
def check_optional_deps(request: pytest.FixtureRequest):
    """
    Fixture autouse que verifica os markers de dependências opcionais
    e pula o teste se o pacote não estiver instalado
    """
    marker_to_pkg = {
        "requires_signxml": "signxml",
        "requires_lxml": "lxml",
        "requires_fastapi": "httpx",
    }
    missing = [
        marker_to_pkg[m.name]
        for m in request.node.iter_markers()
        if m.name in marker_to_pkg and not has_pkg(marker_to_pkg[m.name])
    ]
    if missing:
        pytest.skip(f"Dependências não instaladas: {', '.join(sorted(set(missing)))}")


# ----------------------------------------------------------------------
# Base de dados temporária
# ----------------------------------------------------------------------
@pytest.fixture
def vpo_db(tmp_path, monkeypatch):
    """Aponta vpo.db para um SQLite em tmp_path"""
    from vpo import db

    db_path = tmp_path / "vpo_test.db"
    monkeypatch.setattr(db, "DB_PATH", db_path)
    return db_path


# ----------------------------------------------------------------------
# Configuração
# ----------------------------------------------------------------------
@pytest.fixture
def ndd_env(monkeypatch):
    """Variáveis NDD Cargo de homologação"""
    monkeypatch.setenv("NDD_CARGO_ENVIRONMENT", "homologacao")
    monkeypatch.setenv("NDD_CARGO_CNPJ", "12.345.678/0001-95")
    monkeypatch.setenv("NDD_CARGO_TOKEN", "token-teste")
    monkeypatch.setenv("NDD_CARGO_SERIE", "1016")
    monkeypatch.setenv("NDD_CARGO_SIGNATURE_ALGORITHM", "sha256")
    monkeypatch.delenv("NDD_CARGO_PT_EMISSOR", raising=False)
    monkeypatch.delenv("NDD_CARGO_ENDPOINT_URL", raising=False)


@pytest.fixture
def ndd_config(ndd_env):
    from vpo.nddcargo_client.config import NddCargoConfig

    return NddCargoConfig()


@pytest.fixture
def emissao_config(monkeypatch):
    from vpo.emissao.config import EmissaoConfig

    monkeypatch.setenv("VPO_ANTT_ENABLED", "false")
    config = EmissaoConfig()
    config.max_tentativas_polling = 50
    config.timeout_minutos = 10
    config.intervalo_polling_segundos = 5
    config.roteirizador_tentativas = 3
    config.roteirizador_intervalo_segundos = 2
    return config


# ----------------------------------------------------------------------
# Certificado de teste
# ----------------------------------------------------------------------
def make_certificate(days_valid: int = 365, key_size: int = 2048, not_before_days: int = -1):
    """Certificado autoassinado + chave RSA (somente para testes)"""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "BR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Transportes Teste LTDA"),
        x509.NameAttribute(NameOID.COMMON_NAME, "TRANSPORTES TESTE:12345678000195"),
    ])
    now = datetime.utcnow()
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now + timedelta(days=not_before_days))
        .not_valid_after(now + timedelta(days=days_valid))
        .sign(private_key, hashes.SHA256())
    )
    return cert, private_key


def write_pfx(path, cert, private_key, password: bytes = b"senha123"):
    from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12

    path.write_bytes(pkcs12.serialize_key_and_certificates(
        name=b"vpo_teste",
        key=private_key,
        cert=cert,
        cas=None,
        encryption_algorithm=BestAvailableEncryption(password),
    ))
    return path


@pytest.fixture(scope="session")
def certificate_and_key():
    return make_certificate()


@pytest.fixture
def pfx_file(certificate_and_key, tmp_path):
    cert, private_key = certificate_and_key
    return write_pfx(tmp_path / "certificado.pfx", cert, private_key)


# ----------------------------------------------------------------------
# ERP
# ----------------------------------------------------------------------
TRANSPORTE_AUTONOMO = {
    "codtrn": 1001,
    "nomtrn": "JOSE DA SILVA",
    "flgautonomo": True,
    "codcnpjcpf": "123.456.789-09",
    "cdantt": "12345678",
    "datvldantt": "2027-12-31",
    "tipcam": 3,
    "numpla": "ABC-1D23",
    "desvei": "VOLVO FH 540",
    "numrg": "123456789",
    "nommae": "MARIA DA SILVA",
    "datnas": "1980-05-20",
    "desend": "RUA DAS FLORES",
    "numend": "100",
    "codbai": 10,
    "codmun": 20,
    "codest": 30,
    "dddcel": "11",
    "numcel": "98765432",
    "e-mail": "jose@example.com",
}

TRANSPORTE_EMPRESA = dict(
    TRANSPORTE_AUTONOMO,
    codtrn=2002,
    nomtrn="TRANSPORTES ACME LTDA",
    flgautonomo=True,
    codcnpjcpf="12.345.678/0001-95",
)

MOTORISTA_EMPRESA = {
    "codmot": 7,
    "nommot": "CARLOS PEREIRA",
    "codcpf": "987.654.321-00",
    "codrntrc": "87654321",
    "datvldrntrc": "2026-06-30",
    "numrg": "998877665",
    "nommae": "ANA PEREIRA",
    "datnas": "1975-01-10",
    "desend": "AV BRASIL 2000",
    "codbai": 10,
    "codmun": 20,
    "codest": 30,
    "dddtel": "41",
    "numtel": "999887766",
    "email": "carlos@acme.com.br",
}

ROTA_MUNICIPIOS = [
    {"codmun": 20, "desmun": "SAO PAULO", "cdibge": "3550308", "latitude": "-23.55", "longitude": "-46.63"},
    {"codmun": 21, "desmun": "CURITIBA", "cdibge": "4106902", "latitude": "-25.43", "longitude": "-49.27"},
]

PEDIDOS_PACOTE = [
    {"codped": 1, "razcli": "CLIENTE UM", "gps_lat": "235500000", "gps_lon": "466300000", "cdibge": "3550308"},
    {"codped": 2, "razcli": "CLIENTE DOIS", "gps_lat": "254300000", "gps_lon": "492700000", "cdibge": "4106902"},
]


def make_erp_repository(transporte=None, motorista=None, pacote=None, rota=None,
                        municipios=None, pedidos=None):
    """ErpRepository falso com um transportador autônomo completo"""
    from vpo.emissao.erp import ErpRepository

    erp = MagicMock(spec=ErpRepository)
    erp.get_transporte.return_value = dict(transporte or TRANSPORTE_AUTONOMO)
    erp.get_tipo_caminhao.return_value = "TRUCK"
    erp.get_bairro_nome.return_value = "CENTRO"
    erp.get_municipio_nome.return_value = "SAO PAULO"
    erp.get_estado_sigla.return_value = "SP"
    erp.get_motorista.return_value = motorista
    erp.get_veiculo.return_value = None
    erp.get_pacote.return_value = pacote if pacote is not None else {
        "codpac": 5001, "codtrn": 1001, "codmot": None, "numpla": "ABC1D23", "sitpac": 1,
    }
    erp.get_rota.return_value = rota if rota is not None else {"spararrotid": 77, "desspararrot": "SP x CWB"}
    erp.get_rota_municipios.return_value = list(ROTA_MUNICIPIOS if municipios is None else municipios)
    erp.get_pedidos_pacote.return_value = list(PEDIDOS_PACOTE if pedidos is None else pedidos)
    return erp


@pytest.fixture
def erp_repo():
    return make_erp_repository()


# ----------------------------------------------------------------------
# Relógio e canal RPC falsos
# ----------------------------------------------------------------------
class FakeClock:
    """Relógio controlado; sleep() apenas avança o tempo"""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 3, 10, 8, 0, 0)
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)


class FakeRpc:
    """
    Canal NDD Cargo falso: devolve respostas enfileiradas e registra as chamadas.

    Sem resposta enfileirada, poll devolve "processando" (202).
    """

    def __init__(self, submit_responses=None, poll_responses=None):
        self.submit_responses = list(submit_responses or [])
        self.poll_responses = list(poll_responses or [])
        self.submit_calls = []
        self.poll_calls = []

    def submit(self, signed_xml, correlation_id, process_code):
        self.submit_calls.append((signed_xml, correlation_id, process_code))
        if self.submit_responses:
            return self.submit_responses.pop(0)
        return rpc_ok(PROCESSING_XML)

    def poll(self, correlation_id, process_code):
        self.poll_calls.append((correlation_id, process_code))
        if self.poll_responses:
            return self.poll_responses.pop(0)
        return rpc_ok(PROCESSING_XML)


class FakeSigner:
    """Não assina: apenas registra (o XML segue parseável)"""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = []

    def sign(self, xml_content, correlation_id):
        self.calls.append(correlation_id)
        if self.error is not None:
            raise self.error
        return xml_content


def rpc_ok(raw: str):
    from vpo.nddcargo_client.soap_client import RpcResponse

    return RpcResponse(accepted=True, raw_response=raw, http_status=200)


def rpc_error(message: str = "Erro de transporte: Read timed out"):
    from vpo.nddcargo_client.soap_client import RpcResponse

    return RpcResponse(accepted=False, error=message)


PROCESSING_XML = (
    "<operacaoValePedagio_retorno><ResponseCode>202</ResponseCode>"
    "<ResponseCodeMessage>Mensagem em processamento</ResponseCodeMessage></operacaoValePedagio_retorno>"
)

SUCCESS_XML = (
    "<operacaoValePedagio_retorno><ResponseCode>200</ResponseCode>"
    "<protocolo>987654321</protocolo>"
    "<pracas>"
    "<praca><cnp>101</cnp><nomePraca>Praça Mairiporã</nomePraca><valorPraca>20.30</valorPraca></praca>"
    "<praca><cnp>102</cnp><nomePraca>Praça Registro</nomePraca><valorPraca>25.30</valorPraca></praca>"
    "</pracas>"
    "<valorTotal>45.60</valorTotal><distancia>408.2</distancia>"
    "</operacaoValePedagio_retorno>"
)

PROTOCOL_ONLY_XML = (
    "<operacaoValePedagio_retorno><ResponseCode>200</ResponseCode>"
    "<protocolo>555000111</protocolo></operacaoValePedagio_retorno>"
)

FAILURE_778_XML = (
    "<operacaoValePedagio_retorno><ResponseCode>200</ResponseCode>"
    "<mensagens><mensagem><codigo>778</codigo>"
    "<descricao>Não foi possível emitir a operação de Vale-Pedágio.</descricao>"
    "</mensagem></mensagens></operacaoValePedagio_retorno>"
)

FAILURE_500_XML = (
    "<operacaoValePedagio_retorno><ResponseCode>500</ResponseCode>"
    "<ResponseCodeMessage>Não foi possível emitir a Operação de Vale-Pedágio</ResponseCodeMessage>"
    "</operacaoValePedagio_retorno>"
)

ROUTE_XML = (
    "<consultarRoteirizador_retorno><ResponseCode>200</ResponseCode>"
    "<praca><cnp>301</cnp><nomePraca>Praça Campo Largo</nomePraca><valorPraca>12.50</valorPraca></praca>"
    "<praca><cnp>302</cnp><nomePraca>Praça Palmeira</nomePraca><valorPraca>17.50</valorPraca></praca>"
    "<distancia>120.0</distancia></consultarRoteirizador_retorno>"
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_orchestrator(vpo_db, ndd_config, emissao_config, erp_repo, clock):
    """Fábrica de EmissionOrchestrator com ERP/RPC/assinatura falsos"""
    from vpo.emissao.data_merger import DataMerger
    from vpo.emissao.orchestrator import EmissionOrchestrator
    from vpo.emissao.pipeline_logger import PipelineLogger
    from vpo.nddcargo_client.response_classifier import ResponseClassifier
    from vpo.nddcargo_client.xml_builder import NddCargoXmlBuilder

    def factory(rpc=None, signer=None, erp=None):
        erp = erp or erp_repo
        return EmissionOrchestrator(
            merger=DataMerger(erp),
            erp=erp,
            builder=NddCargoXmlBuilder(ndd_config),
            signer=signer or FakeSigner(),
            rpc=rpc or FakeRpc(),
            classifier=ResponseClassifier(),
            config=emissao_config,
            ndd_config=ndd_config,
            now=clock.now,
            sleep=clock.sleep,
            pipeline_logger=PipelineLogger("vpo_pipeline_test"),
        )

    return factory
