"""
Aplicação FastAPI da emissão de Vale-Pedágio Obrigatório (VPO)
"""
import logging
import os
import threading
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .emissao.antt_client import AnttOpenDataClient
from .emissao.config import get_emissao_config
from .emissao.data_merger import DataMerger
from .emissao.erp import ErpRepository, JdbcConnectorErpClient
from .emissao.orchestrator import EmissionOrchestrator
from .nddcargo_client import (
    CertificateStore,
    NddCargoSoapClient,
    NddCargoXmlBuilder,
    ResponseClassifier,
    SignatureEngine,
    get_nddcargo_config,
)
from .routes_vpo import register_vpo_routes

# Carregar variáveis de ambiente
load_dotenv()

logging.basicConfig(
    level=os.getenv("VPO_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Emissão VPO - NDD Cargo")

_orchestrator: Optional[EmissionOrchestrator] = None
_orchestrator_lock = threading.Lock()


def build_orchestrator() -> EmissionOrchestrator:
    """Monta o orquestrador a partir das variáveis de ambiente"""
    config = get_emissao_config()
    ndd_config = get_nddcargo_config()

    erp = ErpRepository(JdbcConnectorErpClient(config=config))
    merger = DataMerger(erp, antt=AnttOpenDataClient(config))
    signer = SignatureEngine(CertificateStore.from_config(ndd_config), ndd_config.signature_algorithm)

    logger.info(f"VPO: orquestrador configurado (ambiente={ndd_config.env}, endpoint={ndd_config.endpoint_url})")
    return EmissionOrchestrator(
        merger=merger,
        erp=erp,
        builder=NddCargoXmlBuilder(ndd_config),
        signer=signer,
        rpc=NddCargoSoapClient(ndd_config),
        classifier=ResponseClassifier(),
        validator=merger.validator,
        config=config,
        ndd_config=ndd_config,
    )


def get_orchestrator() -> EmissionOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
        return _orchestrator


@app.get("/health")
async def health():
    return JSONResponse({"ok": True, "service": "vpo"})


register_vpo_routes(app, get_orchestrator)


def run():
    """Inicia o servidor (VPO_HOST / VPO_PORT)"""
    import uvicorn

    uvicorn.run(
        "vpo.main:app",
        host=os.getenv("VPO_HOST", "0.0.0.0"),
        port=int(os.getenv("VPO_PORT", "8000")),
        reload=False,
        log_level=os.getenv("VPO_LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    run()
