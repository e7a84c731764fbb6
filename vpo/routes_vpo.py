"""
Rotas da API de emissão VPO
"""
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from . import emissao_log_db
from .emissao.exceptions import (
    EmissaoNotFound,
    InvalidStateTransition,
    SourceNotFound,
    ValidationIncomplete,
    VpoError,
)
from .emissao.orchestrator import EmissaoRequest, EmissionOrchestrator, resumo
from .emissoes_db import VALID_STATUSES
from .nddcargo_client.exceptions import NddCargoClientError

logger = logging.getLogger(__name__)


def _error_response(e: Exception) -> JSONResponse:
    """Mapeia exceções do domínio para status HTTP"""
    if isinstance(e, ValidationIncomplete):
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": "Dados incompletos", **e.to_dict()},
        )
    if isinstance(e, (EmissaoNotFound, SourceNotFound)):
        return JSONResponse(status_code=404, content={"success": False, "error": str(e)})
    if isinstance(e, InvalidStateTransition):
        return JSONResponse(status_code=409, content={"success": False, "error": str(e)})
    if isinstance(e, NddCargoClientError):
        return JSONResponse(status_code=502, content={"success": False, "error": str(e)})
    if isinstance(e, VpoError):
        content: Dict[str, Any] = {"success": False, "error": str(e)}
        if getattr(e, "error_code", None):
            content["error_code"] = e.error_code
        return JSONResponse(status_code=400, content=content)
    logger.exception(f"VPO API: erro inesperado: {e}")
    return JSONResponse(status_code=500, content={"success": False, "error": f"Erro inesperado: {e}"})


def _int_or_none(value: Any, campo: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{campo} inválido: {value}")


def _to_float(value: Any, campo: str) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{campo} inválido: {value}")


def _parse_emissao_request(data: Dict[str, Any], request: Request) -> EmissaoRequest:
    codpac = _int_or_none(data.get("codpac"), "codpac")
    rota_id = _int_or_none(data.get("rota_id"), "rota_id")
    if codpac is None:
        raise HTTPException(status_code=400, detail="codpac é obrigatório")
    if rota_id is None:
        raise HTTPException(status_code=400, detail="rota_id é obrigatório")

    # [] é rota livre: não confundir com praças não informadas
    pracas = data["pracas_pedagio"] if "pracas_pedagio" in data else data.get("pracas")
    if pracas is not None and not isinstance(pracas, list):
        raise HTTPException(status_code=400, detail="pracas_pedagio deve ser uma lista")
    waypoints = data.get("waypoints")
    if waypoints is not None and not isinstance(waypoints, list):
        raise HTTPException(status_code=400, detail="waypoints deve ser uma lista")

    return EmissaoRequest(
        codpac=codpac,
        rota_id=rota_id,
        codmot=_int_or_none(data.get("codmot"), "codmot"),
        placa=data.get("placa"),
        waypoints=waypoints,
        pracas_pedagio=pracas,
        valor_total=_to_float(data.get("valor_total"), "valor_total"),
        km_total=_to_float(data.get("km_total"), "km_total"),
        tag_codigo=data.get("tag_codigo"),
        bypass_validacao=bool(data.get("bypass_validacao", False)),
        usuario_id=_int_or_none(data.get("usuario_id"), "usuario_id"),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="JSON inválido")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="JSON deve ser um objeto")
    return data


def register_vpo_routes(app, get_orchestrator: Callable[[], EmissionOrchestrator]):
    """
    Registra as rotas VPO na app.

    Args:
        get_orchestrator: fábrica (lazy) do orquestrador; o certificado só é
            carregado na primeira chamada
    """

    @app.post("/api/vpo/emissao/iniciar")
    async def iniciar_emissao(request: Request):
        """
        Inicia a emissão de VPO para um pacote/rota.

        Retorna 202 com o UUID para polling, ou 200 quando a NDD Cargo já
        respondeu de forma síncrona.
        """
        data = await _json_body(request)
        emissao_request = _parse_emissao_request(data, request)
        try:
            orchestrator = get_orchestrator()
            resultado = await run_in_threadpool(orchestrator.start, emissao_request)
        except Exception as e:
            return _error_response(e)

        content = resultado.to_dict()
        content["uuid"] = resultado.uuid
        content["data"] = resumo(resultado.emissao)
        content["created"] = resultado.created
        status_code = 202 if resultado.status in ("pending", "processing") else 200
        return JSONResponse(status_code=status_code, content=content)

    # rotas estáticas antes de /{uuid}
    @app.get("/api/vpo/emissao/statistics")
    async def estatisticas_emissao():
        try:
            stats = await run_in_threadpool(get_orchestrator().estatisticas)
        except Exception as e:
            return _error_response(e)
        return JSONResponse({"success": True, "data": stats})

    @app.get("/api/vpo/emissao/preview-waypoints")
    async def preview_waypoints(
        rota_id: int = Query(..., description="ID da rota SemParar"),
        codpac: int = Query(..., description="Código do pacote"),
    ):
        try:
            data = await run_in_threadpool(get_orchestrator().preview_waypoints, rota_id, codpac)
        except Exception as e:
            return _error_response(e)
        return JSONResponse({"success": True, "data": data})

    @app.get("/api/vpo/emissao/pacote/{codpac}/validar")
    async def validar_pacote(codpac: int):
        try:
            data = await run_in_threadpool(get_orchestrator().validar_pacote, codpac)
        except Exception as e:
            return _error_response(e)
        return JSONResponse({"success": True, "data": data})

    @app.get("/api/vpo/emissao")
    async def listar_emissoes(
        status: Optional[str] = Query(None),
        codtrn: Optional[int] = Query(None),
        codpac: Optional[int] = Query(None),
        rota_id: Optional[int] = Query(None),
        data_inicio: Optional[str] = Query(None),
        data_fim: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        if status and status not in VALID_STATUSES:
            raise HTTPException(status_code=400, detail=f"Status inválido: {status}")
        try:
            emissoes = await run_in_threadpool(
                get_orchestrator().listar,
                status=status, codtrn=codtrn, codpac=codpac, rota_id=rota_id,
                data_inicio=data_inicio, data_fim=data_fim, limit=limit, offset=offset,
            )
        except Exception as e:
            return _error_response(e)
        return JSONResponse({"success": True, "data": emissoes, "total": len(emissoes)})

    @app.get("/api/vpo/emissao/{uuid}")
    async def consultar_emissao(uuid: str, force_retry: bool = Query(False)):
        """
        Polling do resultado. Em processamento devolve 202 + retry_after.
        """
        try:
            resultado = await run_in_threadpool(get_orchestrator().consultar_resultado, uuid, force_retry)
        except Exception as e:
            return _error_response(e)

        content = resultado.to_dict()
        content["uuid"] = uuid
        if resultado.status in ("pending", "processing"):
            return JSONResponse(
                status_code=202,
                content=content,
                headers={"Retry-After": str(resultado.retry_after or 5)},
            )
        return JSONResponse(content)

    @app.post("/api/vpo/emissao/{uuid}/cancelar")
    async def cancelar_emissao(uuid: str, request: Request):
        data = await _json_body(request) if await request.body() else {}
        try:
            emissao = await run_in_threadpool(get_orchestrator().cancel, uuid, data.get("motivo"))
        except Exception as e:
            return _error_response(e)
        return JSONResponse({"success": True, "message": "Emissão cancelada", "data": resumo(emissao)})

    @app.post("/api/vpo/emissao/{uuid}/cancelar-ndd-cargo")
    async def cancelar_emissao_ndd_cargo(uuid: str, request: Request):
        """
        Cancela o VPO na NDD Cargo (apenas emissões concluídas).

        Body: {"motivo": "...", "identificacao": {"tipo": "ide"|"ndvp", ...}}
        """
        data = await _json_body(request)
        motivo = str(data.get("motivo") or "").strip()
        if not motivo:
            raise HTTPException(status_code=400, detail="motivo é obrigatório")
        if len(motivo) > 500:
            raise HTTPException(status_code=400, detail="motivo deve ter no máximo 500 caracteres")
        try:
            emissao = await run_in_threadpool(
                get_orchestrator().cancel_on_remote, uuid, motivo, data.get("identificacao")
            )
        except Exception as e:
            return _error_response(e)
        return JSONResponse({
            "success": True,
            "message": "VPO cancelado na NDD Cargo",
            "data": resumo(emissao),
        })

    @app.post("/api/vpo/transportador/sync-batch")
    async def sync_transportadores(request: Request):
        """Sincroniza uma lista de transportadores, com resultado por codtrn"""
        data = await _json_body(request)
        codtrns = data.get("codtrns")
        if not isinstance(codtrns, list) or not codtrns:
            raise HTTPException(status_code=400, detail="codtrns deve ser uma lista não vazia")
        if len(codtrns) > 100:
            raise HTTPException(status_code=400, detail="Máximo de 100 transportadores por lote")
        try:
            resultado = await run_in_threadpool(
                get_orchestrator().merger.sync_batch, codtrns, bool(data.get("force_antt", False))
            )
        except Exception as e:
            return _error_response(e)
        return JSONResponse({"success": resultado["failed"] == 0, "data": resultado})

    @app.post("/api/vpo/transportador/{codtrn}/sync")
    async def sync_transportador(codtrn: int, request: Request):
        """Sincroniza o perfil do transportador (ERP + ANTT) e devolve a validação"""
        data = await _json_body(request) if await request.body() else {}
        try:
            orchestrator = get_orchestrator()
            profile = await run_in_threadpool(
                orchestrator.merger.sync,
                codtrn,
                _int_or_none(data.get("codmot"), "codmot"),
                data.get("placa"),
                bool(data.get("force_antt", False)),
            )
            validation = orchestrator.validator.validate(profile)
        except Exception as e:
            return _error_response(e)
        return JSONResponse({
            "success": True,
            "data": profile.to_dict(),
            "validacao": validation.to_dict(),
        })

    @app.put("/api/vpo/transportador/{codtrn}")
    async def editar_transportador(codtrn: int, request: Request):
        """Edição manual de campos do perfil (preservada nos próximos syncs)"""
        data = await _json_body(request)
        try:
            orchestrator = get_orchestrator()
            profile = await run_in_threadpool(orchestrator.merger.apply_manual_edit, codtrn, data)
            validation = orchestrator.validator.validate(profile)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            return _error_response(e)
        return JSONResponse({
            "success": True,
            "data": profile.to_dict(),
            "validacao": validation.to_dict(),
        })

    @app.get("/api/vpo/logs")
    async def listar_logs(
        status: Optional[str] = Query(None),
        codtrn: Optional[int] = Query(None),
        codpac: Optional[int] = Query(None),
        placa: Optional[str] = Query(None),
        data_inicio: Optional[str] = Query(None),
        data_fim: Optional[str] = Query(None),
        busca: Optional[str] = Query(None),
        limit: int = Query(15, ge=1, le=200),
        offset: int = Query(0, ge=0),
    ):
        if status and status not in emissao_log_db.VALID_STATUSES:
            raise HTTPException(status_code=400, detail=f"Status inválido: {status}")
        try:
            logs = await run_in_threadpool(
                emissao_log_db.listar,
                status=status, codtrn=codtrn, codpac=codpac, placa=placa,
                data_inicio=data_inicio, data_fim=data_fim, busca=busca,
                limit=limit, offset=offset,
            )
        except ConnectionError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return JSONResponse({"success": True, "data": logs})

    @app.get("/api/vpo/logs/estatisticas")
    async def estatisticas_logs(
        data_inicio: Optional[str] = Query(None),
        data_fim: Optional[str] = Query(None),
    ):
        try:
            stats = await run_in_threadpool(emissao_log_db.estatisticas, data_inicio, data_fim)
        except ConnectionError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return JSONResponse({"success": True, "data": stats})
