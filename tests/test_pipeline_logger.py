"""
Tests do PipelineLogger (log estruturado por etapa)
"""
import logging

import pytest


def test_log_context_sucesso(caplog):
    from vpo.emissao.pipeline_logger import PipelineLogger

    plog = PipelineLogger("vpo_pipeline_test_ok")

    with caplog.at_level(logging.INFO, logger="vpo_pipeline_test_ok"):
        with plog.log_context("vpo_envio", uuid="abc"):
            pass

    messages = [r.getMessage() for r in caplog.records]
    assert messages[0].startswith("Operação: vpo_envio - START")
    assert messages[-1].startswith("Operação: vpo_envio - SUCCESS")
    assert '"uuid": "abc"' in messages[-1]
    assert '"duration"' in messages[-1]


def test_log_context_erro_propaga(caplog):
    from vpo.emissao.pipeline_logger import PipelineLogger

    plog = PipelineLogger("vpo_pipeline_test_erro")

    with caplog.at_level(logging.INFO, logger="vpo_pipeline_test_erro"):
        with pytest.raises(RuntimeError):
            with plog.log_context("vpo_xml", uuid="abc"):
                raise RuntimeError("falhou")

    erro = [r for r in caplog.records if r.levelno == logging.ERROR][0]
    assert "Operação falhou: vpo_xml" in erro.getMessage()
    assert '"error_type": "RuntimeError"' in erro.getMessage()


def test_arquivo_de_log(tmp_path):
    from vpo.emissao.pipeline_logger import PipelineLogger

    plog = PipelineLogger("vpo_pipeline_test_arquivo", log_dir=tmp_path / "logs")
    plog.info("Emissão VPO concluída", protocolo="987")
    for handler in plog.logger.handlers:
        handler.flush()

    files = list((tmp_path / "logs").iterdir())
    assert len(files) == 1
    assert "protocolo" in files[0].read_text(encoding="utf-8")
