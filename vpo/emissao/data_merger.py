"""
Merge de dados do transportador: ERP + ANTT + cache de edições manuais

Prioridade (empresa): cache de motorista completo > roster (trnmot) >
cadastro do transportador > fallback para o contato da própria empresa.
Autônomo (CPF, 11 dígitos): todos os campos vêm do cadastro do transportador.

O tipo de pessoa é sempre derivado do tamanho do documento; o flag
flgautonomo do ERP não é confiável.
"""
import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .. import transportador_cache_db
from ..models import TransporterProfile, is_blank, only_digits
from .antt_client import AnttOpenDataClient
from .erp import ErpRepository, sanitize_placa
from .exceptions import SourceNotFound, VpoError
from .validator import CompletenessValidator

logger = logging.getLogger(__name__)

# Campos que o usuário pode editar manualmente
CAMPOS_EDITAVEIS = (
    "antt_rntrc", "antt_nome", "antt_validade", "antt_status",
    "placa", "veiculo_tipo", "veiculo_modelo", "veiculo_eixos",
    "condutor_cpf", "condutor_rg", "condutor_nome", "condutor_sexo",
    "condutor_nome_mae", "condutor_data_nascimento",
    "endereco_rua", "endereco_numero", "endereco_bairro", "endereco_cidade", "endereco_estado",
    "contato_celular", "contato_email", "tag_codigo",
)

SEXO_PADRAO = "M"
TIPO_NAO_ESPECIFICADO = "Não especificado"


def format_telefone(ddd: Any, numero: Any) -> Optional[str]:
    """DDD + número; celular antigo (10 dígitos) ganha o 9 depois do DDD"""
    if is_blank(ddd) or is_blank(numero):
        return None
    telefone = only_digits(f"{ddd}{numero}")
    if len(telefone) == 10:
        telefone = telefone[:2] + "9" + telefone[2:]
    return telefone or None


def format_endereco(desend: Any, numend: Any = None) -> Optional[str]:
    if is_blank(desend):
        return None
    endereco = str(desend).strip()
    if not is_blank(numend):
        endereco += f", {str(numend).strip()}"
    return endereco


def _text(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    return str(value).strip()


def preserve_manual_edits(existing: Optional[TransporterProfile], fresh: TransporterProfile) -> TransporterProfile:
    """
    Valores editados manualmente (não vazios) vencem o merge novo.

    Só age quando o perfil existente tem editado_manualmente; nesse caso o
    flag e a data da edição são sempre preservados.
    """
    if existing is None or not existing.editado_manualmente:
        return fresh

    preserved = {}
    fontes = dict(fresh.fontes_dados)
    for campo in CAMPOS_EDITAVEIS:
        valor = getattr(existing, campo)
        if not is_blank(valor):
            preserved[campo] = valor
            if existing.fontes_dados.get(campo) == "manual":
                fontes[campo] = "manual"

    merged = replace(
        fresh,
        **preserved,
        fontes_dados=fontes,
        editado_manualmente=True,
        data_edicao_manual=existing.data_edicao_manual,
    )
    logger.info(f"VPO Sync: campos editados manualmente preservados codtrn={fresh.codtrn}")
    return merged


class DataMerger:
    """
    Monta o TransporterProfile canônico a partir do ERP, ANTT e caches locais.
    """

    def __init__(
        self,
        erp: ErpRepository,
        antt: Optional[AnttOpenDataClient] = None,
        validator: Optional[CompletenessValidator] = None,
        cache=transportador_cache_db,
    ):
        self.erp = erp
        self.antt = antt
        self.validator = validator or CompletenessValidator()
        self.cache = cache

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------
    def merge(
        self,
        codtrn: int,
        codmot: Optional[int] = None,
        placa: Optional[str] = None,
        consultar_antt: bool = True,
    ) -> TransporterProfile:
        """
        Monta o perfil do transportador.

        Args:
            codtrn: código do transportador no ERP
            codmot: motorista (empresas); None usa o primeiro do roster
            placa: placa do veículo; None usa a do cadastro
            consultar_antt: enriquecer com dados abertos da ANTT

        Raises:
            SourceNotFound: transportador inexistente no ERP
            ValueError: codtrn/codmot não numéricos
        """
        codtrn = int(codtrn)
        codmot = int(codmot) if codmot is not None else None

        transporte = self.erp.get_transporte(codtrn)
        if not transporte:
            raise SourceNotFound(f"Transportador {codtrn} não encontrado no ERP")

        documento = only_digits(transporte.get("codcnpjcpf"))
        destipcam = self.erp.get_tipo_caminhao(transporte.get("tipcam"))
        fontes: Dict[str, str] = {"transportador": "erp_transporte"}
        if destipcam:
            fontes["veiculo_tipo"] = "erp_tipcam"

        if len(documento) == 11:
            profile = self._map_autonomo(codtrn, transporte, documento, destipcam, placa, fontes)
        else:
            profile = self._map_empresa(codtrn, transporte, documento, destipcam, codmot, placa, fontes)

        if consultar_antt and self.antt is not None and profile.antt_rntrc:
            result = self.antt.fetch(profile.antt_rntrc)
            for key, value in result.data.items():
                if value is not None:
                    setattr(profile, key, value)
            profile.fontes_dados["antt"] = result.fonte
        elif profile.antt_rntrc:
            profile.fontes_dados.setdefault("antt", "none")

        profile.ultima_sincronizacao = datetime.now().isoformat(timespec="seconds")
        logger.info(
            f"VPO Merge: codtrn={codtrn}, pessoa_fisica={profile.is_pessoa_fisica}, "
            f"motorista={profile.fontes_dados.get('motorista')}"
        )
        return profile

    def _endereco_descricoes(self, row: Dict[str, Any]) -> Dict[str, Optional[str]]:
        return {
            "endereco_bairro": self.erp.get_bairro_nome(row.get("codbai")),
            "endereco_cidade": self.erp.get_municipio_nome(row.get("codmun")),
            "endereco_estado": self.erp.get_estado_sigla(row.get("codest")),
        }

    def _map_autonomo(self, codtrn, transporte, documento, destipcam, placa, fontes) -> TransporterProfile:
        fontes["motorista"] = "erp_transporte"
        return TransporterProfile(
            codtrn=codtrn,
            cpf_cnpj=documento,
            antt_rntrc=_text(transporte.get("cdantt")),
            antt_nome=_text(transporte.get("nomtrn")),
            antt_validade=_text(transporte.get("datvldantt")),
            antt_status="Ativo",
            placa=sanitize_placa(placa or transporte.get("numpla")),
            veiculo_tipo=destipcam or TIPO_NAO_ESPECIFICADO,
            veiculo_modelo=_text(transporte.get("desvei")),
            condutor_cpf=documento,
            condutor_rg=_text(transporte.get("numrg")) or _text(transporte.get("numhab")),
            condutor_nome=_text(transporte.get("nomtrn")),
            condutor_sexo=SEXO_PADRAO,
            condutor_nome_mae=_text(transporte.get("nommae")),
            condutor_data_nascimento=_text(transporte.get("datnas")),
            endereco_rua=format_endereco(transporte.get("desend"), transporte.get("numend")),
            endereco_numero=_text(transporte.get("numend")),
            contato_celular=format_telefone(transporte.get("dddcel"), transporte.get("numcel")),
            contato_email=_text(transporte.get("e-mail")),
            fontes_dados=fontes,
            **self._endereco_descricoes(transporte),
        )

    def _map_empresa(self, codtrn, transporte, documento, destipcam, codmot, placa, fontes) -> TransporterProfile:
        motorista = self.erp.get_motorista(codtrn, codmot)
        placa_busca = sanitize_placa(placa or transporte.get("numpla"))
        veiculo = self.erp.get_veiculo(codtrn, placa_busca) if placa_busca else None

        veiculo_modelo = None
        if veiculo and not is_blank(veiculo.get("modvei")):
            veiculo_modelo = _text(veiculo.get("modvei"))
            fontes["veiculo"] = "erp_trnvei"
        elif not is_blank(transporte.get("desvei")):
            veiculo_modelo = _text(transporte.get("desvei"))
            fontes["veiculo"] = "erp_transporte"

        if not motorista:
            # empresa pequena: o dono é o motorista
            logger.info(f"VPO Merge: motorista não encontrado para empresa {codtrn}, usando dados do transporte")
            fontes["motorista"] = "fallback_to_transporte"
            return TransporterProfile(
                codtrn=codtrn,
                cpf_cnpj=documento,
                antt_rntrc=_text(transporte.get("cdantt")),
                antt_nome=_text(transporte.get("nomtrn")),
                antt_validade=_text(transporte.get("datvldantt")),
                antt_status="Ativo",
                placa=placa_busca,
                veiculo_tipo=destipcam or TIPO_NAO_ESPECIFICADO,
                veiculo_modelo=veiculo_modelo,
                condutor_rg=_text(transporte.get("numrg")) or _text(transporte.get("numhab")),
                condutor_nome=_text(transporte.get("nomtrn")),
                condutor_sexo=SEXO_PADRAO,
                condutor_nome_mae=_text(transporte.get("nommae")),
                condutor_data_nascimento=_text(transporte.get("datnas")),
                endereco_rua=format_endereco(transporte.get("desend"), transporte.get("numend")),
                endereco_numero=_text(transporte.get("numend")),
                contato_celular=format_telefone(transporte.get("dddcel"), transporte.get("numcel")),
                contato_email=_text(transporte.get("e-mail")),
                fontes_dados=fontes,
                **self._endereco_descricoes(transporte),
            )

        motorista_codmot = int(motorista["codmot"])
        cache = self.cache.get_motorista_cache(codtrn, motorista_codmot)
        usar_cache = bool(cache and cache.get("dados_completos"))
        fontes["motorista"] = "cache_motorista" if usar_cache else "erp_trnmot"

        def prefer_cache(cache_key: str, erp_value: Any) -> Optional[str]:
            if usar_cache and not is_blank(cache.get(cache_key)):
                return str(cache[cache_key]).strip()
            return _text(erp_value)

        condutor_cpf = prefer_cache("cpf", only_digits(motorista.get("codcpf")))
        nome = prefer_cache("nommot", motorista.get("nommot"))
        endereco = self._endereco_descricoes(motorista)
        endereco_rua = format_endereco(motorista.get("desend"))
        endereco_numero = None
        if usar_cache:
            if not is_blank(cache.get("endereco_logradouro")):
                endereco_rua = format_endereco(cache["endereco_logradouro"], cache.get("endereco_numero"))
                endereco_numero = _text(cache.get("endereco_numero"))
            for campo, chave in (("endereco_bairro", "endereco_bairro"),
                                 ("endereco_cidade", "endereco_cidade"),
                                 ("endereco_estado", "endereco_uf")):
                if not is_blank(cache.get(chave)):
                    endereco[campo] = str(cache[chave]).strip()

        return TransporterProfile(
            codtrn=codtrn,
            cpf_cnpj=documento,
            antt_rntrc=prefer_cache("rntrc", motorista.get("codrntrc") or transporte.get("cdantt")),
            antt_nome=nome,
            antt_validade=_text(motorista.get("datvldrntrc")),
            antt_status="Ativo",
            placa=placa_busca,
            veiculo_tipo=destipcam or TIPO_NAO_ESPECIFICADO,
            veiculo_modelo=veiculo_modelo,
            codmot=motorista_codmot,
            condutor_cpf=condutor_cpf,
            condutor_rg=_text(motorista.get("numrg")),
            condutor_nome=nome,
            condutor_sexo=SEXO_PADRAO,
            condutor_nome_mae=prefer_cache("nommae", motorista.get("nommae")),
            condutor_data_nascimento=prefer_cache("data_nascimento", motorista.get("datnas")),
            endereco_rua=endereco_rua,
            endereco_numero=endereco_numero,
            contato_celular=format_telefone(motorista.get("dddtel"), motorista.get("numtel")),
            contato_email=_text(motorista.get("email")) or _text(transporte.get("e-mail")),
            fontes_dados=fontes,
            **endereco,
        )

    # ------------------------------------------------------------------
    # Edições manuais / sincronização
    # ------------------------------------------------------------------
    @staticmethod
    def preserve_manual_edits(existing: Optional[TransporterProfile], fresh: TransporterProfile) -> TransporterProfile:
        return preserve_manual_edits(existing, fresh)

    def _score(self, profile: TransporterProfile) -> TransporterProfile:
        result = self.validator.validate(profile)
        profile.score_qualidade = result.score
        profile.campos_faltantes = result.missing_fields
        return profile

    def sync(
        self,
        codtrn: int,
        codmot: Optional[int] = None,
        placa: Optional[str] = None,
        force_antt: bool = False,
    ) -> TransporterProfile:
        """
        Merge + preservação das edições manuais + score, persistido no cache.
        """
        codtrn = int(codtrn)
        existing = self.cache.get_profile(codtrn)
        consultar_antt = force_antt or existing is None or self.cache.needs_antt_update(codtrn)

        fresh = self.merge(codtrn, codmot=codmot, placa=placa, consultar_antt=consultar_antt)
        if not consultar_antt and existing is not None:
            # mantém os dados ANTT do último sync
            fresh.antt_status = existing.antt_status or fresh.antt_status
            fresh.antt_validade = existing.antt_validade or fresh.antt_validade
            fresh.fontes_dados["antt"] = "cache"

        profile = self._score(preserve_manual_edits(existing, fresh))
        self.cache.save_profile(profile, antt_consultada=consultar_antt)
        logger.info(f"VPO Sync: concluído codtrn={codtrn}, score={profile.score_qualidade}/100")
        return profile

    def sync_batch(
        self,
        codtrns: List[int],
        force_antt: bool = False,
        intervalo_segundos: float = 0.1,
    ) -> Dict[str, Any]:
        """
        Sincroniza vários transportadores; erro em um não interrompe os demais.

        Returns:
            {'total', 'success', 'failed', 'results': [{'codtrn', 'success', 'message', 'score'}]}
        """
        results = []
        logger.info(f"VPO Sync Batch: iniciando total={len(codtrns)}")
        for i, codtrn in enumerate(codtrns):
            if i and intervalo_segundos:
                # não sobrecarregar ERP e ANTT
                time.sleep(intervalo_segundos)
            try:
                profile = self.sync(codtrn, force_antt=force_antt)
            except (VpoError, ValueError) as e:
                logger.warning(f"VPO Sync Batch: falha codtrn={codtrn}: {e}")
                results.append({"codtrn": codtrn, "success": False, "message": str(e), "score": None})
                continue
            results.append({
                "codtrn": profile.codtrn,
                "success": True,
                "message": "Dados sincronizados com sucesso",
                "score": profile.score_qualidade,
            })

        success = sum(1 for r in results if r["success"])
        logger.info(
            f"VPO Sync Batch: concluído total={len(codtrns)}, sucesso={success}, falhas={len(results) - success}"
        )
        return {
            "total": len(codtrns),
            "success": success,
            "failed": len(results) - success,
            "results": results,
        }

    def apply_manual_edit(self, codtrn: int, fields: Dict[str, Any]) -> TransporterProfile:
        """
        Aplica edição manual do usuário ao perfil salvo.

        Raises:
            SourceNotFound: perfil ainda não sincronizado
            ValueError: campo não editável
        """
        codtrn = int(codtrn)
        profile = self.cache.get_profile(codtrn)
        if profile is None:
            raise SourceNotFound(f"Transportador {codtrn} não sincronizado")

        invalid = sorted(set(fields) - set(CAMPOS_EDITAVEIS))
        if invalid:
            raise ValueError(f"Campos não editáveis: {', '.join(invalid)}")

        fontes = dict(profile.fontes_dados)
        changes = {}
        for campo, valor in fields.items():
            if campo == "placa":
                valor = sanitize_placa(valor)
            elif campo == "contato_celular" and not is_blank(valor):
                valor = only_digits(valor)
            elif campo == "veiculo_eixos" and not is_blank(valor):
                valor = int(valor)
            changes[campo] = valor
            fontes[campo] = "manual"

        edited = replace(
            profile,
            **changes,
            fontes_dados=fontes,
            editado_manualmente=True,
            data_edicao_manual=datetime.now().isoformat(timespec="seconds"),
        )
        edited = self._score(edited)
        self.cache.save_profile(edited)
        logger.info(f"VPO: edição manual aplicada codtrn={codtrn}, campos={sorted(changes)}")
        return edited
