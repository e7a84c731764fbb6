"""
Validação de completude do perfil do transportador para emissão VPO
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..models import TransporterProfile, is_blank

CATEGORIA_TRANSPORTADOR = "Transportador"
CATEGORIA_VEICULO = "Veículo"
CATEGORIA_CONDUTOR = "Condutor"
CATEGORIA_ENDERECO = "Endereço"
CATEGORIA_CONTATO = "Contato"

CATEGORIAS = (
    CATEGORIA_TRANSPORTADOR,
    CATEGORIA_VEICULO,
    CATEGORIA_CONDUTOR,
    CATEGORIA_ENDERECO,
    CATEGORIA_CONTATO,
)

# (campo, descrição, categoria) - a ordem é a do relatório
CAMPOS_OBRIGATORIOS: Tuple[Tuple[str, str, str], ...] = (
    ("cpf_cnpj", "CPF/CNPJ do transportador", CATEGORIA_TRANSPORTADOR),
    ("antt_rntrc", "RNTRC (registro ANTT)", CATEGORIA_TRANSPORTADOR),
    ("antt_nome", "Nome do transportador na ANTT", CATEGORIA_TRANSPORTADOR),
    ("antt_validade", "Validade do RNTRC", CATEGORIA_TRANSPORTADOR),
    ("antt_status", "Situação do RNTRC", CATEGORIA_TRANSPORTADOR),
    ("placa", "Placa do veículo", CATEGORIA_VEICULO),
    ("veiculo_tipo", "Tipo do veículo", CATEGORIA_VEICULO),
    ("veiculo_modelo", "Modelo do veículo", CATEGORIA_VEICULO),
    ("condutor_rg", "RG do condutor", CATEGORIA_CONDUTOR),
    ("condutor_nome", "Nome do condutor", CATEGORIA_CONDUTOR),
    ("condutor_sexo", "Sexo do condutor", CATEGORIA_CONDUTOR),
    ("condutor_nome_mae", "Nome da mãe do condutor", CATEGORIA_CONDUTOR),
    ("condutor_data_nascimento", "Data de nascimento do condutor", CATEGORIA_CONDUTOR),
    ("endereco_rua", "Logradouro", CATEGORIA_ENDERECO),
    ("endereco_bairro", "Bairro", CATEGORIA_ENDERECO),
    ("endereco_cidade", "Cidade", CATEGORIA_ENDERECO),
    ("endereco_estado", "UF", CATEGORIA_ENDERECO),
    ("contato_celular", "Celular", CATEGORIA_CONTATO),
    ("contato_email", "E-mail", CATEGORIA_CONTATO),
)

TOTAL_CAMPOS = len(CAMPOS_OBRIGATORIOS)


@dataclass
class ValidationResult:
    valid: bool
    missing_fields: List[Dict[str, str]] = field(default_factory=list)
    score: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "campos_faltantes": self.missing_fields,
            "score": self.score,
            "mensagem": self.message,
        }


class CompletenessValidator:
    """
    Verifica os 19 campos obrigatórios do perfil VPO.

    Um campo falta quando é None, string vazia ou só espaços. O score é a
    porcentagem de campos presentes (0-100, arredondada).
    """

    def validate(self, profile: TransporterProfile) -> ValidationResult:
        missing = []
        for campo, descricao, categoria in CAMPOS_OBRIGATORIOS:
            if is_blank(getattr(profile, campo, None)):
                missing.append({"field": campo, "description": descricao, "category": categoria})

        score = round(100 * (TOTAL_CAMPOS - len(missing)) / TOTAL_CAMPOS)
        return ValidationResult(
            valid=not missing,
            missing_fields=missing,
            score=score,
            message=self.build_message(missing, score),
        )

    @staticmethod
    def build_message(missing: List[Dict[str, str]], score: int) -> str:
        """Relatório multi-linha agrupado por categoria"""
        if not missing:
            return f"Dados completos para emissão de VPO (score: {score}/100)"

        lines = [
            f"Dados incompletos para emissão de VPO: {len(missing)} campo(s) obrigatório(s) "
            f"faltando (score: {score}/100)"
        ]
        for categoria in CATEGORIAS:
            descricoes = [m["description"] for m in missing if m["category"] == categoria]
            if descricoes:
                lines.append(f"{categoria}:")
                lines.extend(f"  - {d}" for d in descricoes)
        return "\n".join(lines)
