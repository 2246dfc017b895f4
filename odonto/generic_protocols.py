"""Static, AI-free protocols for treatments without shade selection.

Crown, implant, endodontic, referral, gingivoplasty and root-coverage
cases get a fixed plan: a summary sentence naming the tooth, a checklist,
alerts and patient recommendations.  Referral plans infer the specialty
from the AI's indication reason.  Unknown treatment types get the
referral plan while keeping their own ``treatment_type`` string.
"""

from __future__ import annotations

from pydantic import BaseModel

from odonto.models import GenericProtocol, PendingTooth, TreatmentType


class _Template(BaseModel):
    summary: str
    checklist: list[str]
    alerts: list[str]
    recommendations: list[str]


def _implant(tooth: str, reason: str) -> _Template:
    return _Template(
        summary=f"Dente {tooth} indicado para extração e reabilitação com implante.",
        checklist=[
            "Solicitar tomografia computadorizada cone beam",
            "Avaliar quantidade e qualidade óssea disponível",
            "Verificar espaço protético adequado",
            "Avaliar condição periodontal dos dentes adjacentes",
            "Planejar tempo de osseointegração",
            "Discutir opções de prótese provisória",
            "Encaminhar para cirurgião implantodontista",
            "Agendar retorno para acompanhamento",
        ],
        alerts=[
            "Avaliar contraindicações sistêmicas para cirurgia",
            "Verificar uso de bifosfonatos ou anticoagulantes",
            "Considerar enxerto ósseo se necessário",
        ],
        recommendations=[
            "Manter higiene oral adequada",
            "Evitar fumar durante o tratamento",
            "Seguir orientações pré e pós-operatórias",
        ],
    )


def _crown(tooth: str, reason: str) -> _Template:
    return _Template(
        summary=f"Dente {tooth} indicado para restauração com coroa total.",
        checklist=[
            "Realizar preparo coronário seguindo princípios biomecânicos",
            "Avaliar necessidade de núcleo/pino intrarradicular",
            "Selecionar material da coroa (metal-cerâmica, cerâmica pura, zircônia)",
            "Moldagem de trabalho",
            "Confecção de provisório adequado",
            "Prova da infraestrutura",
            "Seleção de cor com escala VITA",
            "Cimentação definitiva",
            "Ajuste oclusal",
            "Orientações de higiene",
        ],
        alerts=[
            "Verificar saúde pulpar antes do preparo",
            "Avaliar relação coroa-raiz",
            "Considerar tratamento periodontal prévio se necessário",
        ],
        recommendations=[
            "Proteger o provisório durante a espera",
            "Evitar alimentos duros e pegajosos",
        ],
    )


def _endodontic(tooth: str, reason: str) -> _Template:
    return _Template(
        summary=f"Dente {tooth} necessita de tratamento endodôntico antes de restauração definitiva.",
        checklist=[
            "Confirmar diagnóstico pulpar",
            "Solicitar radiografia periapical",
            "Avaliar anatomia radicular",
            "Planejamento do acesso endodôntico",
            "Instrumentação e irrigação dos canais",
            "Medicação intracanal se necessário",
            "Obturação dos canais radiculares",
            "Radiografia de controle pós-obturação",
            "Agendar restauração definitiva",
            "Orientar retorno se houver dor ou inchaço",
        ],
        alerts=[
            "Avaliar necessidade de retratamento",
            "Verificar presença de lesão periapical",
            "Considerar encaminhamento para especialista em casos complexos",
        ],
        recommendations=[
            "Evitar mastigar do lado tratado até restauração definitiva",
            "Retornar imediatamente se houver dor intensa ou inchaço",
        ],
    )


# (specialty, keywords) checked in order; first hit wins
_SPECIALTY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Ortodontia", ("apinhamento", "ortodon", "maloclusão", "alinhamento")),
    ("Endodontia", ("canal", "pulp", "periapical", "endodon")),
    ("Periodontia", ("perio", "gengiv", "bolsa", "retração")),
    ("Cirurgia Bucomaxilofacial", ("implante", "cirurg", "extração", "terceiro molar")),
    ("DTM/Dor Orofacial", ("dtm", "atm", "articulação")),
]


def infer_specialty(reason: str | None) -> str | None:
    text = (reason or "").lower()
    for specialty, keywords in _SPECIALTY_KEYWORDS:
        if any(k in text for k in keywords):
            return specialty
    return None


def _referral(tooth: str, reason: str) -> _Template:
    specialty = infer_specialty(reason)

    match specialty:
        case "Ortodontia":
            checklist = [
                "Documentar achados clínicos e fotografias intra/extraorais",
                "Solicitar radiografia panorâmica e cefalometria lateral",
                "Solicitar modelos de estudo ou escaneamento digital",
                f"Encaminhar para Ortodontia (motivo: {reason or 'correção de posicionamento'})",
                "Informar ao ortodontista sobre o plano restaurador estético em andamento",
                "Coordenar timing: alinhamento ortodôntico antes de finalizar restaurações anteriores",
                "Orientar paciente sobre duração estimada e etapas do tratamento ortodôntico",
                "Agendar retorno para acompanhamento e reavaliação do plano restaurador",
            ]
            recommendations = [
                "Levar exames radiográficos e relatório clínico ao ortodontista",
                "Estabilidade oclusal a longo prazo depende do alinhamento prévio",
                "Informar sobre medicamentos em uso e expectativas estéticas",
            ]
        case "Endodontia":
            checklist = [
                "Documentar achados clínicos e teste de vitalidade pulpar",
                "Solicitar radiografia periapical do dente",
                f"Encaminhar para Endodontia (motivo: {reason or 'comprometimento pulpar'})",
                "Informar ao endodontista sobre plano restaurador pós-tratamento",
                "Orientar paciente sobre próximos passos",
                "Agendar retorno para restauração definitiva após tratamento endodôntico",
            ]
            recommendations = [
                "Levar radiografias e relatório ao endodontista",
                "Retornar imediatamente se houver dor intensa ou inchaço",
                "Evitar mastigar do lado tratado até restauração definitiva",
            ]
        case "Periodontia":
            checklist = [
                "Documentar achados clínicos e profundidade de sondagem",
                "Solicitar radiografia periapical ou panorâmica",
                f"Encaminhar para Periodontia (motivo: {reason or 'comprometimento periodontal'})",
                "Informar ao periodontista sobre plano restaurador",
                "Orientar paciente sobre importância do controle periodontal",
                "Agendar retorno para reavaliação após tratamento periodontal",
            ]
            recommendations = [
                "Levar exames e relatório ao periodontista",
                "Manter higiene bucal rigorosa durante o tratamento",
                "Retornar para controle periodontal trimestral",
            ]
        case _:
            checklist = [
                "Documentar achados clínicos",
                "Realizar radiografias necessárias",
                "Preparar relatório para o especialista",
                f"Encaminhar para {specialty}" if specialty else "Identificar especialidade adequada",
                "Orientar paciente sobre próximos passos",
                "Agendar retorno para acompanhamento",
            ]
            recommendations = [
                "Levar exames e relatório ao especialista",
                "Informar sobre medicamentos em uso",
            ]

    suggestion = f" Sugestão de encaminhamento: **{specialty}**." if specialty else ""
    return _Template(
        summary=f"Dente {tooth} requer avaliação especializada.{suggestion}",
        checklist=checklist,
        alerts=[
            "Urgência do encaminhamento depende do diagnóstico",
            "Manter comunicação com especialista",
        ],
        recommendations=recommendations,
    )


def _gingivoplasty(tooth: str, reason: str) -> _Template:
    return _Template(
        summary="Gengivoplastia estética indicada pelo DSD para harmonização do sorriso.",
        checklist=[
            "Avaliação periodontal completa (sondagem, radiografias)",
            "Planejamento cirúrgico baseado na análise DSD",
            "Anestesia local infiltrativa",
            "Marcação dos zênites gengivais com sonda milimetrada",
            "Incisão com bisturi lâmina 15C seguindo o planejamento",
            "Remoção de tecido gengival excedente",
            "Osteotomia/osteoplastia se necessário (aumento de coroa clínica)",
            "Sutura (se necessário) com fio 5-0 ou 6-0",
            "Aplicação de cimento cirúrgico",
            "Prescrição: analgésico + anti-inflamatório + bochecho clorexidina 0,12%",
            "Remoção de sutura em 7-10 dias",
            "Aguardar cicatrização completa (3-6 semanas) antes de restaurações definitivas",
            "Reavaliação e moldagem para restaurações após cicatrização",
        ],
        alerts=[
            "Contraindicar em pacientes com periodontite ativa não tratada",
            "Avaliar biotipo gengival (fino vs espesso) para escolha de técnica",
            "Verificar distância biológica antes de planejar ressecção",
            "Considerar gengivoplastia bilateral para simetria",
        ],
        recommendations=[
            "Manter higiene oral rigorosa durante cicatrização",
            "Evitar alimentos duros e picantes por 7 dias",
            "Não escovar a região operada por 48h",
            "Retornar imediatamente se houver sangramento excessivo",
        ],
    )


def _root_coverage(tooth: str, reason: str) -> _Template:
    return _Template(
        summary=f"Dente {tooth} indicado para recobrimento radicular da recessão gengival.",
        checklist=[
            "Classificar a recessão gengival (Cairo RT1/RT2/RT3)",
            "Medir altura e largura da recessão com sonda milimetrada",
            "Avaliar espessura e faixa de gengiva queratinizada",
            "Controlar fatores etiológicos (escovação traumática, trauma oclusal)",
            "Planejar técnica (retalho posicionado coronalmente, túnel, enxerto conjuntivo)",
            "Definir área doadora de enxerto de tecido conjuntivo se necessário",
            "Realizar o procedimento cirúrgico conforme planejamento",
            "Prescrição: analgésico + anti-inflamatório + bochecho clorexidina 0,12%",
            "Remoção de sutura em 10-14 dias",
            "Reavaliar recobrimento após 3 meses de cicatrização",
        ],
        alerts=[
            "Recessões com perda de inserção interproximal têm prognóstico de recobrimento reduzido",
            "Contraindicar em tabagistas ou pacientes com periodontite ativa não tratada",
            "Restaurações cervicais devem ser planejadas após a cicatrização",
        ],
        recommendations=[
            "Não escovar a região operada por 14 dias",
            "Usar escova ultramacia e técnica não traumática após liberação",
            "Evitar alimentos duros e quentes na primeira semana",
        ],
    )


_TEMPLATES = {
    TreatmentType.IMPLANTE: _implant,
    TreatmentType.COROA: _crown,
    TreatmentType.ENDODONTIA: _endodontic,
    TreatmentType.ENCAMINHAMENTO: _referral,
    TreatmentType.GENGIVOPLASTIA: _gingivoplasty,
    TreatmentType.RECOBRIMENTO_RADICULAR: _root_coverage,
}


def build_generic_protocol(
    treatment_type: str | TreatmentType,
    tooth: str,
    tooth_data: PendingTooth | None = None,
) -> GenericProtocol:
    """Synthesize the static protocol for ``treatment_type`` on ``tooth``."""
    treatment = TreatmentType.parse(treatment_type)
    reason = tooth_data.indication_reason if tooth_data else None
    template = _TEMPLATES.get(treatment, _referral)(tooth, reason or "")

    label = treatment.value if treatment is not TreatmentType.UNRECOGNIZED else str(treatment_type)
    return GenericProtocol(
        treatment_type=label,
        tooth=tooth,
        ai_reason=reason or None,
        summary=template.summary,
        checklist=template.checklist,
        alerts=template.alerts,
        recommendations=template.recommendations,
    )
