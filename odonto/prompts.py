"""Prompt builders for the resin and cementation recommendation calls.

Builders only ever receive sanitized free text (see ``odonto.sanitizer``);
structured fields come from the validated request models.
"""

from __future__ import annotations

import json

from odonto.catalog import ShadeCatalog
from odonto.inventory import InventoryItem, budget_appropriate
from odonto.models import Evaluation
from odonto.validation import CERAMIC_TYPES, CementationRequest, ResinRequest

PROMPT_VERSION = "2.1.0"

RESIN_PROMPT_ID = "recommend-resin"
CEMENTATION_PROMPT_ID = "recommend-cementation"


# ── Resin ────────────────────────────────────────────────────────────

RESIN_SYSTEM_PROMPT = """Você é um especialista em materiais dentários e técnicas restauradoras \
diretas com resina composta.

Gere uma recomendação COMPLETA com protocolo de estratificação usando a ferramenta \
`generate_resin_recommendation`.

REGRAS DO PROTOCOLO:
1. Se o substrato estiver escurecido/manchado, SEMPRE inclua camada de opaco.
2. Para casos estéticos (anteriores), use 3 camadas: Opaco (se necessário), Dentina, Esmalte.
3. Para posteriores com alta demanda estética, considere estratificação.
4. Para posteriores simples, pode recomendar técnica bulk ou incrementos simples.
5. Adapte as cores das camadas à cor VITA informada (ex: A2 → OA2 opaco, A2D dentina, A2E esmalte).
6. Informe `resin_brand` no formato "Fabricante - Linha" (ex: "3M - Filtek Z350 XT").
7. Use SOMENTE cores que existam na linha escolhida (catálogo abaixo).
8. O checklist deve citar as mesmas cores das camadas.

{catalog_section}"""

RESIN_USER_TEMPLATE = """CASO CLÍNICO:
- Idade do paciente: {patient_age} anos
- Dente: {tooth}
- Região: {region}
- Classe da cavidade: {cavity_class}
- Tamanho da restauração: {restoration_size}
- Profundidade: {depth}
- Substrato: {substrate}
- Condição do substrato: {substrate_condition}
- Condição do esmalte: {enamel_condition}
- Nível estético: {aesthetic_level}
- Cor do dente (VITA): {tooth_color}
- Necessita estratificação: {stratification_needed}
- Bruxismo: {bruxism}
- Expectativa de longevidade: {longevity_expectation}
- Orçamento: {budget}
{optional_sections}"""


def _catalog_section(catalog: ShadeCatalog | None) -> str:
    if catalog is None or not len(catalog):
        return ""
    lines = ["=== CATÁLOGO DE CORES POR LINHA ==="]
    for product_line, shades in catalog.shades_by_line().items():
        lines.append(f"- {product_line}: {', '.join(shades)}")
    return "\n".join(lines)


def build_resin_system_prompt(catalog: ShadeCatalog | None = None) -> str:
    return RESIN_SYSTEM_PROMPT.format(catalog_section=_catalog_section(catalog)).rstrip()


def _inventory_section(budget: str, inventory: list[InventoryItem]) -> str:
    if not inventory:
        return (
            "\nNOTA: O dentista ainda não cadastrou seu inventário. "
            f'Recomende a melhor opção considerando o orçamento "{budget}".\n'
            'O campo "is_from_inventory" deve ser false.'
        )

    fitting = budget_appropriate(inventory, budget)
    others = [item for item in inventory if item not in fitting]
    lines = ["\n=== RESINAS NO INVENTÁRIO DO DENTISTA ==="]
    if fitting:
        lines.append(f'Resinas do inventário compatíveis com orçamento "{budget}":')
        lines.extend(f"- {item.label} ({item.price_range})" for item in fitting)
    else:
        lines.append(
            f'Nenhuma resina do inventário é compatível com o orçamento "{budget}". '
            "Use o catálogo geral; o protocolo NÃO pode ficar vazio."
        )
    lines.append("\nOutras resinas do inventário (fora do orçamento):")
    lines.extend(f"- {item.label} ({item.price_range})" for item in others)
    if not others:
        lines.append("Nenhuma")

    lines.append(
        f"""
=== PRIORIDADE DO INVENTÁRIO ===
1. A resina DEVE estar na faixa de preço adequada ao orçamento "{budget}".
2. Entre as adequadas ao orçamento, USE as que estão no inventário do dentista, \
em todas as camadas (layers[].resin_brand).
3. Se nenhuma do inventário for adequada ao orçamento, use a melhor opção do inventário \
e marque budget_compliance=false.
4. Resinas fora do inventário só podem aparecer em ideal_resin_name ou external_alternatives.
O campo "is_from_inventory" DEVE ser true quando a resina principal vier do inventário."""
    )
    return "\n".join(lines)


def _contralateral_section(contralateral: Evaluation | None) -> str:
    if contralateral is None or not contralateral.stratification_protocol:
        return ""
    tooth = contralateral.tooth
    protocol = json.dumps(contralateral.stratification_protocol, ensure_ascii=False, indent=2)
    return f"""
=== PROTOCOLO DO DENTE CONTRALATERAL ===
O dente contralateral {tooth} JÁ FOI PROCESSADO e recebeu este protocolo:

{protocol}

O protocolo para ESTE dente DEVE ser IDÊNTICO ao do dente contralateral {tooth}:
- MESMO número de camadas
- MESMOS shades em cada camada
- MESMA resina (resin_brand)
- MESMA técnica
- Adapte APENAS o número do dente nas referências textuais
- Nas observações, resuma como "Mesmo protocolo do dente {tooth}".
"""


def build_resin_user_prompt(
    request: ResinRequest,
    *,
    inventory: list[InventoryItem] | None = None,
    contralateral: Evaluation | None = None,
) -> str:
    """Render the case description.  ``request`` must already be sanitized."""
    optional = [_inventory_section(request.budget, inventory or [])]
    if request.clinical_notes:
        optional.append(f"\nNOTAS CLÍNICAS:\n{request.clinical_notes}")
    if request.aesthetic_goals:
        optional.append(f"\nOBJETIVOS ESTÉTICOS DO PACIENTE:\n{request.aesthetic_goals}")
    section = _contralateral_section(contralateral)
    if section:
        optional.append(section)

    return RESIN_USER_TEMPLATE.format(
        patient_age=request.patient_age,
        tooth=request.tooth,
        region=request.region,
        cavity_class=request.cavity_class,
        restoration_size=request.restoration_size,
        depth=request.depth or "Não especificada",
        substrate=request.substrate,
        substrate_condition=request.substrate_condition or "Normal",
        enamel_condition=request.enamel_condition or "Não especificada",
        aesthetic_level=request.aesthetic_level,
        tooth_color=request.tooth_color,
        stratification_needed="Sim" if request.stratification_needed else "Não",
        bruxism="Sim" if request.bruxism else "Não",
        longevity_expectation=request.longevity_expectation,
        budget=request.budget,
        optional_sections="\n".join(optional),
    ).rstrip()


# ── Cementation ──────────────────────────────────────────────────────

CEMENTATION_SYSTEM_PROMPT = """Você é um especialista em prótese dentária e cimentação adesiva \
de restaurações cerâmicas.

Gere um protocolo COMPLETO de cimentação usando a ferramenta \
`generate_cementation_protocol`.

Tipo de cerâmica: {ceramic_label}

REGRAS:
1. O tratamento da superfície cerâmica deve seguir o tipo de cerâmica informado.
2. Dissilicato de lítio: ácido fluorídrico 5% por 20 segundos, seguido de silano.
3. Zircônia: NÃO usar ácido fluorídrico; jateamento com óxido de alumínio e primer MDP.
4. Inclua checklist passo a passo, alertas (o que NÃO fazer) e pontos de atenção.
5. Responda em português."""

CEMENTATION_USER_TEMPLATE = """CASO:
- Dentes: {teeth}
- Cor: {shade}
- Cerâmica: {ceramic_label}
- Substrato: {substrate}
- Condição do substrato: {substrate_condition}
{optional_sections}"""


def build_cementation_system_prompt(request: CementationRequest) -> str:
    return CEMENTATION_SYSTEM_PROMPT.format(ceramic_label=CERAMIC_TYPES[request.ceramic_type])


def build_cementation_user_prompt(request: CementationRequest) -> str:
    """Render the case description.  ``request`` must already be sanitized."""
    optional = []
    if request.aesthetic_goals:
        optional.append(f"\nOBJETIVOS ESTÉTICOS DO PACIENTE:\n{request.aesthetic_goals}")
    if request.dsd_context is not None:
        dsd = request.dsd_context
        block = [
            "\nCONTEXTO DSD:",
            f"- Situação atual: {dsd.current_issue or 'Não informada'}",
            f"- Mudança proposta: {dsd.proposed_change or 'Não informada'}",
        ]
        block.extend(f"- {obs}" for obs in dsd.observations)
        optional.append("\n".join(block))

    return CEMENTATION_USER_TEMPLATE.format(
        teeth=", ".join(request.teeth),
        shade=request.shade,
        ceramic_label=CERAMIC_TYPES[request.ceramic_type],
        substrate=request.substrate,
        substrate_condition=request.substrate_condition or "Saudável",
        optional_sections="\n".join(optional),
    ).rstrip()
