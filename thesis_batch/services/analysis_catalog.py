# thesis_batch/services/analysis_catalog.py
from typing import Dict, List

# Canonical order per level; bulk runs follow this order.
ANALYSIS_TYPES: Dict[str, List[str]] = {
    "triennale": [
        "analisi_strutturale",
        "analisi_metodologica",
        "analisi_contenuti",
        "analisi_bibliografica",
        "analisi_formale",
        "analisi_coerenza_argomentativa",
        "analisi_originalita_contributo",
        "analisi_rilevanza_disciplinare",
    ],
    "magistrale": [
        "analisi_strutturale_avanzata",
        "analisi_metodologica_rigorosa",
        "analisi_contenuti_specialistici",
        "analisi_critica_sintetica",
        "analisi_bibliografica_completa",
        "analisi_empirica_sperimentale",
        "analisi_implicazioni",
        "analisi_innovazione_metodologica",
        "analisi_validita_statistica",
        "analisi_applicabilita_pratica",
        "analisi_limiti_criticita",
        "analisi_posizionamento_teorico",
    ],
    "dottorato": [
        "analisi_originalita_scientifica",
        "analisi_metodologica_frontiera",
        "analisi_stato_arte_internazionale",
        "analisi_framework_teorico",
        "analisi_empirica_avanzata",
        "analisi_critica_profonda",
        "analisi_impatto_scientifico",
        "analisi_riproducibilita",
        "analisi_standard_internazionali",
        "analisi_significativita_statistica",
        "analisi_etica_ricerca",
        "analisi_sostenibilita_metodologica",
        "analisi_interdisciplinarieta",
        "analisi_scalabilita_risultati",
        "analisi_pubblicabilita_internazionale",
        "analisi_gap_conoscenza_colmato",
    ],
}

ANALYSIS_NAMES: Dict[str, str] = {
    "analisi_strutturale": "Analisi Strutturale",
    "analisi_metodologica": "Analisi Metodologica",
    "analisi_contenuti": "Analisi dei Contenuti",
    "analisi_bibliografica": "Analisi Bibliografica",
    "analisi_formale": "Analisi Formale",
    "analisi_coerenza_argomentativa": "Coerenza Argomentativa",
    "analisi_originalita_contributo": "Originalità del Contributo",
    "analisi_rilevanza_disciplinare": "Rilevanza Disciplinare",
    "analisi_strutturale_avanzata": "Strutturale Avanzata",
    "analisi_metodologica_rigorosa": "Metodologica Rigorosa",
    "analisi_contenuti_specialistici": "Contenuti Specialistici",
    "analisi_critica_sintetica": "Critica e Sintetica",
    "analisi_bibliografica_completa": "Bibliografica Completa",
    "analisi_empirica_sperimentale": "Empirica/Sperimentale",
    "analisi_implicazioni": "Delle Implicazioni",
    "analisi_innovazione_metodologica": "Innovazione Metodologica",
    "analisi_validita_statistica": "Validità Statistica",
    "analisi_applicabilita_pratica": "Applicabilità Pratica",
    "analisi_limiti_criticita": "Limiti e Criticità",
    "analisi_posizionamento_teorico": "Posizionamento Teorico",
    "analisi_originalita_scientifica": "Originalità Scientifica",
    "analisi_metodologica_frontiera": "Metodologica di Frontiera",
    "analisi_stato_arte_internazionale": "Stato dell'Arte Internazionale",
    "analisi_framework_teorico": "Framework Teorico",
    "analisi_empirica_avanzata": "Empirica Avanzata",
    "analisi_critica_profonda": "Critica Profonda",
    "analisi_impatto_scientifico": "Impatto Scientifico",
    "analisi_riproducibilita": "Riproducibilità",
    "analisi_standard_internazionali": "Standard Internazionali",
    "analisi_significativita_statistica": "Significatività Statistica",
    "analisi_etica_ricerca": "Etica della Ricerca",
    "analisi_sostenibilita_metodologica": "Sostenibilità Metodologica",
    "analisi_interdisciplinarieta": "Interdisciplinarità",
    "analisi_scalabilita_risultati": "Scalabilità Risultati",
    "analisi_pubblicabilita_internazionale": "Pubblicabilità Internazionale",
    "analisi_gap_conoscenza_colmato": "Gap di Conoscenza",
}


def valid_analysis_types(level: str) -> List[str]:
    """Analysis kinds applicable to a project level (empty for unknown levels)."""
    return list(ANALYSIS_TYPES.get((level or "").strip().lower(), []))


def analysis_name(analysis_type: str) -> str:
    if analysis_type in ANALYSIS_NAMES:
        return ANALYSIS_NAMES[analysis_type]
    return analysis_type.replace("_", " ").title()
