# thesis_batch/services/prompt_service.py
from typing import Any, Dict

from thesis_batch.services.analysis_catalog import analysis_name

SYSTEM_PROMPT = (
    "You are an experienced university thesis supervisor. Produce rigorous, "
    "constructive academic analyses and follow the requested analysis focus strictly."
)

LEVEL_GUIDELINES: Dict[str, str] = {
    "triennale": "Apply undergraduate standards: correct understanding and application of core concepts.",
    "magistrale": "Apply graduate standards: critical depth and specialist synthesis.",
    "dottorato": "Apply international research standards: originality, methodological rigour and contribution.",
}


def build_prompt(fragment_text: str, context: Dict[str, Any]) -> str:
    """Render the user prompt for one fragment.

    `fragment_text` is expected to be sanitized already; it is embedded verbatim.
    """
    level = context.get("level", "")
    kind = context.get("analysis_type", "")
    target_length = -(-len(fragment_text) // 2)

    return "\n".join([
        f"Analysis: {analysis_name(kind)} ({kind})",
        f"Faculty: {context.get('faculty', '')}",
        f"Thesis topic: {context.get('thesis_topic', '')}",
        f"Level: {level.upper()}",
        f"Project: {context.get('project_title', '')}",
        f"Input: {len(fragment_text):,} characters; target output about {target_length:,} characters.",
        "",
        LEVEL_GUIDELINES.get(level, ""),
        "Base the analysis only on the text below. Structure it as: general framing, "
        "specialised analysis, critical evaluation, conclusions.",
        "",
        "TEXT:",
        fragment_text,
    ])
