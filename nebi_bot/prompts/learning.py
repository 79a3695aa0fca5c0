from __future__ import annotations

from typing import Any

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "fact_check_system_prompt": "You are a strict fact-checker. Answer with JSON only.",
    "fact_check_user_prompt_template": (
        "You are a fact-checker. Analyze the following statement and answer ONLY with a JSON object.\n"
        "\n"
        "Rules:\n"
        '- "valid": true if the statement is factually correct and worth storing\n'
        '- "valid": false if the statement is false, political, controversial, insulting, racist, sexist or an opinion\n'
        '- "confidence": number from 0.0 to 1.0\n'
        '- "reason": short justification (max 50 characters)\n'
        "\n"
        "ALWAYS reject:\n"
        "- Political topics (parties, politicians, elections, laws)\n"
        "- Controversial topics (religion, abortion, gender debates)\n"
        "- Conspiracy theories (flat earth, chemtrails, etc.)\n"
        "- Insults or discrimination\n"
        "- Subjective opinions disguised as facts\n"
        "- False scientific claims\n"
        "\n"
        'Statement: "{statement}"\n'
        "\n"
        "Answer (JSON only, no other text):"
    ),
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("learning.json", _DEFAULTS)


_CFG = _cfg()

FACT_CHECK_SYSTEM_PROMPT = str(_CFG.get("fact_check_system_prompt", _DEFAULTS["fact_check_system_prompt"]))
FACT_CHECK_USER_PROMPT_TEMPLATE = str(
    _CFG.get("fact_check_user_prompt_template", _DEFAULTS["fact_check_user_prompt_template"])
)


def build_fact_check_prompt(statement: str) -> str:
    # str.replace keeps braces inside the statement from being read as format fields.
    return FACT_CHECK_USER_PROMPT_TEMPLATE.replace("{statement}", statement)
