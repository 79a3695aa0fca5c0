from __future__ import annotations

from typing import Any, Iterable

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "learn_directive_lines": [
        "STORING KNOWLEDGE:",
        "When someone tells you something interesting about the server, the community or generally useful facts,",
        "you can store it by embedding [LEARN:your text here] in your answer.",
        "The tag is removed automatically and its content is fact-checked before it is stored.",
        "",
        'Example: "Oh cool, noted! [LEARN:The server was founded in 2020]"',
        "",
        "NEVER store:",
        "- Political statements",
        "- Controversial opinions",
        "- Insults or discrimination",
        "- Obviously false facts",
        "- Personal opinions framed as facts",
    ],
    "identity_note_template": "User: {display_name} ({user_id}). Address the user by name occasionally.",
    "knowledge_header": "Server knowledge:",
    "knowledge_line_template": "- {text}",
    "user_context_template": "User context (use only if relevant): {context}",
    "default_greeting_prompt": "Say hi briefly and ask how you can help.",
    "summary_system_lines": [
        "You are a Discord assistant.",
        "Write a precise summary.",
        "Give 4-8 bullet points first, then an 'Action Items' block with clear TODOs.",
        "If something is unclear, write 'Unclear' instead of guessing.",
    ],
    "summary_style_template": "Style: {style}",
    "summary_intro": "Analyze the following Discord messages (old -> new):",
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("dialogue.json", _DEFAULTS)


def _lines(value: object) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return "\n".join(str(item).rstrip() for item in value).strip()
    return ""


_CFG = _cfg()

LEARN_DIRECTIVE_BLOCK = _lines(_CFG.get("learn_directive_lines")) or _lines(_DEFAULTS["learn_directive_lines"])
KNOWLEDGE_HEADER = str(_CFG.get("knowledge_header", _DEFAULTS["knowledge_header"]))
DEFAULT_GREETING_PROMPT = str(_CFG.get("default_greeting_prompt", _DEFAULTS["default_greeting_prompt"]))
SUMMARY_SYSTEM_PROMPT = _lines(_CFG.get("summary_system_lines")) or _lines(_DEFAULTS["summary_system_lines"])


def _template(name: str) -> str:
    return str(_CFG.get(name, _DEFAULTS[name]))


def build_system_prompt(base_prompt: str) -> str:
    return f"{base_prompt.rstrip()}\n\n{LEARN_DIRECTIVE_BLOCK}"


def build_identity_note(display_name: str, user_id: str) -> str:
    return _template("identity_note_template").format(display_name=display_name, user_id=user_id)


def build_knowledge_block(texts: Iterable[str]) -> str:
    line_template = _template("knowledge_line_template")
    lines = [line_template.format(text=text) for text in texts]
    if not lines:
        return ""
    return "\n".join([KNOWLEDGE_HEADER, *lines])


def build_user_context_note(context: str) -> str:
    return _template("user_context_template").format(context=context)


def build_summary_prompt(style: str | None, lines: Iterable[str]) -> str:
    tone = style.strip() if style and style.strip() else "neutral"
    parts = [
        _template("summary_style_template").format(style=tone),
        _template("summary_intro"),
        "",
    ]
    for line in lines:
        if line is None or not str(line).strip():
            continue
        parts.append(f"- {line}")
    return "\n".join(parts) + "\n"
