"""Gemini model factory for the negotiation delegate."""

import copy

import google.generativeai as genai

from bagsy_platform.app.config import get_settings

# JSON Schema keywords pydantic emits that Gemini's response_schema rejects
_DROPPED_KEYWORDS = frozenset({
    "title", "default", "examples", "additionalProperties",
    "minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum",
    "minLength", "maxLength", "minItems", "maxItems", "pattern",
    "prefixItems", "uniqueItems",
})


def clean_schema(schema: dict) -> dict:
    """Inline ``$defs`` references and drop keywords Gemini does not accept."""
    schema = copy.deepcopy(schema)
    defs = schema.pop("$defs", {})

    def _walk(node):
        if isinstance(node, list):
            return [_walk(item) for item in node]
        if not isinstance(node, dict):
            return node
        ref = node.get("$ref")
        if ref:
            target = defs.get(ref.rsplit("/", 1)[-1])
            return _walk(copy.deepcopy(target)) if target is not None else node
        return {key: _walk(value) for key, value in node.items() if key not in _DROPPED_KEYWORDS}

    return _walk(schema)


def is_configured() -> bool:
    return get_settings().llm_delegate_enabled


def get_model(
    model_name: str | None = None,
    temperature: float = 0.4,
    json_mode: bool = False,
    response_schema: dict | None = None,
    system_instruction: str | None = None,
):
    """Return a configured ``genai.GenerativeModel``.

    ``model_name`` defaults to the configured negotiation model. With
    ``json_mode`` the output is constrained to JSON, optionally shaped by
    ``response_schema``.
    """
    settings = get_settings()
    genai.configure(api_key=settings.gemini_api_key)

    generation_config: dict = {"temperature": temperature}
    if json_mode:
        generation_config["response_mime_type"] = "application/json"
        if response_schema:
            generation_config["response_schema"] = clean_schema(response_schema)

    return genai.GenerativeModel(
        model_name=model_name or settings.negotiation_model,
        generation_config=generation_config,
        system_instruction=system_instruction,
    )
