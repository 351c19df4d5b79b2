from __future__ import annotations

SUGGESTIONS_PROMPT_VERSION = "v1"


def suggestions_prompt(count: int) -> tuple[str, str]:
    system = (
        "You propose what the player might do next in an interactive story. "
        "Output strictly valid JSON, no markdown, no commentary."
    )
    user = (
        "Latest narrative:\n"
        "<narrative>\n"
        "{narrative}\n"
        "</narrative>\n\n"
        f"Suggest {count} short, distinct next actions written in second person imperative.\n"
        'Output JSON only: {{"suggestions": []}}\n'
    )
    return system, user
