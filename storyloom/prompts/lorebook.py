from __future__ import annotations

LOREBOOK_CLASSIFY_PROMPT_VERSION = "v1"


def lorebook_classify_prompt() -> tuple[str, str]:
    system = (
        "You classify lorebook entries by what they describe. "
        "Allowed types: character, location, item, faction, concept, event. "
        "Output strictly valid JSON, no markdown, no commentary."
    )
    user = (
        "Entries (JSON list with index, name, content, keywords):\n"
        "{entries}\n\n"
        'Output JSON only: {{"classifications": [{{"index": 0, "type": "concept"}}]}}\n'
    )
    return system, user
