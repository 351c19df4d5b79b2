from __future__ import annotations

ENTRY_SELECTION_PROMPT_VERSION = "v1"


def entry_selection_prompt() -> tuple[str, str]:
    system = (
        "You select which world-knowledge entries are relevant to the next story turn. "
        "Output strictly valid JSON, no markdown, no commentary."
    )
    user = (
        "Recent story:\n"
        "<recent>\n"
        "{recent_content}\n"
        "</recent>\n\n"
        "Player action:\n"
        "<action>\n"
        "{user_input}\n"
        "</action>\n\n"
        "Candidate entries (index. [type] name: description):\n"
        "{entry_summaries}\n\n"
        "Pick only entries the next response is likely to need. "
        "Refer to entries by their index or id.\n"
        'Output JSON only: {{"selected_ids": [], "reasoning": ""}}\n'
    )
    return system, user
