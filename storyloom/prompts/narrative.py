from __future__ import annotations

NARRATIVE_PROMPT_VERSION = "v1"


def narrative_prompt(mode: str) -> tuple[str, str]:
    if mode == "creative":
        role = "You are a collaborative fiction co-author continuing the user's story."
    else:
        role = "You are the narrator of an interactive adventure. The player acts; you describe what happens."
    system = (
        f"{role} "
        "Stay consistent with the established world state and lore. "
        "Write prose only, no headings, no out-of-character notes."
    )
    user = (
        "{world_state}\n"
        "{lorebook_context}\n\n"
        "Story so far:\n"
        "<story>\n"
        "{recent_story}\n"
        "</story>\n\n"
        "Player action:\n"
        "<action>\n"
        "{user_input}\n"
        "</action>\n\n"
        "Continue the story."
    )
    return system, user
