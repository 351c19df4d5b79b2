from __future__ import annotations

TRANSLATION_PROMPT_VERSION = "v1"


def translation_prompt(target_language: str) -> tuple[str, str]:
    system = (
        f"You translate fiction into {target_language}. "
        "Preserve tone, names and paragraph breaks. Output the translation only."
    )
    user = "<text>\n{text}\n</text>"
    return system, user
