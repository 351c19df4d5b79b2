from __future__ import annotations

CHAPTER_SUMMARY_PROMPT_VERSION = "v1"


def chapter_summary_prompt() -> tuple[str, str]:
    system = (
        "You summarize a finished chapter of an interactive story so it can be recalled later. "
        "Keep names exactly as written. "
        "Output strictly valid JSON, no markdown, no commentary."
    )
    user = (
        "{previous}"
        "Chapter entries:\n"
        "{entries}\n\n"
        "Output JSON only:\n"
        '{{"title": "short title", "summary": "one paragraph", "keywords": ["..."], '
        '"characters": ["..."], "locations": ["..."]}}\n'
    )
    return system, user
