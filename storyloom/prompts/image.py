from __future__ import annotations

IMAGE_PROMPT_VERSION = "v1"


def image_prompt(narrative: str, location: str | None, characters: list[str], max_chars: int) -> str:
    parts = ["Illustration of an interactive-fiction scene."]
    if location:
        parts.append(f"Setting: {location}.")
    if characters:
        parts.append(f"Characters present: {', '.join(characters)}.")
    parts.append(f"Scene: {narrative.strip()}")
    prompt = " ".join(parts)
    if max_chars > 0 and len(prompt) > max_chars:
        prompt = prompt[:max_chars].rstrip()
    return prompt
