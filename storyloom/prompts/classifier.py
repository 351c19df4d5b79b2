from __future__ import annotations

CLASSIFIER_PROMPT_VERSION = "v1"


def classifier_prompt(mode: str) -> tuple[str, str]:
    system = (
        "You extract world-state changes from one passage of interactive fiction. "
        "Only report what the passage states or clearly implies. "
        "Output strictly valid JSON, no markdown, no commentary."
    )
    user = (
        f"Story mode: {mode}\n\n"
        "Known entities:\n"
        "{known_entities}\n\n"
        "Player action:\n"
        "<action>\n"
        "{user_action}\n"
        "</action>\n\n"
        "Narrative:\n"
        "<narrative>\n"
        "{narrative}\n"
        "</narrative>\n\n"
        "Schema:\n"
        "{{\n"
        '  "entry_updates": {{\n'
        '    "character_updates": [{{"name": "", "changes": {{"status": "active|inactive|deceased", '
        '"relationship": "", "new_traits": [], "remove_traits": [], "visual_descriptors": []}}}}],\n'
        '    "location_updates": [{{"name": "", "changes": {{"visited": true, "current": true, '
        '"description_addition": "", "description": ""}}}}],\n'
        '    "item_updates": [{{"name": "", "changes": {{"quantity": 1, "equipped": false, "location": ""}}}}],\n'
        '    "story_beat_updates": [{{"title": "", "changes": {{"status": "pending|active|completed|failed", '
        '"description": ""}}}}],\n'
        '    "new_characters": [{{"name": "", "description": "", "relationship": null, "traits": []}}],\n'
        '    "new_locations": [{{"name": "", "description": "", "visited": true, "current": false}}],\n'
        '    "new_items": [{{"name": "", "description": "", "quantity": 1, "location": "inventory"}}],\n'
        '    "new_story_beats": [{{"title": "", "description": "", '
        '"type": "milestone|quest|revelation|event|plot_point", "status": "active"}}]\n'
        "  }},\n"
        '  "scene": {{"current_location_name": null, "present_character_names": [], '
        '"time_progression": "none|minutes|hours|days"}}\n'
        "}}\n"
        "Output JSON only."
    )
    return system, user
