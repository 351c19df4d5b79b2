"""Prompt templates for the turn pipeline, lorebook tools and chapter summaries."""

from storyloom.prompts.chapters import CHAPTER_SUMMARY_PROMPT_VERSION
from storyloom.prompts.classifier import CLASSIFIER_PROMPT_VERSION
from storyloom.prompts.lorebook import LOREBOOK_CLASSIFY_PROMPT_VERSION
from storyloom.prompts.narrative import NARRATIVE_PROMPT_VERSION
from storyloom.prompts.retrieval import ENTRY_SELECTION_PROMPT_VERSION
from storyloom.prompts.suggestions import SUGGESTIONS_PROMPT_VERSION
from storyloom.prompts.translation import TRANSLATION_PROMPT_VERSION

__all__ = [
    "CHAPTER_SUMMARY_PROMPT_VERSION",
    "CLASSIFIER_PROMPT_VERSION",
    "ENTRY_SELECTION_PROMPT_VERSION",
    "LOREBOOK_CLASSIFY_PROMPT_VERSION",
    "NARRATIVE_PROMPT_VERSION",
    "SUGGESTIONS_PROMPT_VERSION",
    "TRANSLATION_PROMPT_VERSION",
]
