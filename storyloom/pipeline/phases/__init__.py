"""Turn pipeline phases, in execution order."""

from storyloom.pipeline.phases import (
    classification,
    image,
    narrative,
    post_generation,
    pre_generation,
    retrieval,
    translation,
)

__all__ = [
    "pre_generation",
    "retrieval",
    "narrative",
    "classification",
    "translation",
    "image",
    "post_generation",
]
