"""Picture-book illustration: paragraph split, prompt context, bounded batches."""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass, field

from storyforge.generators.base import ImageGenerator, ImageResult
from storyforge.library import IllustratedPage

logger = logging.getLogger(__name__)

_SENTENCE_BREAK = re.compile(r"(?<=\.)\s+(?=[A-Z])")
_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+\b")

# First match wins.
_SETTINGS = [
    (("forest", "tree"), "magical forest setting"),
    (("castle", "kingdom"), "fairy tale castle setting"),
    (("ocean", "sea"), "ocean/underwater setting"),
    (("space", "star"), "space/cosmic setting"),
    (("school", "classroom"), "school setting"),
    (("home", "house"), "cozy home setting"),
]
_MOODS = [
    (("scary", "dark"), "mysterious but safe"),
    (("funny", "laugh"), "humorous and lighthearted"),
    (("magic", "spell"), "magical and wonder-filled"),
]


@dataclass
class StoryContext:
    characters: list[str] = field(default_factory=list)
    setting: str = "generic fantasy setting"
    mood: str = "adventurous and uplifting"


def split_paragraphs(text: str) -> list[str]:
    """Split on non-empty lines; a single block falls back to sentence pairs."""
    paragraphs = [p.strip() for p in text.split("\n") if p.strip()]
    if len(paragraphs) != 1:
        return paragraphs

    sentences = _SENTENCE_BREAK.split(paragraphs[0])
    grouped = []
    for i in range(0, len(sentences), 2):
        para = " ".join(sentences[i : i + 2]).strip()
        if para:
            grouped.append(para)
    return grouped


def extract_story_context(story: str) -> StoryContext:
    """Recurring names, setting and mood, for consistent illustrations."""
    lowered = story.lower()
    counts = Counter(w for w in _CAPITALIZED.findall(story) if len(w) > 2)
    characters = [name for name, n in counts.items() if n > 1]

    context = StoryContext(characters=characters)
    for needles, setting in _SETTINGS:
        if any(n in lowered for n in needles):
            context.setting = setting
            break
    for needles, mood in _MOODS:
        if any(n in lowered for n in needles):
            context.mood = mood
            break
    return context


def build_illustration_prompt(paragraph: str, context: StoryContext, page: int, total: int) -> str:
    if context.characters:
        cast = f"Main characters: {', '.join(context.characters[:3])}. Keep them visually consistent."
    else:
        cast = "Keep any characters visually consistent across pages."
    return (
        f"Children's picture book illustration, page {page} of {total}. "
        f"Setting: {context.setting}. Mood: {context.mood}. {cast} "
        f'Scene: "{paragraph}". No text in the image.'
    )


async def illustrate(
    generator: ImageGenerator,
    story: str,
    *,
    max_pages: int = 12,
    concurrency: int = 2,
) -> list[IllustratedPage]:
    """Illustrate up to ``max_pages`` paragraphs, ``concurrency`` requests at a time.

    Each batch is joined before the next one starts. A failed page keeps its
    text and is marked with ``error=True``; it never aborts the book.
    """
    paragraphs = split_paragraphs(story)[:max_pages]
    total = len(paragraphs)
    context = extract_story_context(story)
    batch_size = max(1, concurrency)
    pages: list[IllustratedPage] = []

    async def one(index: int) -> ImageResult:
        prompt = build_illustration_prompt(paragraphs[index], context, index + 1, total)
        try:
            return await generator.invoke(prompt, index)
        except Exception as e:
            logger.error("Error generating image for page %d: %s", index + 1, e)
            return ImageResult(success=False, page_index=index, error=str(e))

    for start in range(0, total, batch_size):
        indices = range(start, min(start + batch_size, total))
        logger.info("Illustrating pages %d-%d of %d", indices[0] + 1, indices[-1] + 1, total)
        results = await asyncio.gather(*(one(i) for i in indices))
        for i, result in zip(indices, results):
            pages.append(
                IllustratedPage(
                    text=paragraphs[i],
                    page_number=i + 1,
                    image_url=result.image_url if result.success else None,
                    error=not result.success,
                )
            )
    return pages
