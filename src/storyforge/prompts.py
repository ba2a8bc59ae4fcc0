"""Generation modes and prompt assembly."""

from __future__ import annotations

from storyforge.generators.base import GenerationOptions

INSPIRATION = "inspiration"
EDITOR_FEEDBACK = "editor_feedback"
EDITOR_REVISION = "editor_revision"
SUMMARIZE_STRENGTHS = "summarize_strengths"
GUILD_STORY = "guild_story"
GUILD_FEEDBACK = "guild_feedback"
GUILD_FEEDBACK_RESPONSE = "guild_feedback_response"

MODES = (
    INSPIRATION,
    EDITOR_FEEDBACK,
    EDITOR_REVISION,
    SUMMARIZE_STRENGTHS,
    GUILD_STORY,
    GUILD_FEEDBACK,
    GUILD_FEEDBACK_RESPONSE,
)

EMPTY_STORY_MESSAGE = "I can't provide feedback on an empty story. Please write something first!"

_INSTRUCTIONS = {
    INSPIRATION: "Suggest three short, playful story ideas for a young writer.",
    EDITOR_FEEDBACK: "Give warm, encouraging feedback on this story by a young writer.",
    EDITOR_REVISION: "Compare the revision with the earlier draft and encourage the writer.",
    SUMMARIZE_STRENGTHS: "Summarize the strengths of this story in a few kind sentences.",
    GUILD_STORY: "Expand this idea into a complete children's story of twelve paragraphs.",
    GUILD_FEEDBACK: "Rewrite the story below, applying the reader's feedback.",
    GUILD_FEEDBACK_RESPONSE: "Reply briefly and kindly to the reader's feedback.",
}

_LONG_FORM = {GUILD_STORY, GUILD_FEEDBACK}


def options_for(mode: str, temperature: float = 0.8) -> GenerationOptions:
    return GenerationOptions(
        temperature=temperature,
        max_output_tokens=1500 if mode in _LONG_FORM else 500,
    )


def build_prompt(user_text: str, mode: str, context: str = "") -> str:
    instruction = _INSTRUCTIONS.get(mode, f"Respond to the young writer ({mode}).")
    parts = [instruction]
    if context:
        parts.append(f"Earlier version:\n{context}")
    if user_text:
        parts.append(f"Text:\n{user_text}")
    return "\n\n".join(parts)
