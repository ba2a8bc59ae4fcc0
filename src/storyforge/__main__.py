"""Entry point: python -m storyforge <command>

- "usage":         Storage usage of the configured backend
- "errors":        Logged error records (JSON)
- "clear-cache":   Drop cached generation results
- "stories":       List saved stories, newest first
- "clear-stories": Delete every saved story and its illustrations
- "export":        Export one story as Markdown (export <story_id> <path>)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

from storyforge.config import StoryForgeConfig, load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _open(config: StoryForgeConfig):
    from storyforge.storage.factory import open_backend

    return open_backend(config.storage)


async def _usage(config: StoryForgeConfig) -> int:
    backend = _open(config)
    usage = await backend.usage()
    print(json.dumps({"backend": backend.name, **usage.to_dict()}, indent=2))
    return 0


async def _errors(config: StoryForgeConfig) -> int:
    from storyforge.reporter import ErrorReporter

    reporter = ErrorReporter(_open(config))
    print(json.dumps(reporter.errors(), indent=2, ensure_ascii=False))
    return 0


async def _clear_cache(config: StoryForgeConfig) -> int:
    ok = await _open(config).clear_cache()
    print("Cache cleared." if ok else "Could not clear cache.")
    return 0 if ok else 1


async def _stories(config: StoryForgeConfig) -> int:
    from storyforge.library import StoryLibrary

    for story in await StoryLibrary(_open(config)).list_stories():
        print(f"{story.id}  {story.saved_at}  {story.title}")
    return 0


async def _clear_stories(config: StoryForgeConfig) -> int:
    from storyforge.library import StoryLibrary

    ok = await StoryLibrary(_open(config)).clear_stories()
    print("Library cleared." if ok else "Could not clear every story.")
    return 0 if ok else 1


async def _export(config: StoryForgeConfig, story_id: str, path: str) -> int:
    from storyforge.library import StoryLibrary

    library = StoryLibrary(_open(config))
    story = await library.get_story(story_id)
    if story is None:
        print(f"No story with id {story_id}", file=sys.stderr)
        return 1
    print(library.export_markdown(story, Path(path)))
    return 0


def _print_usage() -> None:
    print("Usage: python -m storyforge [usage|errors|clear-cache|stories|clear-stories|export]")
    print("  usage                  — Storage usage of the configured backend")
    print("  errors                 — Logged error records as JSON")
    print("  clear-cache            — Drop cached generation results")
    print("  stories                — List saved stories")
    print("  clear-stories          — Delete all saved stories")
    print("  export <id> <path>     — Export a story as Markdown")


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "usage"
    args = sys.argv[2:]

    config = load_config()
    _setup_logging(config.log_level)

    if cmd == "usage":
        code = asyncio.run(_usage(config))
    elif cmd == "errors":
        code = asyncio.run(_errors(config))
    elif cmd == "clear-cache":
        code = asyncio.run(_clear_cache(config))
    elif cmd == "stories":
        code = asyncio.run(_stories(config))
    elif cmd == "clear-stories":
        code = asyncio.run(_clear_stories(config))
    elif cmd == "export" and len(args) == 2:
        code = asyncio.run(_export(config, args[0], args[1]))
    else:
        _print_usage()
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
