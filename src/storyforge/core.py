"""StoryForge orchestrator: wires generation, caching, state and reporting.

Responsibilities:
1. Generation: memory cache → persistent cache → remote call with backoff
2. Story session: draft, feedback, revisions, guild rewrite, completion
3. State: every result lands in the single StateManager record
4. Illustration: bounded batches of image requests
5. Auto-save: periodic draft persistence, cancelled on reset
6. Error routing: every failure goes through ErrorReporter and is re-raised
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from storyforge.cache import ResponseCache
from storyforge.config import StoryForgeConfig
from storyforge.exceptions import StorageError, StoryForgeError
from storyforge.generators.base import ImageGenerator, TextGenerator
from storyforge.illustration import illustrate
from storyforge.library import IllustratedPage, Story, StoryLibrary
from storyforge.prompts import (
    EDITOR_FEEDBACK,
    EDITOR_REVISION,
    EMPTY_STORY_MESSAGE,
    GUILD_FEEDBACK,
    GUILD_FEEDBACK_RESPONSE,
    GUILD_STORY,
    INSPIRATION,
    SUMMARIZE_STRENGTHS,
    build_prompt,
    options_for,
)
from storyforge.reporter import ErrorCollector, ErrorReporter, Notifier
from storyforge.retry import RetryExecutor, RetryPolicy, Sleep
from storyforge.state import StateManager
from storyforge.storage.base import PersistenceBackend
from storyforge.storage.factory import open_backend

logger = logging.getLogger(__name__)

XP_PER_STORY = 100
XP_PER_LEVEL = 500


@dataclass
class RevisionOutcome:
    feedback: str
    revision: int
    can_keep_as_is: bool
    ready_for_guild: bool


@dataclass
class GuildRevision:
    story: str
    reply: str
    revision: int


def build_text_generator(config: StoryForgeConfig) -> TextGenerator:
    name = config.generator.name
    if name == "proxy":
        from storyforge.generators.proxy import ProxyTextGenerator

        return ProxyTextGenerator(config.generator.base_url, timeout=config.generator.timeout)
    if name == "anthropic_api":
        from storyforge.generators.anthropic_api import AnthropicTextGenerator

        kwargs: dict[str, Any] = {"timeout": config.generator.timeout}
        if config.generator.model:
            kwargs["model"] = config.generator.model
        return AnthropicTextGenerator(**kwargs)
    raise ValueError(f"Unknown generator: {name}")


class StoryForge:
    """Core orchestrator for one writer's session."""

    def __init__(
        self,
        config: StoryForgeConfig,
        *,
        text_generator: TextGenerator,
        image_generator: ImageGenerator | None = None,
        backend: PersistenceBackend | None = None,
        notifier: Notifier | None = None,
        collector: ErrorCollector | None = None,
        is_online: Callable[[], bool] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.text_generator = text_generator
        self.image_generator = image_generator

        # A backend passed in is expected to have its storage-error callback wired already.
        self.backend = backend or open_backend(config.storage, on_error=self._on_storage_error)
        self.reporter = ErrorReporter(
            self.backend,
            notifier=notifier,
            collector=collector,
            is_online=is_online,
            max_logged=config.reporter.max_logged,
        )
        self.cache = ResponseCache(config.cache.max_entries, config.cache.no_cache_modes)
        self.retry = RetryExecutor(
            RetryPolicy(
                max_attempts=config.retry.max_attempts,
                base_delay_ms=config.retry.base_delay_ms,
                max_jitter_ms=config.retry.max_jitter_ms,
            ),
            sleep=sleep,
        )
        self.state = StateManager(self.backend)
        self.library = StoryLibrary(self.backend)

        self._epoch = 0
        self._autosave_task: asyncio.Task | None = None
        self._autosave_stop: asyncio.Event | None = None
        self._last_autosaved: str | None = None

    @classmethod
    def from_config(cls, config: StoryForgeConfig, **kwargs: Any) -> StoryForge:
        """Build with generators and collector chosen from ``config``."""
        from storyforge.generators.proxy import HttpErrorCollector, ProxyImageGenerator

        kwargs.setdefault("text_generator", build_text_generator(config))
        kwargs.setdefault(
            "image_generator",
            ProxyImageGenerator(config.generator.base_url, timeout=config.generator.timeout),
        )
        if config.reporter.collector_url:
            kwargs.setdefault("collector", HttpErrorCollector(config.reporter.collector_url))
        return cls(config, **kwargs)

    # ── Storage signal ────────────────────────────────────────

    def _on_storage_error(self, error: Exception) -> None:
        reporter = getattr(self, "reporter", None)
        if reporter is not None:
            reporter.handle_storage_error(error)

    @property
    def writes_enabled(self) -> bool:
        return not self.reporter.storage_degraded

    async def check_storage(self) -> dict[str, Any]:
        """Re-enable writes once the backend has room again."""
        usage = await self.backend.usage()
        if self.reporter.storage_degraded and not usage.is_near_limit(0.95):
            self.reporter.storage_resolved()
        return usage.to_dict()

    # ── Generation ────────────────────────────────────────────

    async def generate(self, user_text: str, mode: str, context: str = "") -> str:
        """Generated text for ``mode``; failures are reported and re-raised."""
        wrapped = self.reporter.wrap(self._generate, f"generate:{mode}")
        return await wrapped(user_text, mode, context)

    async def _generate(self, user_text: str, mode: str, context: str = "") -> str:
        if not (user_text or "").strip() and mode != INSPIRATION:
            return EMPTY_STORY_MESSAGE

        cacheable = self.cache.is_cacheable(mode)
        key = self.cache.get_cache_key(user_text, mode, context)
        if cacheable:
            if self.cache.has(key):
                logger.debug("Cache hit for %s", key)
                return self.cache.get(key)
            stored = await self.backend.get_cache(key)
            if isinstance(stored, str):
                logger.debug("Persistent cache hit for %s", key)
                self.cache.set(key, stored)
                return stored

        prompt = build_prompt(user_text, mode, context)
        options = options_for(mode, self.config.generator.temperature)
        result = await self.retry.run(lambda: self.text_generator.invoke(prompt, options))

        if cacheable:
            self.cache.set(key, result.text)
            if self.writes_enabled:
                await self.backend.set_cache(key, result.text, self.config.storage.cache_ttl_seconds)
        return result.text

    def _apply(self, epoch: int, updates: dict[str, Any]) -> bool:
        """Write results of an async call, unless a reset happened meanwhile."""
        if epoch != self._epoch:
            logger.info("Discarding result from before reset: %s", sorted(updates))
            return False
        self.state.set(updates)
        return True

    # ── Story session ─────────────────────────────────────────

    def start_session(self, username: str) -> None:
        self.state.set(
            {
                "active_user": username,
                "page": "workshop",
                "user_progress": self.library.load_progress(),
            }
        )
        if self.writes_enabled:
            self.library.save_user({"username": username})

    async def inspiration(self) -> str:
        return await self.generate("", INSPIRATION)

    async def request_feedback(self, draft: str) -> str:
        self.state.set({"active_draft": draft.strip(), "revision_count": 0, "page": "editor"})
        return await self.generate(draft.strip(), EDITOR_FEEDBACK)

    async def submit_revision(self, revised: str) -> RevisionOutcome:
        epoch = self._epoch
        previous = self.state.get("active_draft", "")
        revision = self.state.get("revision_count", 0) + 1

        feedback = await self.generate(revised.strip(), EDITOR_REVISION, previous)
        self._apply(epoch, {"active_draft": revised.strip(), "revision_count": revision})

        lowered = feedback.lower()
        return RevisionOutcome(
            feedback=feedback,
            revision=revision,
            can_keep_as_is=revision >= 2,
            ready_for_guild=(
                revision >= self.config.max_revisions
                or "ready" in lowered
                or "excellent" in lowered
            ),
        )

    async def summarize_strengths(self) -> str:
        return await self.generate(self.state.get("active_draft", ""), SUMMARIZE_STRENGTHS)

    async def guild_story(self) -> str:
        epoch = self._epoch
        story = await self.generate(self.state.get("active_draft", ""), GUILD_STORY)
        self._apply(epoch, {"guild_draft": story, "guild_revision_count": 0, "page": "guild"})
        return story

    async def guild_feedback(self, feedback: str) -> GuildRevision:
        epoch = self._epoch
        revision = self.state.get("guild_revision_count", 0) + 1
        current = self.state.get("guild_draft", "")

        story = await self.generate(feedback, GUILD_FEEDBACK, current)
        reply = await self.generate(feedback, GUILD_FEEDBACK_RESPONSE)
        self._apply(epoch, {"guild_draft": story, "guild_revision_count": revision})
        return GuildRevision(story=story, reply=reply, revision=revision)

    async def complete_story(self, title: str, final_story: str | None = None) -> Story:
        """Save the finished story and credit the writer's progress."""
        if not self.writes_enabled:
            raise StorageError("Saving is disabled until storage is available again")

        original = self.state.get("active_draft", "")
        final = final_story or self.state.get("guild_draft") or original
        story = await self.library.save_story(title, original, final)
        if story is None:
            raise StorageError("Story could not be saved")

        words = len(final.split())
        progress = dict(self.state.get("user_progress") or {})
        progress["stories_completed"] = progress.get("stories_completed", 0) + 1
        progress["total_words"] = progress.get("total_words", 0) + words
        progress["xp"] = progress.get("xp", 0) + XP_PER_STORY + words // 10
        progress["level"] = 1 + progress["xp"] // XP_PER_LEVEL

        self.state.set({"user_progress": progress, "revision_count": 0, "page": "success"})
        self.library.save_progress(progress)
        self.library.clear_draft()
        return story

    # ── Illustration ──────────────────────────────────────────

    async def illustrate_story(
        self, story_text: str | None = None, story_id: str | None = None
    ) -> list[IllustratedPage]:
        if self.image_generator is None:
            raise StoryForgeError("No image generator configured")

        epoch = self._epoch
        text = story_text or self.state.get("guild_draft") or self.state.get("active_draft", "")
        if not text.strip():
            raise StoryForgeError("No story to illustrate")

        settings = self.config.illustration
        pages = await illustrate(
            self.image_generator,
            text,
            max_pages=settings.max_pages,
            concurrency=settings.effective_concurrency,
        )
        self._apply(
            epoch,
            {
                "illustrated_pages": [page.to_dict() for page in pages],
                "book_page_index": 0,
                "page": "book",
            },
        )
        if story_id and self.writes_enabled:
            await self.library.save_illustrations(story_id, pages)
        return pages

    # ── Auto-save ─────────────────────────────────────────────

    def autosave_once(self) -> bool:
        draft = self.state.get("active_draft", "")
        if not draft or draft == self._last_autosaved or not self.writes_enabled:
            return False
        if self.library.save_draft(draft):
            self._last_autosaved = draft
            logger.debug("Draft auto-saved (%d chars)", len(draft))
            return True
        return False

    def start_autosave(self) -> None:
        if self._autosave_task is not None and not self._autosave_task.done():
            return
        self._autosave_stop = asyncio.Event()
        self._autosave_task = asyncio.get_running_loop().create_task(
            self._autosave_loop(self._autosave_stop)
        )

    async def _autosave_loop(self, stop: asyncio.Event) -> None:
        interval = self.config.autosave_interval
        logger.info("Auto-save started (every %ds)", interval)
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            self.autosave_once()
        logger.info("Auto-save stopped.")

    def _cancel_autosave(self) -> asyncio.Task | None:
        task = self._autosave_task
        if self._autosave_stop is not None:
            self._autosave_stop.set()
        if task is not None and not task.done():
            task.cancel()
        self._autosave_task = None
        self._autosave_stop = None
        return task

    async def stop_autosave(self) -> None:
        task = self._cancel_autosave()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def autosave_running(self) -> bool:
        return self._autosave_task is not None and not self._autosave_task.done()

    # ── Lifecycle ─────────────────────────────────────────────

    def restore(self) -> None:
        """Load persisted state and the last auto-saved draft."""
        self.state.load()
        draft = self.library.load_draft()
        if draft and not self.state.get("active_draft"):
            self.state.set({"active_draft": draft.content})

    def reset(self) -> None:
        """New story: stop timers, orphan in-flight results, reset state."""
        self._cancel_autosave()
        self._epoch += 1
        self._last_autosaved = None
        self.state.reset()

    async def close(self) -> None:
        await self.stop_autosave()
        await self.reporter.flush()
        for component in (self.text_generator, self.image_generator, self.reporter.collector):
            close = getattr(component, "close", None)
            if close and callable(close):
                await close()
        close_backend = getattr(self.backend, "close", None)
        if close_backend and callable(close_backend):
            close_backend()
