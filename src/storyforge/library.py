"""Story library: stories, illustrations, drafts and progress on any backend.

Stories and illustrated pages live in collections; progress, the current draft
and the user record are fixed keys in the key-value space. Stories can be
exported to Markdown with YAML frontmatter and imported back.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import frontmatter

from storyforge.state import default_progress
from storyforge.storage.base import ILLUSTRATIONS, STORIES

if TYPE_CHECKING:
    from storyforge.storage.base import PersistenceBackend

logger = logging.getLogger(__name__)

PROGRESS_KEY = "user_progress"
DRAFT_KEY = "current_draft"
USER_KEY = "user"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class Story:
    id: str
    title: str
    original_story: str
    final_story: str
    created_at: str = field(default_factory=_now_iso)
    saved_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Story:
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "Untitled Story",
            original_story=data.get("original_story", ""),
            final_story=data.get("final_story", ""),
            created_at=data.get("created_at") or _now_iso(),
            saved_at=data.get("saved_at") or data.get("created_at") or _now_iso(),
        )


@dataclass
class IllustratedPage:
    text: str
    page_number: int
    image_url: str | None = None
    error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IllustratedPage:
        return cls(
            text=data.get("text", ""),
            page_number=int(data.get("page_number", 0)),
            image_url=data.get("image_url"),
            error=bool(data.get("error", False)),
        )


@dataclass
class Draft:
    content: str
    timestamp: str = field(default_factory=_now_iso)
    video_id: str | None = None


class StoryLibrary:
    """Read/write access to saved stories and per-user records."""

    def __init__(self, backend: PersistenceBackend) -> None:
        self.backend = backend

    # ── Stories ───────────────────────────────────────────────

    def _new_id(self) -> str:
        return str(time.time_ns() // 1000)

    async def save_story(self, title: str, original_story: str, final_story: str) -> Story | None:
        story = Story(
            id=self._new_id(),
            title=title.strip() or "Untitled Story",
            original_story=original_story,
            final_story=final_story,
        )
        if not await self.backend.put_record(STORIES, story.id, story.to_dict()):
            logger.warning("Story %s could not be saved", story.id)
            return None
        logger.info("Story saved: %s (%s)", story.id, story.title)
        return story

    async def put_story(self, story: Story) -> bool:
        story.saved_at = _now_iso()
        return await self.backend.put_record(STORIES, story.id, story.to_dict())

    async def get_story(self, story_id: str) -> Story | None:
        data = await self.backend.get_record(STORIES, story_id)
        if not data:
            return None
        try:
            return Story.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning("Invalid story record %s: %s", story_id, e)
            return None

    async def list_stories(self) -> list[Story]:
        """All stories, newest first."""
        stories = []
        for data in await self.backend.all_records(STORIES):
            try:
                stories.append(Story.from_dict(data))
            except (KeyError, TypeError) as e:
                logger.warning("Skipping invalid story record: %s", e)
        stories.sort(key=lambda s: (s.saved_at, s.id), reverse=True)
        return stories

    async def delete_story(self, story_id: str) -> bool:
        deleted = await self.backend.delete_record(STORIES, story_id)
        await self.backend.delete_record(ILLUSTRATIONS, story_id)
        return deleted

    async def clear_stories(self) -> bool:
        """Delete every story and every illustration record."""
        ok = True
        for collection, id_field in ((STORIES, "id"), (ILLUSTRATIONS, "story_id")):
            for record in await self.backend.all_records(collection):
                record_id = record.get(id_field)
                if record_id is None:
                    logger.warning("Skipping %s record without %s", collection, id_field)
                    ok = False
                    continue
                ok = await self.backend.delete_record(collection, str(record_id)) and ok
        if ok:
            logger.info("Story library cleared")
        return ok

    # ── Illustrations ─────────────────────────────────────────

    async def save_illustrations(self, story_id: str, pages: list[IllustratedPage]) -> bool:
        record = {
            "story_id": story_id,
            "pages": [page.to_dict() for page in pages],
            "page_count": len(pages),
            "saved_at": _now_iso(),
        }
        return await self.backend.put_record(ILLUSTRATIONS, story_id, record)

    async def get_illustrations(self, story_id: str) -> list[IllustratedPage] | None:
        record = await self.backend.get_record(ILLUSTRATIONS, story_id)
        if not record or not isinstance(record.get("pages"), list):
            return None
        return [IllustratedPage.from_dict(p) for p in record["pages"]]

    # ── Progress, draft, user ─────────────────────────────────

    def save_progress(self, progress: dict[str, Any]) -> bool:
        return self.backend.save(PROGRESS_KEY, progress)

    def load_progress(self) -> dict[str, Any]:
        stored = self.backend.load(PROGRESS_KEY)
        progress = default_progress()
        if isinstance(stored, dict):
            progress.update(stored)
        return progress

    def save_draft(self, content: str, video_id: str | None = None) -> bool:
        return self.backend.save(DRAFT_KEY, asdict(Draft(content=content, video_id=video_id)))

    def load_draft(self) -> Draft | None:
        stored = self.backend.load(DRAFT_KEY)
        if not isinstance(stored, dict) or "content" not in stored:
            return None
        return Draft(
            content=stored["content"],
            timestamp=stored.get("timestamp") or _now_iso(),
            video_id=stored.get("video_id"),
        )

    def clear_draft(self) -> bool:
        return self.backend.remove(DRAFT_KEY)

    def save_user(self, user: dict[str, Any]) -> bool:
        return self.backend.save(USER_KEY, user)

    def load_user(self) -> dict[str, Any] | None:
        stored = self.backend.load(USER_KEY)
        return stored if isinstance(stored, dict) else None

    # ── Markdown export / import ──────────────────────────────

    def export_markdown(self, story: Story, path: Path) -> Path:
        """Write ``story`` as Markdown with YAML frontmatter."""
        post = frontmatter.Post(
            story.final_story or story.original_story,
            id=story.id,
            title=story.title,
            created=story.created_at,
            saved=story.saved_at,
        )
        if story.original_story and story.original_story != story.final_story:
            post.metadata["original"] = story.original_story
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        return path

    async def import_markdown(self, path: Path) -> Story | None:
        """Read a Markdown story file and save it into the library."""
        try:
            post = frontmatter.load(str(path))
        except (OSError, ValueError) as e:
            logger.warning("Could not read story file %s: %s", path, e)
            return None

        body = post.content.strip()
        story = Story(
            id=str(post.metadata.get("id") or self._new_id()),
            title=str(post.metadata.get("title") or path.stem),
            original_story=str(post.metadata.get("original") or body),
            final_story=body,
            created_at=str(post.metadata.get("created") or _now_iso()),
        )
        if not await self.put_story(story):
            return None
        return story
