"""Post storage: write, edit, publish and list a user's posts."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

from .clients import BackendClient, Failure, Ok, Table, TableResult

LOG = logging.getLogger(__name__)

POSTS_TABLE = "posts"
SLUG_MAX = 50
WORDS_PER_MINUTE = 200
UNTITLED = "Untitled"
LIST_COLUMNS = "id, author_id, title, slug, visibility, is_published, inserted_at"

_TRANSLITERATE = str.maketrans({"ğ": "g", "ü": "u", "ş": "s", "ı": "i", "ö": "o", "ç": "c"})
_STYLE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_SCRIPT = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_SPACE = re.compile(r"\s+")
_SLUG_DISALLOWED = re.compile(r"[^a-z0-9-]")


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    UNLISTED = "unlisted"


def strip_html(html: str) -> str:
    """Plain text of authored HTML, good enough for excerpts and word counts."""

    text = _SCRIPT.sub("", _STYLE.sub("", html))
    return _SPACE.sub(" ", _TAG.sub(" ", text)).strip()


def count_words(text: str) -> int:
    return len(text.split())


def reading_time_minutes(words: int) -> int:
    """Minutes at 200 words per minute, never less than one."""

    return max(1, int(words / WORDS_PER_MINUTE + 0.5))


def generate_slug(title: str, *, clock: Callable[[], float] = time.time) -> str:
    slug = _SPACE.sub("-", title.lower().translate(_TRANSLITERATE))
    slug = _SLUG_DISALLOWED.sub("", slug)[:SLUG_MAX]
    return slug or f"post-{int(clock() * 1000)}"


@dataclass(frozen=True, slots=True)
class Post:
    """A row of the posts table."""

    id: int
    author_id: str
    title: str
    slug: str
    content: str = ""
    visibility: Visibility = Visibility.PRIVATE
    is_published: bool = False
    inserted_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Post:
        try:
            visibility = Visibility(row.get("visibility") or Visibility.PRIVATE.value)
        except ValueError:
            visibility = Visibility.PRIVATE
        return cls(
            id=int(row["id"]),
            author_id=str(row.get("author_id") or ""),
            title=str(row.get("title") or ""),
            slug=str(row.get("slug") or ""),
            content=str(row.get("content") or ""),
            visibility=visibility,
            is_published=bool(row.get("is_published")),
            inserted_at=row.get("inserted_at") if isinstance(row.get("inserted_at"), str) else None,
        )

    @property
    def is_public(self) -> bool:
        return self.is_published and self.visibility is Visibility.PUBLIC

    @property
    def word_count(self) -> int:
        return count_words(strip_html(self.content))

    @property
    def reading_minutes(self) -> int:
        return reading_time_minutes(self.word_count)

    def share_path(self, username: str | None) -> str | None:
        """``/<username>/<slug>`` for public posts, ``None`` otherwise."""

        if not username or not self.is_public:
            return None
        return f"/{username}/{self.slug}"


def posts_from(result: TableResult) -> list[Post]:
    """Posts carried by an ``Ok`` result; empty for any failure."""

    if not isinstance(result, Ok):
        return []
    return [Post.from_row(row) for row in result.rows]


class PostStore:
    """Row operations on the posts table of one backend client.

    Every method returns the table's tagged result so callers branch on
    ``Ok`` / ``Conflict`` / ``Failure`` the same way profile code does.
    """

    def __init__(self, client: BackendClient, *, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock

    async def create(
        self,
        author_id: str,
        title: str,
        content: str,
        *,
        visibility: Visibility = Visibility.PUBLIC,
        publish: bool = True,
    ) -> TableResult:
        title = title.strip() or UNTITLED
        slug = f"{generate_slug(title, clock=self._clock)}-{int(self._clock() * 1000)}"
        result = await self._table.insert(
            {
                "author_id": author_id,
                "title": title,
                "content": content,
                "slug": slug,
                "visibility": Visibility(visibility).value,
                "is_published": publish,
            }
        )
        return self._logged(result, "create")

    async def fetch(self, post_id: int) -> TableResult:
        return self._logged(await self._table.select(match={"id": post_id}, limit=1), "fetch")

    async def list_mine(self, author_id: str) -> TableResult:
        """Every post by ``author_id``, drafts included, newest first."""

        result = await self._table.select(
            match={"author_id": author_id},
            columns=LIST_COLUMNS,
            order="inserted_at",
            descending=True,
        )
        return self._logged(result, "list")

    async def list_public(self, author_id: str) -> TableResult:
        result = await self._table.select(
            match={"author_id": author_id, "is_published": True, "visibility": Visibility.PUBLIC.value},
            columns=LIST_COLUMNS,
            order="inserted_at",
            descending=True,
        )
        return self._logged(result, "list")

    async def find_public(self, author_id: str, slug: str) -> TableResult:
        result = await self._table.select(
            match={
                "author_id": author_id,
                "slug": slug,
                "is_published": True,
                "visibility": Visibility.PUBLIC.value,
            },
            limit=1,
        )
        return self._logged(result, "fetch")

    async def update(
        self,
        post_id: int,
        *,
        title: str,
        content: str,
        visibility: Visibility,
        publish: bool = False,
    ) -> TableResult:
        """Save edits; the slug follows the title and keeps the post id as suffix."""

        title = title.strip() or UNTITLED
        values: dict[str, Any] = {
            "title": title,
            "content": content,
            "slug": f"{generate_slug(title, clock=self._clock)}-{post_id}",
            "visibility": Visibility(visibility).value,
        }
        if publish:
            values["is_published"] = True
        return self._logged(await self._table.update(values, match={"id": post_id}), "update")

    async def publish(self, post_id: int, visibility: Visibility = Visibility.PUBLIC) -> TableResult:
        values = {"is_published": True, "visibility": Visibility(visibility).value}
        return self._logged(await self._table.update(values, match={"id": post_id}), "publish")

    async def unpublish(self, post_id: int) -> TableResult:
        """Take a post down; it becomes a private draft."""

        values = {"is_published": False, "visibility": Visibility.PRIVATE.value}
        return self._logged(await self._table.update(values, match={"id": post_id}), "unpublish")

    async def delete(self, post_id: int) -> TableResult:
        return self._logged(await self._table.delete(match={"id": post_id}), "delete")

    @property
    def _table(self) -> Table:
        return self._client.table(POSTS_TABLE)

    def _logged(self, result: TableResult, operation: str) -> TableResult:
        if isinstance(result, Failure):
            LOG.error(
                "Post %s failed: %s",
                operation,
                result.error.message,
                extra={"operation": operation, "code": result.error.code},
            )
        return result


__all__ = [
    "POSTS_TABLE",
    "Post",
    "PostStore",
    "Visibility",
    "count_words",
    "generate_slug",
    "posts_from",
    "reading_time_minutes",
    "strip_html",
]
