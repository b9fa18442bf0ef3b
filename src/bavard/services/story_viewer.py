# src/bavard/services/story_viewer.py
"""Sequencing model for watching one author's stories."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence

from bavard.core.settings import settings
from bavard.schemas.story import StoryRead


class StoryViewer:
    """Plays an author's stories oldest-first, starting at the oldest unviewed one.

    Time is fed in explicitly through :meth:`tick`, so the same model drives a
    real timer or a test. Each story is shown for ``display_ms``; manual
    navigation restarts the timer. The viewer closes when advancing past the
    last story or when its story set becomes empty.
    """

    def __init__(
        self,
        stories: Sequence[StoryRead],
        viewed_ids: Iterable[int] = (),
        display_ms: int | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.display_ms = display_ms or settings.story_display_ms
        self.viewed: set[int] = set(viewed_ids)
        self.closed = False
        self._on_close = on_close
        self._elapsed_ms = 0
        self._stories = sorted(stories, key=lambda story: (story.created_at, story.id))
        self._index = next(
            (i for i, story in enumerate(self._stories) if story.id not in self.viewed),
            0,
        )
        if not self._stories:
            self.close()
        else:
            self._mark_current()

    @property
    def stories(self) -> list[StoryRead]:
        return list(self._stories)

    @property
    def index(self) -> int:
        return self._index

    @property
    def current(self) -> StoryRead | None:
        if self.closed or not self._stories:
            return None
        return self._stories[self._index]

    @property
    def progress(self) -> float:
        """Percentage of the current story's display time that has elapsed."""
        if self.closed:
            return 0.0
        return min(100.0, self._elapsed_ms * 100.0 / self.display_ms)

    def tick(self, elapsed_ms: int) -> None:
        """Advance the timer, auto-advancing once per completed display period."""
        if self.closed:
            return
        self._elapsed_ms += max(0, elapsed_ms)
        while not self.closed and self._elapsed_ms >= self.display_ms:
            self._elapsed_ms -= self.display_ms
            self._advance()

    def next(self) -> None:
        if self.closed:
            return
        self._elapsed_ms = 0
        self._advance()

    def previous(self) -> None:
        if self.closed:
            return
        self._elapsed_ms = 0
        if self._index > 0:
            self._index -= 1
            self._mark_current()

    def refresh(self, stories: Sequence[StoryRead]) -> None:
        """Replace the story set, e.g. after some expired mid-view.

        Stays on the current story when it survived; otherwise shows the story
        that now occupies its position.
        """
        if self.closed:
            return
        current = self.current
        self._stories = sorted(stories, key=lambda story: (story.created_at, story.id))
        if not self._stories:
            self.close()
            return
        ids = [story.id for story in self._stories]
        if current is not None and current.id in ids:
            self._index = ids.index(current.id)
            return
        self._index = min(self._index, len(self._stories) - 1)
        self._elapsed_ms = 0
        self._mark_current()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._elapsed_ms = 0
        if self._on_close is not None:
            self._on_close()

    def _advance(self) -> None:
        if self._index < len(self._stories) - 1:
            self._index += 1
            self._mark_current()
        else:
            self.close()

    def _mark_current(self) -> None:
        self.viewed.add(self._stories[self._index].id)
