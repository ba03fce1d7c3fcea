"""
Render Strategy Selector - chooses flat or windowed rendering for the message list.

Short logs are rendered in full. From ``threshold`` messages on, only a
window of fixed-height rows (plus overscan rows on each side) is rendered.
The mode depends on the message count alone; viewport changes only move
the window.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Literal, Optional

logger = logging.getLogger(__name__)

ScrollAlign = Literal["start", "end"]


class RenderMode(str, Enum):
    FLAT = "flat"
    WINDOWED = "windowed"


@dataclass(frozen=True)
class VisibleWindow:
    """Half-open index range ``[start, stop)`` of rows to render."""
    start: int
    stop: int

    def __len__(self) -> int:
        return self.stop - self.start

    def __contains__(self, index: int) -> bool:
        return self.start <= index < self.stop


@dataclass(frozen=True)
class ScrollCommand:
    """Request to scroll a row into view. ``offset`` is None in flat mode."""
    index: int
    align: ScrollAlign = "end"
    offset: Optional[int] = None


def select_render_mode(message_count: int, threshold: int) -> RenderMode:
    """Flat below the threshold, windowed at or above it."""
    return RenderMode.FLAT if message_count < threshold else RenderMode.WINDOWED


def compute_visible_window(
    item_count: int,
    scroll_offset: float,
    viewport_height: float,
    item_height: int,
    overscan: int,
) -> VisibleWindow:
    """
    Rows intersecting the viewport, widened by ``overscan`` rows on each side.

    Args:
        item_count: Number of rows
        scroll_offset: Pixels scrolled from the top
        viewport_height: Visible height in pixels
        item_height: Fixed row height in pixels
        overscan: Extra rows rendered above and below the viewport

    Returns:
        VisibleWindow clamped to ``[0, item_count)``
    """
    if item_count <= 0 or item_height <= 0:
        return VisibleWindow(0, 0)

    last = item_count - 1
    scroll_offset = max(0.0, scroll_offset)
    start = max(0, min(last, int(scroll_offset // item_height)))
    visible = math.ceil((viewport_height + scroll_offset - start * item_height) / item_height)
    stop = max(0, min(last, start + visible - 1))

    return VisibleWindow(
        start=max(0, start - overscan),
        stop=min(last, stop + overscan) + 1,
    )


def scroll_offset_for_index(
    index: int,
    item_count: int,
    viewport_height: float,
    item_height: int,
    align: ScrollAlign = "end",
) -> int:
    """Scroll offset that puts row ``index`` at the start or end of the viewport."""
    max_offset = max(0, int(item_count * item_height - viewport_height))
    if align == "start":
        offset = index * item_height
    else:
        offset = int(index * item_height - viewport_height + item_height)
    return max(0, min(max_offset, offset))


class RenderStrategySelector:
    """
    Tracks the list geometry and reacts to two independent signals.

    ``on_log_changed`` follows appends and streaming deltas with an
    auto-scroll command. ``on_viewport_resized`` only recomputes the window.
    """

    def __init__(
        self,
        threshold: int = 50,
        item_height: int = 120,
        overscan: int = 5,
        viewport_height: int = 600,
    ):
        self.threshold = threshold
        self.item_height = item_height
        self.overscan = overscan
        self._viewport_height = viewport_height
        self._message_count = 0
        self._scroll_offset = 0
        self._window = VisibleWindow(0, 0)
        self._scroll_listeners: List[Callable[[ScrollCommand], None]] = []

    @classmethod
    def from_settings(cls, config) -> "RenderStrategySelector":
        return cls(
            threshold=config.virtualization_threshold,
            item_height=config.item_height,
            overscan=config.overscan_count,
            viewport_height=config.viewport_height,
        )

    @property
    def mode(self) -> RenderMode:
        return select_render_mode(self._message_count, self.threshold)

    @property
    def message_count(self) -> int:
        return self._message_count

    @property
    def viewport_height(self) -> int:
        return self._viewport_height

    @property
    def scroll_offset(self) -> int:
        return self._scroll_offset

    @property
    def window(self) -> VisibleWindow:
        return self._window

    def add_scroll_listener(self, listener: Callable[[ScrollCommand], None]) -> Callable[[], None]:
        """Register a scroll command consumer; returns a function that removes it."""
        self._scroll_listeners.append(listener)

        def remove() -> None:
            if listener in self._scroll_listeners:
                self._scroll_listeners.remove(listener)

        return remove

    def on_log_changed(self, message_count: int, streaming_index: Optional[int] = None) -> Optional[ScrollCommand]:
        """
        React to a change of the message log.

        Args:
            message_count: Number of messages now in the log
            streaming_index: Index of the message receiving deltas, if any

        Returns:
            The scroll command issued, or None
        """
        previous = self._message_count
        self._message_count = message_count

        command = None
        if message_count > previous:
            command = self._scroll_to(message_count - 1)
        elif streaming_index is not None and 0 <= streaming_index < message_count:
            command = self._scroll_to(streaming_index)
        else:
            self._clamp_offset()
            self._recompute()
        return command

    def on_viewport_resized(self, height: int) -> VisibleWindow:
        self._viewport_height = height
        self._clamp_offset()
        return self._recompute()

    def on_scroll(self, offset: int) -> VisibleWindow:
        self._scroll_offset = int(offset)
        self._clamp_offset()
        return self._recompute()

    def _clamp_offset(self) -> None:
        max_offset = max(0, self._message_count * self.item_height - self._viewport_height)
        self._scroll_offset = max(0, min(self._scroll_offset, max_offset))

    def _recompute(self) -> VisibleWindow:
        if self.mode is RenderMode.FLAT:
            self._window = VisibleWindow(0, self._message_count)
        else:
            self._window = compute_visible_window(
                self._message_count,
                self._scroll_offset,
                self._viewport_height,
                self.item_height,
                self.overscan,
            )
        return self._window

    def _scroll_to(self, index: int) -> ScrollCommand:
        offset = None
        if self.mode is RenderMode.WINDOWED:
            offset = scroll_offset_for_index(
                index, self._message_count, self._viewport_height, self.item_height, "end"
            )
            self._scroll_offset = offset
        self._recompute()

        command = ScrollCommand(index=index, align="end", offset=offset)
        for listener in list(self._scroll_listeners):
            try:
                listener(command)
            except Exception as e:
                logger.error(f"Scroll listener failed: {e}", exc_info=True)
        return command
