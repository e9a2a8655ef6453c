"""
limiter_chart.py - Live "Allowed vs. Blocked" line chart drawn with Matplotlib.

The chart keeps its own label/series deques, index-aligned with the engine's
TimeSeriesBuffer and evicting the same way, so it can be driven purely by
history_append messages.
"""

from collections import deque
from typing import Callable, Optional

from matplotlib.figure import Figure
from matplotlib.ticker import FuncFormatter

from limiter_monitor import HISTORY_CAPACITY

ALLOWED_COLOR = (74 / 255, 222 / 255, 128 / 255)
BLOCKED_COLOR = (248 / 255, 113 / 255, 113 / 255)
GRID_COLOR = (75 / 255, 85 / 255, 99 / 255)


class LiveRequestChart:
    """Rendering adapter: append_point() + redraw(animated)."""

    def __init__(self, figure: Optional[Figure] = None, capacity: int = HISTORY_CAPACITY,
                 draw: Optional[Callable[[], None]] = None, draw_idle: Optional[Callable[[], None]] = None):
        self.fig = figure if figure is not None else Figure(figsize=(9, 4), dpi=100)
        self.ax = self.fig.add_subplot(1, 1, 1)
        self.capacity = capacity
        self.draw = draw; self.draw_idle = draw_idle
        self.labels = deque(maxlen=capacity)
        self.allowed_data = deque(maxlen=capacity); self.blocked_data = deque(maxlen=capacity)
        self.redraw(animated=False)

    def append_point(self, label: str, allowed: int, blocked: int):
        self.labels.append(label); self.allowed_data.append(allowed); self.blocked_data.append(blocked)

    def redraw(self, animated: bool = False):
        """Re-plots both series. Non-animated redraws paint now; animated ones wait for the idle draw."""
        ax = self.ax
        ax.clear()
        x = list(range(len(self.labels)))
        ax.plot(x, list(self.allowed_data), color=ALLOWED_COLOR, marker='o', markersize=4, label='Allowed')
        ax.fill_between(x, list(self.allowed_data), color=ALLOWED_COLOR, alpha=0.2)
        ax.plot(x, list(self.blocked_data), color=BLOCKED_COLOR, marker='o', markersize=4, label='Blocked')
        ax.fill_between(x, list(self.blocked_data), color=BLOCKED_COLOR, alpha=0.2)
        ax.set_xticks(x); ax.set_xticklabels(list(self.labels), rotation=45, ha='right', fontsize='small')
        ax.set_ylim(bottom=0)
        ax.yaxis.set_major_formatter(FuncFormatter(lambda value, _pos: f"{value:,.0f}"))
        ax.set_title("Requests (Cumulative)"); ax.grid(True, color=GRID_COLOR, alpha=0.3)
        ax.legend(loc='upper left', fontsize='small')
        self.fig.tight_layout()
        if animated and self.draw_idle is not None:
            self.draw_idle()
        elif self.draw is not None:
            self.draw()
