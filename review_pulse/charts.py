"""
SVG charts of review scores over time.

Each score series (pro / con / avg) is averaged per day, or per week once
the window is longer than ``WEEKLY_BUCKET_AFTER_DAYS``, then drawn as dots
plus a line on a fixed 0..5 axis. Merged mode puts all three series on one
wide chart; split mode draws three small ones side by side.
"""

from __future__ import annotations

import io
from datetime import date
from typing import Iterable, List, Sequence

import matplotlib
import matplotlib.dates as mdates
import pandas as pd
from matplotlib.figure import Figure

from .config import (
    CHART_DPI,
    CHART_HEIGHT,
    CHART_MERGED_WIDTH,
    CHART_WIDTH,
    SCORE_SCALE,
    SERIES_COLORS,
    SERIES_TITLES,
    WEEKLY_BUCKET_AFTER_DAYS,
    ScoredReview,
)


def first_day_of_week(dates: pd.Series) -> pd.Series:
    """Snap each date to the Monday of its week (Sunday belongs to the week before)."""
    return dates - pd.to_timedelta(dates.dt.weekday, unit="D")


def series_frame(reviews: Iterable[ScoredReview], field: str) -> pd.DataFrame:
    rows = [{"x": r.date, "y": getattr(r, field)} for r in reviews if r.date]
    df = pd.DataFrame(rows, columns=["x", "y"])
    df["x"] = pd.to_datetime(df["x"], errors="coerce")
    return df.dropna(subset=["x"])


def process_data(df: pd.DataFrame, duration_in_days: int) -> pd.DataFrame:
    """Bucket by week for long windows, average y per x, sort by x."""
    if df.empty:
        return df.copy()
    df = df.copy()
    if duration_in_days > WEEKLY_BUCKET_AFTER_DAYS:
        df["x"] = first_day_of_week(df["x"])
    out = df.groupby("x", as_index=False)["y"].mean()
    return out.sort_values("x").reset_index(drop=True)


def _setup_axes(ax, min_date: date, today: date, title: str) -> None:
    ax.set_title(title, fontsize=9)
    ax.set_xlim(pd.Timestamp(min_date), pd.Timestamp(today))
    ax.set_ylim(0, SCORE_SCALE)
    locator = mdates.AutoDateLocator()
    ax.xaxis.set_major_locator(locator)
    ax.xaxis.set_major_formatter(mdates.ConciseDateFormatter(locator))
    ax.tick_params(axis="x", labelrotation=60, labelsize=6)
    ax.tick_params(axis="y", labelsize=6)


def _draw_series(ax, data: pd.DataFrame, color: str) -> None:
    if data.empty:
        return
    ax.scatter(data["x"], data["y"], s=6, color=color, alpha=0.3)
    ax.plot(data["x"], data["y"], color=color, linewidth=1)


def render_charts(
    reviews: Sequence[ScoredReview],
    duration_in_days: int,
    min_date: date,
    merge: bool,
    today: date | None = None,
) -> str:
    """Return one SVG document for the current reviews."""
    today = today or date.today()
    fields: List[str] = list(SERIES_COLORS)
    data = {f: process_data(series_frame(reviews, f), duration_in_days) for f in fields}

    width = CHART_MERGED_WIDTH if merge else CHART_WIDTH * len(fields)
    fig = Figure(figsize=(width / CHART_DPI, CHART_HEIGHT / CHART_DPI), dpi=CHART_DPI, layout="tight")

    if merge:
        ax = fig.add_subplot(1, 1, 1)
        _setup_axes(ax, min_date, today, "Merged Chart")
        for f in fields:
            _draw_series(ax, data[f], SERIES_COLORS[f])
    else:
        for i, f in enumerate(fields, start=1):
            ax = fig.add_subplot(1, len(fields), i)
            _setup_axes(ax, min_date, today, SERIES_TITLES[f])
            _draw_series(ax, data[f], SERIES_COLORS[f])

    buf = io.StringIO()
    # labels stay <text> elements, not glyph paths
    with matplotlib.rc_context({"svg.fonttype": "none"}):
        fig.savefig(buf, format="svg")
    return buf.getvalue()
