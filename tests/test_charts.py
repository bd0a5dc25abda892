from datetime import date

import pandas as pd

from review_pulse.charts import first_day_of_week, process_data, render_charts, series_frame
from review_pulse.config import Review, ScoredReview


def _scored(day, pro, con):
    return ScoredReview.from_review(Review(date=day), pro, con)


def test_first_day_of_week_is_monday():
    # 2024-03-03 is a Sunday, 2024-03-06 a Wednesday
    dates = pd.Series(pd.to_datetime(["2024-03-03", "2024-03-06", "2024-03-04"]))
    out = first_day_of_week(dates).dt.strftime("%Y-%m-%d").tolist()
    assert out == ["2024-02-26", "2024-03-04", "2024-03-04"]


def test_process_data_daily_and_weekly():
    df = pd.DataFrame(
        {"x": pd.to_datetime(["2024-03-06", "2024-03-04", "2024-03-06"]), "y": [1.0, 3.0, 2.0]}
    )

    daily = process_data(df, duration_in_days=30)
    assert daily["x"].dt.strftime("%Y-%m-%d").tolist() == ["2024-03-04", "2024-03-06"]
    assert daily["y"].tolist() == [3.0, 1.5]

    weekly = process_data(df, duration_in_days=365)
    assert len(weekly) == 1
    assert weekly["y"].iloc[0] == 2.0


def test_series_frame_skips_undated():
    reviews = [_scored("2024-01-01", 4.0, 2.0), ScoredReview.from_review(Review(), 1.0, 1.0)]
    df = series_frame(reviews, "avg_score")
    assert df["y"].tolist() == [3.0]


def test_render_charts_merged_and_split():
    reviews = [_scored("2024-03-01", 4.0, 1.0), _scored("2024-03-08", 3.0, 2.0)]
    merged = render_charts(reviews, 30, date(2024, 2, 15), merge=True, today=date(2024, 3, 16))
    split = render_charts(reviews, 30, date(2024, 2, 15), merge=False, today=date(2024, 3, 16))

    assert "<svg" in merged and "</svg>" in merged
    assert "<svg" in split
    assert "Merged Chart" in merged
    assert "Pro Score" in split and "Con Score" in split and "Avg Score" in split


def test_render_charts_with_no_reviews():
    svg = render_charts([], 400, date(2023, 1, 1), merge=True, today=date(2024, 2, 5))
    assert "<svg" in svg
