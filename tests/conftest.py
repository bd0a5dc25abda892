import pytest

from fakes import make_reviews
from review_pulse.pipeline_types import FetchOutcome


@pytest.fixture
def three_pages():
    return {p: FetchOutcome.success(make_reviews(p)) for p in (1, 2, 3)}
