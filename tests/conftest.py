from collections.abc import Iterator

import pytest

from prdsched.logs import reset_logging


@pytest.fixture(autouse=True)
def _isolated_logging() -> Iterator[None]:
    yield
    reset_logging()
