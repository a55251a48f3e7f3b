from __future__ import annotations

from typing import Iterator

import pytest

from tests._harness import Harness, start_harness


@pytest.fixture(scope="session")
def h() -> Iterator[Harness]:
	with start_harness() as harness:
		yield harness
