"""Root conftest: suite markers and per-test metric isolation."""

from __future__ import annotations

from pathlib import Path

import pytest

from irsatrace.observability import reset_stage_metrics


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Attach suite markers from test path.

    - `tests/unit/*` -> `unit`
    - `tests/integration/*` -> `integration`
    - `tests/scenarios/*` -> `scenario`
    """
    root = Path(__file__).resolve().parents[1]
    for item in items:
        item_path = Path(str(item.fspath)).resolve()
        try:
            rel = item_path.relative_to(root)
        except ValueError:
            continue

        parts = rel.parts
        if len(parts) < 2 or parts[0] != "tests":
            continue
        if parts[1] == "unit":
            item.add_marker(pytest.mark.unit)
        elif parts[1] == "integration":
            item.add_marker(pytest.mark.integration)
        elif parts[1] == "scenarios":
            item.add_marker(pytest.mark.scenario)


@pytest.fixture(autouse=True)
def clean_stage_metrics():
    """Reset in-process stage metrics between tests."""
    reset_stage_metrics()
    yield
    reset_stage_metrics()
