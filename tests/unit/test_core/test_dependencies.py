"""Tests for FastAPI dependencies."""

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from fleet_geocoder.core.dependencies import get_pipeline


def _request(pipeline: object | None) -> SimpleNamespace:
    state = SimpleNamespace()
    if pipeline is not None:
        state.geocode_pipeline = pipeline
    return SimpleNamespace(app=SimpleNamespace(state=state))


class TestGetPipeline:
    """Tests for get_pipeline."""

    def test_missing_pipeline_is_503(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            get_pipeline(_request(None))  # type: ignore[arg-type]
        assert exc_info.value.status_code == 503

    def test_uninitialized_pipeline_is_503(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            get_pipeline(_request(SimpleNamespace(initialized=False)))  # type: ignore[arg-type]
        assert exc_info.value.status_code == 503

    def test_returns_running_pipeline(self) -> None:
        pipeline = SimpleNamespace(initialized=True)
        assert get_pipeline(_request(pipeline)) is pipeline  # type: ignore[arg-type]
