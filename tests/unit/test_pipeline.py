"""
Unit tests for the stage pipeline.
"""

import pytest

from prodline.config import Settings
from prodline.engine.pipeline import Pipeline, StageSpec
from prodline.errors import PipelineConfigError


class TestPipeline:
    """Tests for Pipeline."""

    @pytest.fixture
    def pipeline(self) -> Pipeline:
        return Pipeline(
            [
                StageSpec("queued", 0),
                StageSpec("producing", 60_000),
                StageSpec("shipping", 0),
                StageSpec("delivered", 0),
            ]
        )

    def test_default_settings_pipeline(self):
        """Default settings describe the four standard stages."""
        pipeline = Pipeline.from_settings(Settings())

        assert [stage.name for stage in pipeline] == ["queued", "producing", "shipping", "delivered"]
        assert pipeline.total_ms == 60_000
        assert pipeline.total_seconds == 60

    def test_first_and_terminal(self, pipeline: Pipeline):
        assert pipeline.first.name == "queued"
        assert pipeline.terminal.name == "delivered"
        assert len(pipeline) == 4

    def test_next_stage_follows_order(self, pipeline: Pipeline):
        """Each stage is followed by the next one in the list."""
        assert pipeline.next_stage("queued").name == "producing"
        assert pipeline.next_stage("producing").name == "shipping"
        assert pipeline.next_stage("shipping").name == "delivered"

    def test_terminal_is_its_own_successor(self, pipeline: Pipeline):
        assert pipeline.next_stage("delivered").name == "delivered"
        assert pipeline.is_terminal("delivered")
        assert not pipeline.is_terminal("shipping")

    def test_get_stage(self, pipeline: Pipeline):
        assert pipeline.get("producing").base_duration_ms == 60_000

    def test_unknown_stage(self, pipeline: Pipeline):
        with pytest.raises(PipelineConfigError):
            pipeline.get("painting")
        with pytest.raises(PipelineConfigError):
            pipeline.next_stage("painting")

    def test_total_seconds_rounds_half_up(self):
        pipeline = Pipeline([StageSpec("a", 1_500), StageSpec("b", 0)])
        assert pipeline.total_seconds == 2

    def test_needs_two_stages(self):
        with pytest.raises(PipelineConfigError):
            Pipeline([StageSpec("only", 1_000)])

    def test_rejects_duplicate_names(self):
        with pytest.raises(PipelineConfigError):
            Pipeline([StageSpec("a", 0), StageSpec("a", 0)])

    def test_rejects_negative_duration(self):
        with pytest.raises(PipelineConfigError):
            Pipeline([StageSpec("a", -1), StageSpec("b", 0)])
