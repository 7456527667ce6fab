"""
Ordered stage pipeline.

Stages are an explicit ordered list so that "next stage" and "total duration"
are structural properties of the list rather than separate lookups.
"""

from dataclasses import dataclass
from typing import Iterator, Sequence

from prodline.config import Settings
from prodline.engine.timing import round_half_up
from prodline.errors import PipelineConfigError


@dataclass(frozen=True)
class StageSpec:
    """A named pipeline phase with its nominal duration."""

    name: str
    base_duration_ms: int


class Pipeline:
    """
    Linear sequence of stages. The last stage is terminal.
    """

    def __init__(self, stages: Sequence[StageSpec]):
        if len(stages) < 2:
            raise PipelineConfigError("Pipeline needs at least one working stage and a terminal stage")

        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise PipelineConfigError(f"Duplicate stage names in pipeline: {names}")

        for stage in stages:
            if stage.base_duration_ms < 0:
                raise PipelineConfigError(f"Stage {stage.name} has a negative duration")

        self._stages = tuple(stages)
        self._index = {stage.name: i for i, stage in enumerate(self._stages)}

    @classmethod
    def from_settings(cls, settings: Settings) -> "Pipeline":
        """Build the pipeline from configured stage durations."""
        return cls([StageSpec(name, duration) for name, duration in settings.stage_durations_ms])

    def __iter__(self) -> Iterator[StageSpec]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def first(self) -> StageSpec:
        return self._stages[0]

    @property
    def terminal(self) -> StageSpec:
        return self._stages[-1]

    @property
    def total_ms(self) -> int:
        """Nominal (un-jittered) length of the whole pipeline."""
        return sum(stage.base_duration_ms for stage in self._stages)

    @property
    def total_seconds(self) -> int:
        return round_half_up(self.total_ms / 1000)

    def get(self, name: str) -> StageSpec:
        try:
            return self._stages[self._index[name]]
        except KeyError:
            raise PipelineConfigError(f"Unknown stage: {name}") from None

    def next_stage(self, name: str) -> StageSpec:
        """Get the stage after `name`. The terminal stage is its own successor."""
        idx = self._index.get(name)
        if idx is None:
            raise PipelineConfigError(f"Unknown stage: {name}")
        return self._stages[min(idx + 1, len(self._stages) - 1)]

    def is_terminal(self, name: str) -> bool:
        return name == self.terminal.name
