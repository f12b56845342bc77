from __future__ import annotations

from pydantic import BaseModel, Field

# --- Stage / pipeline definitions ---


class StageSpec(BaseModel):
    """
    One independently executable unit of a pipeline.

    `command` is the argv of the worker process; trigger-time args are appended.
    `cwd` is interpreted relative to PipelineSettings.scripts_dir when not absolute.
    """

    name: str
    title: str = ""
    command: list[str]
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class ScheduleSpec(BaseModel):
    """Cron schedule declared in settings and registered at server startup."""

    cron: str
    name: str = ""
    enabled: bool = True
    stages: list[str] | None = None  # None => all stages
    params: dict[str, str] = Field(default_factory=dict)


class PipelineSettings(BaseModel):
    title: str = ""
    scripts_dir: str = "."
    stages: list[StageSpec] = Field(default_factory=list)
    # passed to every stage as environment variables, overridable per trigger
    default_params: dict[str, str] = Field(default_factory=dict)
    schedules: list[ScheduleSpec] = Field(default_factory=list)

    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def get_stage(self, name: str) -> StageSpec | None:
        for s in self.stages:
            if s.name == name:
                return s
        return None


def default_pipelines() -> dict[str, PipelineSettings]:
    """The five Copychu phases, each a node script in the scraper checkout."""
    phases = [
        ("phase0", "Phase 0: URL collection", "phase0-url-collector.js"),
        ("phase1", "Phase 1: gallery scraping", "phase1-main-gallery.js"),
        ("phase2", "Phase 2: AI image generation", "phase2-ai-generate.js"),
        ("phase3", "Phase 3: multi-product composition", "phase3-multi-3products.js"),
        ("phase4", "Phase 4: final data and upload", "phase4-final-data.js"),
    ]
    return {
        "copychu": PipelineSettings(
            title="Copychu product pipeline",
            scripts_dir="/root/copychu-scraper",
            stages=[
                StageSpec(name=name, title=title, command=["node", script])
                for name, title, script in phases
            ],
            default_params={"PRODUCT_LIMIT": "3"},
        )
    }
