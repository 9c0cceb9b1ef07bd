from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Closed set of template components tracked in the version record.
COMPONENTS: tuple[str, ...] = ("rules", "templates", "workflows", "git-hooks")

MergeStrategyName = Literal["ours", "theirs", "merge", "manual", "auto"]


class SourceConfig(BaseModel):
    kind: Literal["registry", "git", "local"] = "registry"
    package: str = "stencil-templates"
    registry_url: str = "https://pypi.org/pypi"
    git_url: str = "https://github.com/stencil-dev/stencil-templates.git"
    local_path: str | None = None
    timeout: int = Field(default=30, gt=0)


class MergeConfig(BaseModel):
    strategy: MergeStrategyName = "merge"


class BackupConfig(BaseModel):
    keep: int = Field(default=5, ge=1)
    history_limit: int = Field(default=50, ge=1)


class TrackingConfig(BaseModel):
    preserve_patterns: list[str] = Field(default_factory=lambda: [
        "rules/custom-*",
        "templates/custom-*",
        ".stencil/*.local.*",
    ])


class ValidationConfig(BaseModel):
    required_paths: list[str] = Field(default_factory=lambda: ["rules", "templates"])


class StencilConfig(BaseModel):
    state_dir: str = ".stencil"
    components: dict[str, str] = Field(default_factory=lambda: {
        "rules": "rules",
        "templates": "templates",
        "workflows": "workflows",
        "git-hooks": "hooks",
    })
    source: SourceConfig = Field(default_factory=SourceConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    target_version: str | None = None
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    log_format: Literal["text", "json"] = "text"

    @field_validator("components")
    @classmethod
    def _known_components(cls, value: dict[str, str]) -> dict[str, str]:
        unknown = sorted(set(value) - set(COMPONENTS))
        if unknown:
            raise ValueError(
                f"unknown component(s) {unknown}; expected a subset of {list(COMPONENTS)}"
            )
        return value

    def managed_dirs(self, component: str | None = None) -> dict[str, str]:
        """Component -> project-relative directory, optionally narrowed to one."""
        if component is None or component == "all":
            return dict(self.components)
        if component not in self.components:
            raise ValueError(
                f"Unknown component {component!r}. "
                f"Choose from: {', '.join(self.components)}, all"
            )
        return {component: self.components[component]}
