"""YAML config loading with env var expansion."""

import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import StencilConfig

CONFIG_FILENAME = "stencil.yaml"


def load_config(cli_path: str | None = None, root: str | Path | None = None) -> StencilConfig:
    """Load config with resolution order: CLI > project-local > user-global > defaults.

    The project-local file is ``stencil.yaml`` inside *root* (default: the
    current directory).
    """
    config_paths = [
        Path(cli_path) if cli_path else None,
        Path(root or ".") / CONFIG_FILENAME,
        Path.home() / ".stencil" / "config.yaml",
    ]

    for path in config_paths:
        if path and path.exists():
            try:
                with open(path) as f:
                    raw = yaml.safe_load(f)
                if raw is None:
                    continue
                raw = _expand_env_vars(raw)
                return StencilConfig(**raw)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
            except ValidationError as e:
                raise ValueError(f"Invalid config in {path}: {e}") from e

    return StencilConfig()


def _expand_env_vars(obj: object) -> object:
    """Recursively expand ${VAR} references in strings."""
    if isinstance(obj, str):
        return re.sub(r"\$\{(\w+)\}", lambda m: os.environ.get(m.group(1), ""), obj)
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


# Default YAML template for `stencil config init`
DEFAULT_CONFIG_TEMPLATE = """\
# stencil.yaml

# Where engine state (version record, tracking, backups, cache) lives
state_dir: ".stencil"

# Managed components and the directories they install into
components:
  rules: "rules"
  templates: "templates"
  workflows: "workflows"
  git-hooks: "hooks"

# Where new template versions come from
source:
  kind: "registry"             # registry | git | local
  package: "stencil-templates"
  registry_url: "https://pypi.org/pypi"
  # git_url: "https://github.com/stencil-dev/stencil-templates.git"
  # local_path: "../stencil-templates"
  timeout: 30

# How customized files are merged with upstream
merge:
  strategy: "merge"            # ours | theirs | merge | manual | auto

# Backup retention
backup:
  keep: 5
  history_limit: 50

# Files that are always yours, even inside managed directories
tracking:
  preserve_patterns:
    - "rules/custom-*"
    - "templates/custom-*"
    - ".stencil/*.local.*"

# Paths that must exist after an upgrade, or it is rolled back
validation:
  required_paths: ["rules", "templates"]

# Pin the version "upgrade" moves to (defaults to the installed tool version)
# target_version: "1.2.0"

# Logging
log_level: "info"              # debug | info | warn | error
log_format: "text"             # text | json
"""
