"""stencil — safe upgrades for template-derived project configuration."""

__version__ = "0.4.0"
