"""threadline: Slack channel adapter for agent pipelines."""

__version__ = "0.1.0"
