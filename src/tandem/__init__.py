"""Tandem: turn orchestration for tool-using coding assistants."""

__version__ = "0.1.0"
