"""Tool interface, registry and built-in scratchpad tools."""
