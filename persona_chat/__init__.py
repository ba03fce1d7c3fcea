"""Persona chat - live chat session runtime for persona-driven assistants."""

__version__ = "1.0.0"
