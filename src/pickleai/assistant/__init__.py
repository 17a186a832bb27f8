"""End-to-end chat orchestration."""

from pickleai.assistant.assistant import PickleAssistant

__all__ = ["PickleAssistant"]
