"""PickleAI gateway: personalization, caching and moderation for the pickleball assistant."""

__version__ = "0.1.0"
