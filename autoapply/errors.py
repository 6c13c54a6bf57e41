"""Exceptions shared across the pipeline."""
from __future__ import annotations


class AutoApplyError(Exception):
    pass


class ConfigError(AutoApplyError):
    pass


class DuplicateApplication(AutoApplyError):
    """The owner already has an application for this posting."""

    def __init__(self, owner_id: str, posting_id: str) -> None:
        super().__init__(f"application already exists for posting {posting_id}")
        self.owner_id = owner_id
        self.posting_id = posting_id


class QuotaExhausted(AutoApplyError):
    """A basic subscription has no applications left. Not a failure."""

    def __init__(self, subscription_id: int) -> None:
        super().__init__(f"subscription {subscription_id} reached its job limit")
        self.subscription_id = subscription_id


class PostingNotFound(AutoApplyError):
    def __init__(self, posting_id: str) -> None:
        super().__init__(f"posting {posting_id} not found")
        self.posting_id = posting_id


class AIServiceError(AutoApplyError):
    """The AI service timed out, was unreachable, or replied with junk."""


class PreferenceError(AutoApplyError):
    """Unknown category, missing subscription, or a duplicate active preference."""
