"""AI client, session authentication, and agent orchestration."""

from .auth import SessionTokenManager
from .client import AIClient, AIStreamEvent, ClientSettings, RateLimitTracker

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "RateLimitTracker", "SessionTokenManager"]
