"""Downstream senders for delivering relayed items."""
from channels.base import (
    DownstreamSender,
    RecordingSender,
    TokenBucketRateLimiter,
    raise_for_result,
)
from channels.telegram_sender import TelegramSender, parse_destination

__all__ = [
    "DownstreamSender", "RecordingSender", "TokenBucketRateLimiter", "raise_for_result",
    "TelegramSender", "parse_destination", "create_sender",
]


def create_sender(config) -> DownstreamSender:
    """Factory for the configured downstream sender (a DownstreamConfig)."""
    if config.type == "telegram":
        if not config.bot_token:
            raise ValueError("downstream.bot_token is required for the telegram sender")
        return TelegramSender(
            config.bot_token,
            api_base=config.api_base,
            messages_per_minute=config.messages_per_minute,
            timeout=config.timeout_s,
        )
    if config.type == "recording":
        return RecordingSender()
    raise ValueError(f"Unknown downstream type: {config.type}")
