"""
Error classes for exitbot.
"""


class BotError(Exception):
    """Base error for bot operations."""
    pass


class ConfigError(BotError):
    """Missing or malformed startup configuration."""
    pass


class StartupError(BotError):
    """A required connection could not be established before the loop."""
    pass


class PriceError(BotError):
    """Price source unreachable or returned an unusable answer."""
    pass


class FeeError(BotError):
    """Gas station unreachable or returned an unusable answer."""
    pass


class FeeUnavailableError(FeeError):
    """Fee fetch failed and nothing usable was cached."""
    pass


class RPCError(BotError):
    """JSON-RPC call failed after retries."""
    pass


class OperationError(BotError):
    """Withdraw or exchange could not be submitted."""
    pass


class NotifyError(BotError):
    """Operator notification was not delivered."""
    pass
