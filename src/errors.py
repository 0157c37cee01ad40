class GatewayConnectionError(Exception):
    ...


class LoginError(GatewayConnectionError):
    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed to login after {attempts} attempt(s): {last_error}")


class InvalidToken(GatewayConnectionError):
    ...


class ReadyTimeout(GatewayConnectionError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Gateway did not become ready within {timeout}s")


class NotReady(GatewayConnectionError):
    """Raised by read-paths that need the gateway while it is not ready."""


class FetchError(Exception):
    def __init__(self, guild_id: str, after: str, cause: BaseException) -> None:
        self.guild_id = guild_id
        self.after = after
        self.cause = cause
        super().__init__(f"Failed to fetch members of guild {guild_id} after {after}: {cause}")


class ConfigLookupError(Exception):
    ...


class MutationError(Exception):
    ...


class AuditDeliveryError(Exception):
    ...
