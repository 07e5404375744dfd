"""Error taxonomy for the chat relay.

Ownership mismatches have no exception type: they are reported as
"not found" (empty result or a fresh conversation) so that conversation
ids belonging to other users cannot be probed.
"""


class CareChatError(Exception):
    """Base class for errors raised by the chat relay."""


class AuthenticationError(CareChatError):
    """Bearer token missing, invalid, expired, or not resolvable to a user."""


class UpstreamError(CareChatError):
    """The completion API failed (network, auth, quota or idle timeout)."""


class PersistenceError(CareChatError):
    """The store could not read or write conversation data."""


class MalformedRequest(CareChatError):
    """An inbound socket frame could not be parsed or misses a field."""
