# Error taxonomy shared by the agent and the server


class CheckValidationError(ValueError):
    """Check parameters do not fit the schema of their check kind."""


class PlatformUnsupportedError(Exception):
    """A check kind cannot be evaluated on the current operating system."""


class NotFoundError(LookupError):
    """
    An endpoint, check or other record referenced by id does not exist.

    Attributes:
        resource: Kind of record that was looked up ("endpoint", "check", ...)
        identifier: The id that was not found
    """

    def __init__(self, resource: str, identifier):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource.capitalize()} not found: {identifier}")


class AuthenticationError(Exception):
    """A request carried a missing or wrong shared secret."""


class TransportError(Exception):
    """
    An agent-to-server call did not produce a usable response.

    Covers connection failures, timeouts, non-success status codes and
    response bodies that do not parse.

    Attributes:
        status_code: HTTP status when the server answered, otherwise None
    """

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class EndpointNotFoundError(TransportError):
    """The server answered 404 because it does not know the agent's endpoint id."""
