"""Channel naming.

Keep these in one place to avoid stringly-typed channel handling.
"""

QUERY = "query"
RESPONSE = "response"
SEPARATOR = ":"


def _check(kind: str, value: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{kind} must be a string, not {type(value).__name__}")
    if value == "":
        raise ValueError(f"{kind} must not be empty")
    return value


def query_channel(service: str, event: str) -> str:
    """Channel a responder for (*service*, *event*) listens on."""
    _check("service", service)
    _check("event", event)
    return SEPARATOR.join((QUERY, service, event))


def response_channel(service: str, request_id: str) -> str:
    """Private reply channel for a single request."""
    _check("service", service)
    _check("request id", request_id)
    return SEPARATOR.join((RESPONSE, service, request_id))
