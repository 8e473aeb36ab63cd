class ApplicationError(Exception):
    pass


class RequestError(Exception):
    """The HTTP request could not be handled as an admission review."""


class ResponseEncodingError(ApplicationError):
    pass


class ProviderError(ApplicationError):
    pass


class PublishError(ApplicationError):
    pass


class DecisionError(Exception):
    """A denial. The message is returned to the API server verbatim."""


class ObjectDecodeError(DecisionError):
    pass


class PolicyViolation(DecisionError):
    pass
