"""Error taxonomy shared by the domain modules and the HTTP layer.

Domain code raises these; ``app.py`` turns them into ``{"error": ...}``
responses with the matching status code.
"""


class FinanceError(Exception):
    status_code = 400
    public_message = None

    def __init__(self, message=None):
        super().__init__(message or self.public_message or self.__class__.__name__)
        self.message = message or self.public_message

    def to_dict(self):
        return {'error': self.message}


class ValidationError(FinanceError):
    """Malformed or out-of-range input, reported against a single field."""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field

    def to_dict(self):
        payload = {'error': self.message}
        if self.field:
            payload['field'] = self.field
        return payload


class AuthorizationError(FinanceError):
    """Acting outside one's household or role.

    The message is always generic so other households' data is never hinted at.
    """
    status_code = 403
    public_message = 'Not allowed'

    def __init__(self, reason=None):
        super().__init__(self.public_message)
        self.reason = reason


class NotFoundError(FinanceError):
    status_code = 404

    def __init__(self, what='Resource'):
        super().__init__(f'{what} not found')


class UpstreamError(FinanceError):
    """A vendor API or the email provider failed. Detail goes to the log only."""
    status_code = 502
    public_message = 'Something went wrong, please try again'

    def __init__(self, detail=None):
        super().__init__(self.public_message)
        self.detail = detail

    def __str__(self):
        return self.detail or self.public_message
