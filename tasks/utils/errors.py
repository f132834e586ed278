from typing import Any, Dict


class HandlerError(Exception):
    """Client-visible failure raised by a handler function.

    Carries the HTTP status the route should answer with and any extra
    fields to merge into the JSON error body.
    """

    def __init__(self, message: str, status_code: int = 400, **extra: Any):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message, **self.extra}
