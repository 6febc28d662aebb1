from typing import Any, Optional
from fastapi import HTTPException, status


class AppException(HTTPException):
    # Subclasses set status_code and detail as class attributes;
    # a detail passed at raise time overrides the default message.
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail = "Internal server error occurred."

    def __init__(self, detail: Optional[Any] = None, headers: Optional[dict] = None):
        super().__init__(
            status_code=type(self).status_code,
            detail=detail if detail is not None else type(self).detail,
            headers=headers
        )
