from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

from notifyrules.schemas.response_schemas import ApiResponse, ResponseStatus


def _envelope(request: Request, status_code: int, **fields) -> JSONResponse:
    response = ApiResponse(
        request_id=getattr(request.state, "request_id", None) or "app",
        path=str(request.url.path),
        **fields,
    )
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(by_alias=True, exclude_none=True),
    )


class ResponseBuilder:
    """Wraps payloads in the standard ``ApiResponse`` envelope"""

    @staticmethod
    def success(
        request: Request,
        data: Any = None,
        message: str = "Request successful",
        meta: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> JSONResponse:
        return _envelope(
            request,
            status_code,
            success=True,
            status=ResponseStatus.SUCCESS,
            message=message,
            data=data,
            meta=meta,
        )

    @staticmethod
    def error(
        request: Request,
        message: str = "An error occurred",
        errors: Optional[List[Dict[str, Any]]] = None,
        error_code: Optional[str] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        meta: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        """The error code, when given, travels in ``meta.error_code``"""
        meta = dict(meta or {})
        if error_code:
            meta["error_code"] = error_code

        return _envelope(
            request,
            status_code,
            success=False,
            status=ResponseStatus.ERROR,
            message=message,
            meta=meta or None,
            errors=errors,
        )
