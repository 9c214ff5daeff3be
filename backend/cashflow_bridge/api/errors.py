from fastapi import Request
from fastapi.responses import JSONResponse

from cashflow_bridge.services.results import ErrorCode, ServiceResult


class ServiceResultError(Exception):
    """Raised by routes to turn a failed ``ServiceResult`` into an HTTP error."""

    def __init__(self, result: ServiceResult):
        self.status_code = result.http_status
        self.code = (result.error_code or ErrorCode.INTERNAL_ERROR).value
        self.detail = result.error or "Unknown error"
        super().__init__(f"{self.code}: {self.detail}")


def unwrap(result: ServiceResult):
    if not result.success:
        raise ServiceResultError(result)
    return result.data


async def service_result_error_handler(request: Request, exc: ServiceResultError) -> JSONResponse:
    headers = {}
    request_id = request.headers.get("x-request-id")
    if request_id:
        headers["X-Request-ID"] = request_id
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )
