"""Response envelope shared by all routes: {"success", "message", "data"}."""
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success_response(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "message": message, "data": jsonable_encoder(data)},
    )


def error_body(error_type: str, message: str, details: Optional[Any] = None) -> dict:
    return {
        "success": False,
        "message": message,
        "error": {"type": error_type, "details": jsonable_encoder(details) if details else None},
    }
