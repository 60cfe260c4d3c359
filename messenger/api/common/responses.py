from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, list):
        return [_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {key: _jsonable(value) for key, value in data.items()}
    return jsonable_encoder(data)


class APIResponse:
    @staticmethod
    def success(
        data: Any = None, message: str = "Success", status_code: int = 200
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"status": "success", "message": message, "data": _jsonable(data)},
        )

    @staticmethod
    def error(
        message: str, status_code: int = 400, code: Optional[str] = None
    ) -> JSONResponse:
        content = {"status": "error", "message": message}
        if code:
            content["code"] = code
        return JSONResponse(status_code=status_code, content=content)
