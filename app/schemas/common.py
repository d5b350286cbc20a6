from pydantic import BaseModel

# 에러 응답 ({"success": false, "error": {"code", "message"}})
class ErrorDetail(BaseModel):
    code: str
    message: str

class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
