import logging
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from refereeflow.core.errors import ReviewerAssignmentError

# === 结构化日志配置 ===
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("refereeflow")


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件

    中文注释:
    - 路由层未转换的领域错误在这里兜底成 {code, message}，状态码沿用错误类型。
    - 其余未知异常只返回通用 500，不泄露内部细节。
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                "Method: %s Path: %s Status: %s Time: %.4fs",
                request.method,
                request.url.path,
                response.status_code,
                process_time,
            )
            return response
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "type": "http_exception"},
            )
        except ReviewerAssignmentError as exc:
            logger.warning("Unhandled domain error on %s: %s", request.url.path, exc.message)
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": {"code": exc.code, "message": exc.message}, "type": "domain_error"},
            )
        except Exception as e:
            logger.error("Unhandled Exception: %s", e, exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error", "type": "server_error"},
            )
