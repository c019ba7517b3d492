"""应用入口：负责创建 FastAPI 实例并绑定生命周期事件。"""

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.middleware.request_id import REQUEST_ID_HEADER, RequestIdMiddleware
from app.packages import get_active_package

package = get_active_package()
package.setup_logging()
settings = package.get_settings()
logger = package.logger
init_db = package.init_db
api_router = package.api_router
http_exception_handler = package.http_exception_handler
validation_exception_handler = package.validation_exception_handler
generic_exception_handler = package.generic_exception_handler

app = FastAPI(title=settings.project_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", REQUEST_ID_HEADER],
)

app.add_middleware(RequestIdMiddleware)


@app.on_event("startup")
async def startup_event() -> None:
    """初始化数据库状态，确认服务可用后输出成功日志。"""
    init_db()
    logger.info("SUCCESS - Application running at http://127.0.0.1:%s", settings.app_port)


@app.exception_handler(HTTPException)
async def custom_http_exception_handler(request, exc):
    """将 ``HTTPException``（含业务异常）转换为统一的响应结构。"""
    return await http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def custom_validation_exception_handler(request, exc):
    """统一处理请求体验证失败的场景。"""
    return await validation_exception_handler(request, exc)


@app.exception_handler(Exception)
async def custom_generic_exception_handler(request, exc):
    """捕获未预料异常并包装为标准错误响应。"""
    return await generic_exception_handler(request, exc)


@app.get("/health")
async def health_check() -> dict:
    """提供健康检查接口，便于编排器与监控系统探活。"""
    return {"status": "healthy"}


app.include_router(api_router, prefix=settings.api_prefix)
