from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import os
import logging

from .api.assessment_type_api import router as assessment_type_router
from .api.cache_api import router as cache_router
from .api.calculation_api import averages_router, rankings_router, calculations_router
from .api.dependencies import shutdown_shared
from .api.grade_api import router as grade_router
from .api.semester_config_api import router as semester_config_router
from .database.connection import create_tables, test_connection
from .database.repositories import RepositoryError
from .errors import GradeErrorCode, GradeServiceError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not test_connection():
        logger.warning("Database unreachable at startup, requests will fail until it recovers")
    if os.getenv("AUTO_CREATE_TABLES", "false").lower() in ("1", "true", "yes"):
        create_tables()
    yield
    shutdown_shared()


app = FastAPI(
    title="成绩平均分与排名服务",
    description="学期配置、平均分计算、班级/科目排名与缓存管理API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def add_error_handlers(app: FastAPI) -> None:
    """统一错误响应 {success: false, code, message, details}"""

    @app.exception_handler(GradeServiceError)
    async def grade_service_error_handler(request: Request, exc: GradeServiceError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code.value} {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code.value} {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error = GradeServiceError(
            "请求参数校验失败",
            code=GradeErrorCode.VALIDATION_ERROR,
            details={"errors": [
                {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
                for err in exc.errors()
            ]},
        )
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(RepositoryError)
    async def repository_error_handler(request: Request, exc: RepositoryError):
        logger.error(f"{request.method} {request.url.path} repository failure: {str(exc)}")
        error = GradeServiceError("数据访问失败", code=GradeErrorCode.INTERNAL_ERROR)
        return JSONResponse(status_code=500, content=error.to_dict())


add_error_handlers(app)

# 注册路由
app.include_router(semester_config_router, prefix="/api/semester-configs", tags=["学期配置"])
app.include_router(cache_router, prefix="/api/cache", tags=["缓存管理"])
app.include_router(grade_router, prefix="/api/grades", tags=["成绩录入"])
app.include_router(averages_router, prefix="/api/averages", tags=["平均分"])
app.include_router(rankings_router, prefix="/api/rankings", tags=["排名"])
app.include_router(calculations_router, prefix="/api/calculations", tags=["计算"])
app.include_router(assessment_type_router, prefix="/api/assessment-types", tags=["考核类型"])


@app.get("/")
async def root():
    return {
        "message": "成绩平均分与排名服务",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("grade_service.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)), reload=False)
