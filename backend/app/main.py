"""
ARI-PMS 主应用入口
酒店可用量 / 价格 / 库存一致性引擎
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.config import settings
from app.database import init_db
from app.routers import ari, bookings, quotes, rate_plans
from app.services.errors import AriError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 初始化数据库
    init_db()

    # 注册事件处理器
    from app.services.event_handlers import register_event_handlers
    register_event_handlers()

    logger.info(f"{settings.APP_NAME} started")
    yield


# 创建应用
app = FastAPI(
    title="ARI-PMS - 酒店 ARI 一致性引擎",
    description="可用量、价格与库存的一致性维护：超售保护、派生价格级联、幂等预订",
    version="1.0.0",
    lifespan=lifespan
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 生产环境应限制具体域名
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AriError)
async def ari_error_handler(request: Request, exc: AriError):
    """依赖项（如请求上下文）抛出的 ARI 错误"""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """请求格式错误统一为 400"""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {
            "code": "VALIDATION_ERROR",
            "message": "请求参数无效",
            "details": {"errors": [
                {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
                for err in exc.errors()
            ]},
        }},
    )


# 注册路由
app.include_router(ari.router)
app.include_router(quotes.router)
app.include_router(bookings.router)
app.include_router(rate_plans.router)


@app.get("/")
def root():
    return {"message": f"{settings.APP_NAME} API", "version": "1.0.0"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
